# display.py
# All terminal output for toolflow.
#
# The engine only logs; this module owns presentation of flows and reports.
#
# Colour language:
#   cyan    - flow structure / routing
#   yellow  - retries and filtered context
#   green   - passed
#   red     - failed, halted
#   magenta - token usage

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from toolflow.flow import FlowReport, ToolFlow
from toolflow.models import Attempt, Severity

console = Console()

_SEVERITY_STYLE = {
    Severity.LOW: "dim white",
    Severity.MEDIUM: "yellow",
    Severity.HIGH: "bold yellow",
    Severity.CRITICAL: "bold red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _verdict(passed: bool) -> str:
    return "[bold green]✓[/bold green]" if passed else "[bold red]✗[/bold red]"


def configure_logging(level: int = logging.INFO) -> None:
    """Route toolflow's loggers through rich."""
    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("toolflow")
    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False


# ---------------------------------------------------------------------------
# Flow definition
# ---------------------------------------------------------------------------


def flow_banner(flow: ToolFlow) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Pos", justify="center", width=4)
    table.add_column("Tool", style="bold white")
    table.add_column("Kind", width=6)
    table.add_column("Retries", justify="center", width=8)
    table.add_column("Context from", style="dim white")

    table.add_row("0", "initial_input", "seed", "-", "-")
    for position, step in enumerate(flow.steps, start=1):
        table.add_row(
            str(position),
            step.tool_name,
            "local" if step.is_local else "remote",
            str(step.config.max_retries),
            ", ".join(str(p) for p in step.include_results) or "-",
        )

    console.print(
        Panel(
            table,
            title=_label("TOOLFLOW", "cyan"),
            subtitle=f"[dim]Default model: {flow.config.default_model}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def attempt_table(attempts: list[Attempt]) -> Table:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim", padding=(0, 1))
    table.add_column("Round", justify="center", width=6)
    table.add_column("Type", width=20)
    table.add_column("Passed", justify="center", width=7)
    table.add_column("Tokens", justify="right", width=8)
    table.add_column("Issues")

    for attempt in attempts:
        issues = Text()
        for issue in attempt.issues:
            if issues:
                issues.append("\n")
            issues.append(f"{issue.severity.value.upper()}: ", style=_SEVERITY_STYLE[issue.severity])
            issues.append(_mono(issue.description, 80))
        table.add_row(
            str(attempt.round),
            attempt.output_type.__name__,
            _verdict(attempt.passed),
            str(attempt.usage.total_tokens),
            issues if attempt.issues else Text("-", style="dim"),
        )
    return table


def report_summary(report: FlowReport) -> None:
    console.print()
    console.print(Rule("[cyan]FLOW REPORT[/cyan]", style="cyan"))

    for position, attempts in enumerate(report.results):
        if not attempts:
            console.print(f"  [dim]Position {position}: not executed[/dim]")
            continue
        final = attempts[-1]
        color = "green" if final.passed else "red"
        console.print(
            Panel(
                attempt_table(attempts),
                title=f"[bold {color}]Position {position}[/bold {color}]  [white]{final.tool_name}[/white]",
                subtitle=f"[dim]{_mono(json.dumps(final.output.to_map(), default=str), 90)}[/dim]",
                border_style=color,
                padding=(0, 1),
            )
        )

    usage_report(report)
    final_result(report)


def usage_report(report: FlowReport) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="magenta", header_style="bold magenta")
    table.add_column("Position", justify="center")
    table.add_column("Prompt", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("Total", justify="right")

    for position, usage in enumerate(report.usage.per_position):
        table.add_row(
            str(position),
            str(usage.prompt_tokens),
            str(usage.completion_tokens),
            str(usage.total_tokens),
        )
    total = report.usage.total
    table.add_row(
        "[bold]all[/bold]",
        str(total.prompt_tokens),
        str(total.completion_tokens),
        f"[bold]{total.total_tokens}[/bold]",
    )

    console.print(
        Panel(
            table,
            title=_label("TOKEN USAGE", "magenta"),
            subtitle=f"[dim]scope: {report.usage.scope.value}[/dim]",
            border_style="magenta",
            padding=(0, 1),
        )
    )


def final_result(report: FlowReport) -> None:
    console.print()
    if report.passed:
        body = "[bold green]All positions passed.[/bold green]"
        color, tag = "green", "RESULT: PASS ✓"
    else:
        failed = [
            str(position)
            for position, attempts in enumerate(report.results)
            if attempts and not attempts[-1].passed
        ]
        body = f"[bold red]Failed positions:[/bold red] [white]{', '.join(failed) or '-'}[/white]"
        if report.halted_at is not None:
            body += f"\n[white]Flow halted after position {report.halted_at}.[/white]"
        color, tag = "red", "RESULT: FAIL ✗"

    console.print(
        Panel(
            body + f"\n[dim]{len(report.all_issues)} issue(s) across all attempts[/dim]",
            title=_label(tag, color),
            border_style=color,
            padding=(0, 2),
        )
    )
    console.print()

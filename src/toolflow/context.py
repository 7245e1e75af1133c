# context.py
# Context selection: what prior results a step shows the generation service.
#
# Two channels, kept apart:
#   included results - final attempts of earlier positions the step lists
#   retry attempts   - the current position's own earlier rounds
# Both keep only issues at or above the step's severity filter, and an
# output always travels with the issues it produced.

from toolflow.history import HistoryView
from toolflow.models import Attempt, ContextEntry, Severity
from toolflow.steps import Step


def _entry(position: int, attempt: Attempt, severity_filter: Severity) -> ContextEntry | None:
    issues = attempt.issues_at_least(severity_filter)
    if not issues:
        return None
    return ContextEntry(
        position=position,
        tool_name=attempt.tool_name,
        round=attempt.round,
        output=attempt.output,
        issues=issues,
    )


def select_included_results(history: HistoryView, step: Step) -> list[ContextEntry]:
    """
    Resolve `step.include_results` against the history.

    Only a position's final attempt is considered. Positions with no
    surviving issues contribute nothing.
    """
    severity_filter = step.config.severity_filter
    entries: list[ContextEntry] = []
    for position in step.include_results:
        final = history.final(position)
        if final is None:
            continue
        entry = _entry(position, final, severity_filter)
        if entry is not None:
            entries.append(entry)
    return entries


def select_retry_attempts(
    position: int,
    attempts: list[Attempt],
    severity_filter: Severity,
) -> list[ContextEntry]:
    """Earlier rounds of the position currently executing."""
    entries: list[ContextEntry] = []
    for attempt in attempts:
        entry = _entry(position, attempt, severity_filter)
        if entry is not None:
            entries.append(entry)
    return entries

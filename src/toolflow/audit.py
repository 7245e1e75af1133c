# audit.py
# Audit engine: checks that inspect a typed output and report Issues.
#
# A check sees only the output, never the attempt record, so the same check
# can be reused by any step that produces that output type.

import logging
from typing import Callable, Iterable

from toolflow.models import Issue, Severity, ToolOutput

logger = logging.getLogger(__name__)

PassCriteria = Callable[[list[Issue]], bool]
FailureReason = Callable[[list[Issue]], str]

DEFAULT_SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.LOW: 1.0,
    Severity.MEDIUM: 2.0,
    Severity.HIGH: 3.0,
    Severity.CRITICAL: 5.0,
}


def no_critical_issues(issues: list[Issue]) -> bool:
    return not any(issue.severity is Severity.CRITICAL for issue in issues)


def weighted_severity_criteria(
    threshold: float,
    weights: dict[Severity, float] | None = None,
) -> PassCriteria:
    """
    Pass predicate that sums per-severity weights and passes below `threshold`.

    Example:
        StepConfig(custom_pass_criteria=weighted_severity_criteria(5.0))
    """
    table = {**DEFAULT_SEVERITY_WEIGHTS, **(weights or {})}

    def criteria(issues: list[Issue]) -> bool:
        return sum(table[issue.severity] for issue in issues) < threshold

    return criteria


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


class AuditCheck:
    """
    Base class for audit checks.

    Subclasses set `name`, optionally `output_type`, and implement run().
    passed() and failure_reason() may be overridden for custom criteria.
    """

    name: str = "audit"
    output_type: type[ToolOutput] | None = None

    def run(self, output: ToolOutput) -> list[Issue]:
        raise NotImplementedError

    def passed(self, issues: list[Issue]) -> bool:
        return no_critical_issues(issues)

    def failure_reason(self, issues: list[Issue]) -> str:
        critical = [i.description for i in issues if i.severity is Severity.CRITICAL]
        if critical:
            return f"Critical issues found: {', '.join(critical)}"
        return "Custom criteria not met"


class FunctionAudit(AuditCheck):
    """Adapts a plain `output -> list[Issue]` callable into an AuditCheck."""

    def __init__(
        self,
        name: str,
        fn: Callable[[ToolOutput], list[Issue]],
        output_type: type[ToolOutput] | None = None,
    ) -> None:
        self.name = name
        self.output_type = output_type
        self._fn = fn

    def run(self, output: ToolOutput) -> list[Issue]:
        return list(self._fn(output))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _type_mismatch_issue(check: AuditCheck, output: ToolOutput) -> Issue:
    expected = check.output_type.__name__ if check.output_type else "ToolOutput"
    actual = type(output).__name__
    return Issue(
        id=f"audit_type_mismatch_{check.name}",
        severity=Severity.CRITICAL,
        description=f"Audit {check.name} expects output type {expected}, but received {actual}",
        context={"audit_name": check.name, "expected_type": expected, "actual_type": actual},
        suggestions=[
            f"Ensure the tool produces output of type {expected}",
            "Register the correct output type for the tool",
        ],
    )


def _execution_error_issue(check: AuditCheck, output: ToolOutput, exc: Exception) -> Issue:
    return Issue(
        id=f"audit_execution_error_{check.name}",
        severity=Severity.CRITICAL,
        description=f"Audit {check.name} execution failed: {exc}",
        context={
            "audit_name": check.name,
            "actual_type": type(output).__name__,
            "error": str(exc),
        },
        suggestions=[
            "Check audit function implementation",
            "Verify tool output structure matches expectations",
        ],
    )


def run_audits(checks: Iterable[AuditCheck], output: ToolOutput, round: int) -> list[Issue]:
    """
    Run every check against `output` and return their concatenated issues.

    Each issue is stamped with `round`. A check that expects another output
    type, or that raises, contributes a critical issue instead of aborting.
    """
    issues: list[Issue] = []
    for check in checks:
        if check.output_type is not None and not isinstance(output, check.output_type):
            found = [_type_mismatch_issue(check, output)]
        else:
            try:
                found = check.run(output)
            except Exception as exc:
                logger.warning("Audit %s raised: %s", check.name, exc)
                found = [_execution_error_issue(check, output, exc)]

        issues.extend(issue.model_copy(update={"round": round}) for issue in found)
    return issues

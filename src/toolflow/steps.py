# steps.py
# Step definitions: what a step invokes, how its input is built, which prior
# positions it forwards as context, and its audit/retry policy.
#
# Definitions are immutable and validated on construction.

from dataclasses import dataclass, field
from typing import Any, Callable

from toolflow.audit import AuditCheck, FailureReason, PassCriteria, no_critical_issues
from toolflow.errors import ConfigurationError
from toolflow.history import HistoryView
from toolflow.models import Issue, Severity, ToolOutput

InputBuilder = Callable[[HistoryView], dict[str, Any]]
Sanitizer = Callable[[dict[str, Any]], dict[str, Any]]
ComputeFunction = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class StepConfig:
    """Audit and retry policy for one step."""

    audits: tuple[AuditCheck, ...] = ()
    max_retries: int = 3
    stop_on_failure: bool = True
    custom_pass_criteria: PassCriteria | None = None
    custom_failure_reason: FailureReason | None = None
    audit_only_final_attempt: bool = False
    severity_filter: Severity = Severity.MEDIUM
    retry_delay: float = 0.0
    input_sanitizer: Sanitizer | None = None
    output_sanitizer: Sanitizer | None = None
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"retry_delay must be >= 0, got {self.retry_delay}")
        object.__setattr__(self, "audits", tuple(self.audits))
        object.__setattr__(self, "severity_filter", Severity.parse(self.severity_filter))

    @property
    def has_audits(self) -> bool:
        return bool(self.audits)

    def passed(self, issues: list[Issue]) -> bool:
        """Custom predicate if set, else every audit's criteria, else no critical issue."""
        if self.custom_pass_criteria is not None:
            return self.custom_pass_criteria(issues)
        if self.audits:
            return all(audit.passed(issues) for audit in self.audits)
        return no_critical_issues(issues)

    def failure_reason(self, issues: list[Issue]) -> str:
        if self.custom_failure_reason is not None:
            return self.custom_failure_reason(issues)
        reasons = [
            f"{audit.name}: {audit.failure_reason(issues)}"
            for audit in self.audits
            if not audit.passed(issues)
        ]
        if reasons:
            return "; ".join(reasons)
        if not no_critical_issues(issues):
            critical = [i.description for i in issues if i.severity is Severity.CRITICAL]
            return f"Critical issues found: {', '.join(critical)}"
        return "Step criteria not met"


def _check_positions(tool_name: str, positions: tuple[int, ...]) -> None:
    for position in positions:
        if not isinstance(position, int) or isinstance(position, bool) or position < 0:
            raise ConfigurationError(
                f"Step '{tool_name}' includes invalid history position {position!r}; "
                "positions are absolute indices where 0 is the initial input."
            )


@dataclass(frozen=True)
class ToolCallStep:
    """
    A step that calls the remote generation service.

    `include_results` lists absolute history positions (0 = initial input)
    whose final attempts are forwarded to the service as context.
    `output_type`, when given, is registered for `tool_name` when the
    step is added to a flow.
    """

    tool_name: str
    model: str | None = None
    description: str = ""
    input_builder: InputBuilder | None = None
    include_results: tuple[int, ...] = ()
    config: StepConfig = field(default_factory=StepConfig)
    output_type: type[ToolOutput] | None = None

    is_local = False

    def __post_init__(self) -> None:
        if not self.tool_name:
            raise ConfigurationError("Step tool_name must be a non-empty string.")
        object.__setattr__(self, "include_results", tuple(self.include_results))
        _check_positions(self.tool_name, self.include_results)


@dataclass(frozen=True)
class LocalStep:
    """
    A step that runs a local function instead of calling the service.

    `compute` receives the built input data and returns the raw output
    mapping, directly or as an awaitable. Token usage is always zero.
    """

    tool_name: str
    compute: ComputeFunction
    description: str = ""
    input_builder: InputBuilder | None = None
    include_results: tuple[int, ...] = ()
    config: StepConfig = field(default_factory=StepConfig)
    output_type: type[ToolOutput] | None = None

    is_local = True

    @property
    def model(self) -> None:
        return None

    def __post_init__(self) -> None:
        if not self.tool_name:
            raise ConfigurationError("Step tool_name must be a non-empty string.")
        if not callable(self.compute):
            raise ConfigurationError(f"Local step '{self.tool_name}' needs a callable compute.")
        object.__setattr__(self, "include_results", tuple(self.include_results))
        _check_positions(self.tool_name, self.include_results)


Step = ToolCallStep | LocalStep

# models.py
# Data contracts for the toolflow engine.
# Records only: severities, issues, token usage, step inputs, typed outputs
# and the attempt record that binds them together.

from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from toolflow.errors import OutputTypeError

T = TypeVar("T", bound="ToolOutput")


# ---------------------------------------------------------------------------
# Severity & Issue
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Ordered issue severity: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, threshold: "Severity") -> bool:
        return self.rank >= threshold.rank

    @classmethod
    def parse(cls, value: "str | Severity") -> "Severity":
        if isinstance(value, Severity):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Invalid severity: {value!r}") from exc


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Issue(BaseModel):
    """A structured defect found in a step output."""

    id: str = Field(..., description="Stable identifier for this issue.")
    severity: Severity
    description: str = Field(..., description="Human-readable summary.")
    context: dict[str, Any] = Field(default_factory=dict, description="Where/why it occurred.")
    suggestions: list[str] = Field(default_factory=list, description="Suggested remediations.")
    round: int = Field(default=0, ge=0, description="Round in which the issue was raised.")
    related_data: dict[str, Any] | None = None

    def at_least(self, threshold: Severity) -> bool:
        return self.severity.at_least(threshold)


# ---------------------------------------------------------------------------
# Resource usage
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    """Token cost of a single attempt. Zero for local steps and the seed."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls()

    @classmethod
    def from_usage(cls, usage: Any) -> "TokenUsage":
        """Build from an OpenAI usage object or a plain mapping."""
        if usage is None:
            return cls()
        if not isinstance(usage, dict):
            usage = {
                "prompt_tokens": getattr(usage, "prompt_tokens", None),
                "completion_tokens": getattr(usage, "completion_tokens", None),
                "total_tokens": getattr(usage, "total_tokens", None),
            }
        prompt = usage.get("prompt_tokens") or 0
        completion = usage.get("completion_tokens") or 0
        total = usage.get("total_tokens")
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total if total is not None else prompt + completion,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


# ---------------------------------------------------------------------------
# Step input / typed outputs
# ---------------------------------------------------------------------------


class StepInput(BaseModel):
    """The input actually used for one attempt."""

    round: int = Field(..., ge=0)
    data: dict[str, Any] = Field(default_factory=dict, description="Raw input built for the step.")
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class ToolOutput(BaseModel):
    """
    Base class for every typed step output.

    Concrete outputs subclass this and declare their own fields. The engine
    stores outputs erased to this base and recovers the concrete type
    through Attempt.output_as().
    """

    round: int = Field(default=0, ge=0)

    def to_map(self) -> dict[str, Any]:
        """Output fields without engine bookkeeping."""
        return self.model_dump(exclude={"round"})


class SeedOutput(ToolOutput):
    """Position 0: the flow's initial input decoded as an output."""

    data: dict[str, Any] = Field(default_factory=dict)

    def to_map(self) -> dict[str, Any]:
        return dict(self.data)


class InvocationFailure(ToolOutput):
    """Output of the synthetic attempt recorded when a step invocation fails."""

    error: str


# ---------------------------------------------------------------------------
# Audit outcome / attempt
# ---------------------------------------------------------------------------


class AuditOutcome(BaseModel):
    issues: list[Issue] = Field(default_factory=list)
    passed: bool = True
    failure_reason: str | None = None


class Attempt(BaseModel):
    """
    One execution of a step at a given round.

    `output` is held erased to ToolOutput; `output_type` is the concrete
    type tag from the registry. Typed consumers call output_as(), which
    fails loudly instead of handing back the wrong shape.
    """

    model_config = ConfigDict(frozen=True)

    tool_name: str
    round: int = Field(..., ge=0)
    input: StepInput
    output: SerializeAsAny[ToolOutput]
    output_type: type[ToolOutput] = Field(..., exclude=True)
    usage: TokenUsage = Field(default_factory=TokenUsage.zero)
    audit: AuditOutcome = Field(default_factory=AuditOutcome)

    @property
    def issues(self) -> list[Issue]:
        return self.audit.issues

    @property
    def passed(self) -> bool:
        return self.audit.passed

    def has_output_type(self, output_type: type[ToolOutput]) -> bool:
        """True if the stored type is `output_type` or a subclass of it."""
        return issubclass(self.output_type, output_type)

    def output_as(self, output_type: type[T]) -> T:
        """Checked downcast; any base class of the stored type is accepted."""
        if not self.has_output_type(output_type) or not isinstance(self.output, output_type):
            raise OutputTypeError(
                f"Attempt for '{self.tool_name}' holds {self.output_type.__name__}, "
                f"not {output_type.__name__}."
            )
        return self.output

    def issues_at_least(self, threshold: Severity) -> list[Issue]:
        return [issue for issue in self.audit.issues if issue.at_least(threshold)]

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["output_type"] = self.output_type.__name__
        return data


class ContextEntry(BaseModel):
    """A forwarded output paired with the issues that survived filtering."""

    position: int
    tool_name: str
    round: int
    output: SerializeAsAny[ToolOutput]
    issues: list[Issue] = Field(default_factory=list)

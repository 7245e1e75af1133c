# flow.py
# Flow orchestrator: runs the declared steps in order and assembles the report.
#
# A ToolFlow holds only its immutable definition. Each run() builds a fresh
# history, so one flow can be run any number of times in sequence.

import asyncio
import logging
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, Field

from toolflow.config import FlowConfig
from toolflow.errors import ConfigurationError
from toolflow.executor import StepExecutor
from toolflow.history import ExecutionHistory
from toolflow.models import Attempt, AuditOutcome, Issue, StepInput, TokenUsage, ToolOutput
from toolflow.registry import SEED_TOOL, OutputRegistry, default_registry
from toolflow.service import GenerationService
from toolflow.steps import Step

logger = logging.getLogger(__name__)


class UsageScope(str, Enum):
    """Which attempts count towards the usage summary."""

    ALL_ATTEMPTS = "all_attempts"
    FINAL_ONLY = "final_only"


class UsageSummary(BaseModel):
    scope: UsageScope = UsageScope.ALL_ATTEMPTS
    per_position: list[TokenUsage] = Field(default_factory=list)
    total: TokenUsage = Field(default_factory=TokenUsage.zero)

    @classmethod
    def from_positions(cls, positions: list[list[Attempt]], scope: UsageScope) -> "UsageSummary":
        per_position: list[TokenUsage] = []
        for attempts in positions:
            counted = attempts if scope is UsageScope.ALL_ATTEMPTS else attempts[-1:]
            usage = TokenUsage.zero()
            for attempt in counted:
                usage = usage + attempt.usage
            per_position.append(usage)

        total = TokenUsage.zero()
        for usage in per_position:
            total = total + usage
        return cls(scope=scope, per_position=per_position, total=total)


class FlowReport(BaseModel):
    """
    Outcome of one run.

    `results` is the nested history (position -> attempts), pruned to final
    attempts when the run asked for it. Issue lists and the pass flag are
    derived from it, never stored separately.
    """

    results: list[list[Attempt]]
    usage: UsageSummary
    halted_at: int | None = None
    pruned: bool = False

    @property
    def final_results(self) -> list[Attempt]:
        return [attempts[-1] for attempts in self.results if attempts]

    @property
    def all_issues(self) -> list[Issue]:
        return [issue for attempts in self.results for attempt in attempts for issue in attempt.issues]

    @property
    def final_issues(self) -> list[Issue]:
        return [issue for attempt in self.final_results for issue in attempt.issues]

    @property
    def passed(self) -> bool:
        return all(attempts and attempts[-1].passed for attempts in self.results)

    def attempts_for(self, position: int) -> list[Attempt]:
        return list(self.results[position])

    def results_by_tool(self, tool_name: str) -> list[Attempt]:
        """Final attempts of every position run by `tool_name`."""
        return [attempt for attempt in self.final_results if attempt.tool_name == tool_name]

    def final_result_by_tool(self, tool_name: str) -> Attempt | None:
        matches = self.results_by_tool(tool_name)
        return matches[-1] if matches else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [[attempt.to_dict() for attempt in attempts] for attempts in self.results],
            "passed": self.passed,
            "halted_at": self.halted_at,
            "pruned": self.pruned,
            "all_issues": [issue.model_dump(mode="json") for issue in self.all_issues],
            "usage": self.usage.model_dump(mode="json"),
        }


class ToolFlow:
    """
    Ordered pipeline of steps over a shared execution history.

    The flow decodes through its own copy of `registry` (or of the default
    registry), so registering step output types never affects other flows.

    Example:
        flow = ToolFlow(steps=[outline_step, draft_step], service=MockToolService(...))
        report = asyncio.run(flow.run({"topic": "tides"}))
    """

    def __init__(
        self,
        steps: Iterable[Step],
        service: GenerationService | None = None,
        config: FlowConfig | None = None,
        registry: OutputRegistry | None = None,
    ) -> None:
        self.steps: tuple[Step, ...] = tuple(steps)
        self.service = service
        self.config = config or FlowConfig()
        self.registry = (registry if registry is not None else default_registry).copy()
        self._validate()

        for step in self.steps:
            if step.output_type is not None:
                self.registry.register_model(step.tool_name, step.output_type)

    def _validate(self) -> None:
        for position, step in enumerate(self.steps, start=1):
            for included in step.include_results:
                if included >= position:
                    raise ConfigurationError(
                        f"Step {position} ('{step.tool_name}') includes position {included}, "
                        f"but only positions 0..{position - 1} exist before it."
                    )
            if not step.is_local and self.service is None:
                raise ConfigurationError(
                    f"Step {position} ('{step.tool_name}') calls the generation service, "
                    "but the flow has no service."
                )

        declared: dict[str, type[ToolOutput]] = {}
        for step in self.steps:
            if step.output_type is None:
                continue
            previous = declared.setdefault(step.tool_name, step.output_type)
            if previous is not step.output_type:
                raise ConfigurationError(
                    f"Tool '{step.tool_name}' is declared with output types "
                    f"{previous.__name__} and {step.output_type.__name__}."
                )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _seed(self, initial_input: dict[str, Any]) -> Attempt:
        output = self.registry.create(SEED_TOOL, initial_input, 0)
        return Attempt(
            tool_name=SEED_TOOL,
            round=0,
            input=StepInput(round=0, data=dict(initial_input), model=self.config.default_model),
            output=output,
            output_type=self.registry.get_type(SEED_TOOL),
            usage=TokenUsage.zero(),
            audit=AuditOutcome(),
        )

    async def run(
        self,
        initial_input: dict[str, Any],
        *,
        prune_history: bool = False,
        usage_scope: UsageScope = UsageScope.ALL_ATTEMPTS,
    ) -> FlowReport:
        """
        Execute every step in order and return the report.

        Halts after a step that exhausts its retries with stop_on_failure;
        the remaining positions are recorded with no attempts.
        DecodeError and InputBuildError propagate.
        """
        if not isinstance(initial_input, dict):
            raise TypeError(f"initial_input must be a dict, got {type(initial_input).__name__}")

        history = ExecutionHistory()
        history.append_position([self._seed(initial_input)])
        executor = StepExecutor(self.registry, self.service, self.config)

        halted_at: int | None = None
        for position, step in enumerate(self.steps, start=1):
            if halted_at is not None:
                history.append_position([])
                continue

            logger.info("Step %d/%d: %s", position, len(self.steps), step.tool_name)
            outcome = await executor.execute(step, position, history.view())
            history.append_position(outcome.attempts)
            if outcome.halted:
                halted_at = position

        positions = history.as_lists()
        usage = UsageSummary.from_positions(positions, UsageScope(usage_scope))
        if prune_history:
            positions = [attempts[-1:] for attempts in positions]

        return FlowReport(results=positions, usage=usage, halted_at=halted_at, pruned=prune_history)

    def run_sync(self, initial_input: dict[str, Any], **kwargs: Any) -> FlowReport:
        return asyncio.run(self.run(initial_input, **kwargs))

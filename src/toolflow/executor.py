# executor.py
# Step executor: drives one step from its first round to a final attempt.
#
#   Pending -> Invoking -> Decoding -> Auditing -> Accepted | Retrying | Exhausted
#
# Invocation failures become a critical issue on a synthetic attempt and
# take the normal retry path. Decode failures propagate and abort the run.
# The executor never touches the history; it returns the attempts and the
# orchestrator appends them.

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any

from toolflow.audit import run_audits
from toolflow.config import FlowConfig
from toolflow.context import select_included_results, select_retry_attempts
from toolflow.errors import DecodeError, InputBuildError, InvocationError, ToolFlowError
from toolflow.history import HistoryView
from toolflow.models import (
    Attempt,
    AuditOutcome,
    ContextEntry,
    InvocationFailure,
    Issue,
    Severity,
    StepInput,
    TokenUsage,
)
from toolflow.registry import OutputRegistry
from toolflow.service import GenerationService
from toolflow.steps import Step

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Every attempt made at one position, and how the step ended."""

    attempts: list[Attempt] = field(default_factory=list)
    passed: bool = False
    halted: bool = False

    @property
    def final(self) -> Attempt:
        return self.attempts[-1]


class StepExecutor:
    """Runs the retry/audit loop for a single step."""

    def __init__(
        self,
        registry: OutputRegistry,
        service: GenerationService | None = None,
        config: FlowConfig | None = None,
    ) -> None:
        self._registry = registry
        self._service = service
        self._config = config or FlowConfig()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def build_input(self, step: Step, history: HistoryView, round: int) -> StepInput:
        """
        Run the step's input builder over the full history.

        Builders get a read-only view of the history. Without a builder the
        previous position's final output is used. Local steps carry no
        model settings.
        Errors other than toolflow's own are wrapped in InputBuildError.
        """
        try:
            if step.input_builder is not None:
                data = step.input_builder(history)
            else:
                data = history.latest.output.to_map()
            if step.config.input_sanitizer is not None:
                data = step.config.input_sanitizer(data)
        except ToolFlowError:
            raise
        except Exception as exc:
            raise InputBuildError(step.tool_name, str(exc)) from exc

        if not isinstance(data, dict):
            raise InputBuildError(step.tool_name, f"expected a dict, got {type(data).__name__}")

        if step.is_local:
            return StepInput(round=round, data=data)

        max_tokens = step.config.max_tokens
        if max_tokens is None:
            max_tokens = self._config.default_max_tokens
        return StepInput(
            round=round,
            data=data,
            model=step.model or self._config.default_model,
            temperature=self._config.default_temperature,
            max_tokens=max_tokens,
        )

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        step: Step,
        step_input: StepInput,
        included: list[ContextEntry],
        retries: list[ContextEntry],
    ) -> tuple[dict[str, Any], TokenUsage]:
        if step.is_local:
            result = step.compute(dict(step_input.data))
            if inspect.isawaitable(result):
                result = await result
            usage = TokenUsage.zero()
        else:
            if self._service is None:
                raise InvocationError(step.tool_name, "no generation service configured")
            output_type = (
                self._registry.get_type(step.tool_name)
                if self._registry.is_registered(step.tool_name)
                else None
            )
            response = await self._service.invoke(step, step_input, included, retries, output_type)
            result, usage = response.output, response.usage

        if not isinstance(result, dict):
            raise InvocationError(step.tool_name, f"expected a dict output, got {type(result).__name__}")
        return result, usage

    def _failure_attempt(
        self,
        step: Step,
        position: int,
        step_input: StepInput,
        exc: Exception,
    ) -> Attempt:
        round = step_input.round
        issue = Issue(
            id=f"invocation_error_{step.tool_name}_{position}_round_{round}",
            severity=Severity.CRITICAL,
            description=f"Tool execution failed: {exc}",
            context={
                "position": position,
                "round": round,
                "tool_name": step.tool_name,
                "model": step_input.model,
                "error_type": type(exc).__name__,
            },
            suggestions=["Check tool configuration and input parameters"],
            round=round,
        )
        return Attempt(
            tool_name=step.tool_name,
            round=round,
            input=step_input,
            output=InvocationFailure(error=str(exc), round=round),
            output_type=InvocationFailure,
            usage=TokenUsage.zero(),
            audit=AuditOutcome(issues=[issue], passed=False, failure_reason=issue.description),
        )

    # ------------------------------------------------------------------
    # Decode + audit
    # ------------------------------------------------------------------

    def _decoded_attempt(
        self,
        step: Step,
        step_input: StepInput,
        raw: dict[str, Any],
        usage: TokenUsage,
    ) -> Attempt:
        round = step_input.round
        if step.config.output_sanitizer is not None:
            try:
                raw = step.config.output_sanitizer(raw)
            except Exception as exc:
                raise DecodeError(step.tool_name, f"output sanitizer failed: {exc}") from exc

        output = self._registry.create(step.tool_name, raw, round)
        issues = run_audits(step.config.audits, output, round)
        passed = step.config.passed(issues)
        return Attempt(
            tool_name=step.tool_name,
            round=round,
            input=step_input,
            output=output,
            output_type=self._registry.get_type(step.tool_name),
            usage=usage,
            audit=AuditOutcome(
                issues=issues,
                passed=passed,
                failure_reason=None if passed else step.config.failure_reason(issues),
            ),
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def execute(self, step: Step, position: int, history: HistoryView) -> StepOutcome:
        """
        Run `step` at `position` until it is accepted or out of retries.

        With audit_only_final_attempt the first decoded attempt closes the
        step and its audit verdict is final; invocation failures still retry.
        """
        config = step.config
        outcome = StepOutcome()

        for round in range(config.max_retries + 1):
            step_input = self.build_input(step, history, round)
            included = select_included_results(history, step)
            retries = select_retry_attempts(position, outcome.attempts, config.severity_filter)

            decoded = False
            try:
                raw, usage = await self._invoke(step, step_input, included, retries)
            except Exception as exc:
                logger.warning(
                    "Step %d (%s) round %d invocation failed: %s",
                    position, step.tool_name, round, exc,
                )
                attempt = self._failure_attempt(step, position, step_input, exc)
            else:
                attempt = self._decoded_attempt(step, step_input, raw, usage)
                decoded = True

            outcome.attempts.append(attempt)

            if attempt.passed:
                logger.info("Step %d (%s) accepted at round %d", position, step.tool_name, round)
                outcome.passed = True
                return outcome

            if decoded and config.audit_only_final_attempt:
                break

            if round < config.max_retries:
                logger.info(
                    "Step %d (%s) round %d failed. %s. Retrying...",
                    position, step.tool_name, round, attempt.audit.failure_reason,
                )
                if config.retry_delay:
                    await asyncio.sleep(config.retry_delay)

        outcome.halted = config.stop_on_failure
        if outcome.halted:
            logger.error(
                "Step %d (%s) failed after %d attempt(s). Stopping flow execution.",
                position, step.tool_name, len(outcome.attempts),
            )
        else:
            logger.warning(
                "Step %d (%s) failed after %d attempt(s). Continuing with last attempt.",
                position, step.tool_name, len(outcome.attempts),
            )
        return outcome

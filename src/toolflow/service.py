# service.py
# Generation collaborators: the interface the executor calls, the OpenAI
# function-calling adapter, and a canned-response mock.
#
# A service returns unstructured output plus token usage. It never decodes,
# audits or retries; failures are raised and the executor turns them into
# retryable issues.

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from toolflow.config import FlowConfig
from toolflow.errors import ConfigurationError, InvocationError
from toolflow.models import ContextEntry, StepInput, TokenUsage, ToolOutput
from toolflow.steps import ToolCallStep

logger = logging.getLogger(__name__)


class ServiceResponse(BaseModel):
    output: dict[str, Any] = Field(default_factory=dict)
    usage: TokenUsage = Field(default_factory=TokenUsage.zero)


class GenerationService(ABC):
    """Remote collaborator invoked once per attempt of a ToolCallStep.

    `output_type` is the type the flow will decode the output into, when one
    is registered for the tool.
    """

    @abstractmethod
    async def invoke(
        self,
        step: ToolCallStep,
        step_input: StepInput,
        included_results: list[ContextEntry],
        retry_attempts: list[ContextEntry],
        output_type: type[ToolOutput] | None = None,
    ) -> ServiceResponse:
        ...


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------


SYSTEM_PROMPT = """\
You are an AI assistant executing tool calls in a structured workflow.
Call the provided function exactly once. Its arguments are the step output \
and must match the function schema.\
"""


def _render_entry(label: str, entry: ContextEntry) -> list[str]:
    lines = [f"  {label}: {entry.tool_name} (position {entry.position}, round {entry.round})"]
    lines.append(f"    Output: {json.dumps(entry.output.to_map(), default=str)}")
    if entry.issues:
        lines.append("    Associated issues:")
        for issue in entry.issues:
            lines.append(f"      - {issue.severity.value.upper()}: {issue.description}")
            for suggestion in issue.suggestions:
                lines.append(f"        suggestion: {suggestion}")
    return lines


def build_system_message(
    step: ToolCallStep,
    step_input: StepInput,
    included_results: list[ContextEntry],
    retry_attempts: list[ContextEntry],
) -> str:
    lines = [SYSTEM_PROMPT, ""]
    lines.append(f"Current Step: Tool: {step.tool_name}, Model: {step_input.model}")
    if step.description:
        lines.append(f"Step description: {step.description}")

    if included_results:
        lines.append("")
        lines.append("Previous step results and associated issues:")
        for entry in included_results:
            lines.extend(_render_entry("Step", entry))

    if retry_attempts:
        lines.append("")
        lines.append("Current step retry attempts and associated issues:")
        for index, entry in enumerate(retry_attempts, start=1):
            lines.extend(_render_entry(f"Attempt {index}", entry))
        lines.append("Address the issues above in this attempt.")

    return "\n".join(lines)


def build_user_message(step: ToolCallStep, step_input: StepInput) -> str:
    return (
        "Please execute the tool with the following parameters:\n\n"
        f"{json.dumps(step_input.data, default=str)}\n\n"
        f"Instructions: Execute the {step.tool_name} tool with the provided parameters.\n"
        "Output format: Return structured JSON output matching the tool schema."
    )


def output_parameters_schema(output_type: type[ToolOutput] | None) -> dict[str, Any]:
    """JSON schema of an output model, without engine bookkeeping fields."""
    if output_type is None:
        return {"type": "object", "properties": {}, "additionalProperties": True}

    schema = output_type.model_json_schema()
    schema.get("properties", {}).pop("round", None)
    if "required" in schema:
        schema["required"] = [name for name in schema["required"] if name != "round"]
    schema.pop("title", None)
    return schema


def _uses_completion_tokens(model: str) -> bool:
    lowered = model.lower()
    return any(family in lowered for family in ("gpt-5", "o1", "o3"))


# ---------------------------------------------------------------------------
# OpenAI adapter
# ---------------------------------------------------------------------------


class OpenAIToolService(GenerationService):
    """
    Chat-completions adapter that forces a single function call per attempt.

    The function's parameters are the JSON schema of the output type the
    flow resolved for the tool, or of the step's own output type.

    Example:
        service = OpenAIToolService(FlowConfig.from_env())
        flow = ToolFlow(steps, service=service)
    """

    def __init__(
        self,
        config: FlowConfig,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._config = config
        if client is None:
            if not config.api_key:
                raise ConfigurationError("OPENAI_API_KEY is required for OpenAIToolService.")
            client = AsyncOpenAI(
                api_key=config.api_key,
                base_url=config.base_url,
                timeout=config.timeout,
            )
        self._client = client

    def build_request(
        self,
        step: ToolCallStep,
        step_input: StepInput,
        included_results: list[ContextEntry],
        retry_attempts: list[ContextEntry],
        output_type: type[ToolOutput] | None = None,
    ) -> dict[str, Any]:
        model = step_input.model or self._config.default_model
        tool = {
            "type": "function",
            "function": {
                "name": step.tool_name,
                "description": step.description or f"Execute {step.tool_name} tool with provided parameters",
                "parameters": output_parameters_schema(output_type or step.output_type),
            },
        }
        request: dict[str, Any] = {
            "model": model,
            "messages": [
                {
                    "role": "system",
                    "content": build_system_message(step, step_input, included_results, retry_attempts),
                },
                {"role": "user", "content": build_user_message(step, step_input)},
            ],
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": step.tool_name}},
        }

        max_tokens = step_input.max_tokens if step_input.max_tokens is not None else 2000
        if _uses_completion_tokens(model):
            # These families reject temperature and max_tokens.
            request["max_completion_tokens"] = max_tokens
        else:
            temperature = step_input.temperature
            request["temperature"] = temperature if temperature is not None else 0.7
            request["max_tokens"] = max_tokens
        return request

    async def invoke(
        self,
        step: ToolCallStep,
        step_input: StepInput,
        included_results: list[ContextEntry],
        retry_attempts: list[ContextEntry],
        output_type: type[ToolOutput] | None = None,
    ) -> ServiceResponse:
        request = self.build_request(step, step_input, included_results, retry_attempts, output_type)
        logger.debug("Calling %s for %s (round %d)", request["model"], step.tool_name, step_input.round)
        try:
            response = await self._client.chat.completions.create(**request)
        except openai.OpenAIError as exc:
            raise InvocationError(step.tool_name, str(exc)) from exc

        return ServiceResponse(
            output=self.parse_tool_call(response, step.tool_name),
            usage=TokenUsage.from_usage(getattr(response, "usage", None)),
        )

    @staticmethod
    def parse_tool_call(response: Any, expected_tool: str) -> dict[str, Any]:
        """
        Extract the function-call arguments from a chat completion.
        Raises InvocationError on any structural problem.
        """
        choices = getattr(response, "choices", None)
        if not choices:
            raise InvocationError(expected_tool, "no choices in response")

        message = choices[0].message
        tool_calls = getattr(message, "tool_calls", None)
        if not tool_calls:
            raise InvocationError(expected_tool, "no tool calls in response")

        function = tool_calls[0].function
        if function.name != expected_tool:
            raise InvocationError(expected_tool, f"expected tool {expected_tool} but got {function.name}")

        try:
            arguments = json.loads(function.arguments or "")
        except json.JSONDecodeError as exc:
            raise InvocationError(expected_tool, f"arguments are not valid JSON: {exc}") from exc

        if not isinstance(arguments, dict):
            raise InvocationError(expected_tool, "arguments must be a JSON object")
        return arguments


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------


class MockToolService(GenerationService):
    """
    Returns canned outputs per tool name.

    `responses` maps a tool to one output mapping, or to a list of outputs
    consumed one per call (the last is repeated once the list runs out).
    An Exception instance in a list is raised for that call.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        default_response: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
        latency: float = 0.0,
    ) -> None:
        self.responses = responses or {}
        self.default_response = default_response
        self.usage = usage or TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        self.latency = latency
        self.calls: list[dict[str, Any]] = []

    def _next_output(self, tool_name: str, call_index: int) -> Any:
        canned = self.responses.get(tool_name, self.default_response)
        if canned is None:
            raise InvocationError(tool_name, "no mock response configured")
        if isinstance(canned, list):
            return canned[min(call_index, len(canned) - 1)]
        return canned

    async def invoke(
        self,
        step: ToolCallStep,
        step_input: StepInput,
        included_results: list[ContextEntry],
        retry_attempts: list[ContextEntry],
        output_type: type[ToolOutput] | None = None,
    ) -> ServiceResponse:
        if self.latency:
            await asyncio.sleep(self.latency)

        call_index = sum(1 for call in self.calls if call["tool_name"] == step.tool_name)
        self.calls.append(
            {
                "tool_name": step.tool_name,
                "input": step_input,
                "included_results": list(included_results),
                "retry_attempts": list(retry_attempts),
                "output_type": output_type,
            }
        )

        output = self._next_output(step.tool_name, call_index)
        if isinstance(output, Exception):
            raise output
        return ServiceResponse(output=dict(output), usage=self.usage)

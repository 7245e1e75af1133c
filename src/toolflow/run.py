# run.py
# Demo entry point. Config and wiring only, no engine logic lives here.
#
# With OPENAI_API_KEY set (environment or .env) the flow calls the OpenAI
# API; otherwise it runs against canned responses so it works offline.

import logging

from pydantic import Field

from toolflow import display
from toolflow.audit import FunctionAudit
from toolflow.config import FlowConfig
from toolflow.flow import ToolFlow
from toolflow.history import HistoryView
from toolflow.models import Issue, Severity, ToolOutput
from toolflow.service import GenerationService, MockToolService, OpenAIToolService
from toolflow.steps import LocalStep, StepConfig, ToolCallStep

INITIAL_INPUT = {
    "topic": "tidal energy",
    "audience": "city council",
    "max_words": 120,
}


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


class BriefRequest(ToolOutput):
    topic: str
    audience: str
    word_budget: int


class Summary(ToolOutput):
    title: str = Field(..., description="Short headline for the brief.")
    body: str = Field(..., description="The brief itself.")
    key_points: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def normalise_request(data: dict) -> dict:
    return {
        "topic": str(data["topic"]).strip().title(),
        "audience": str(data.get("audience", "general public")),
        "word_budget": int(data.get("max_words", 150)),
    }


def summary_input(history: HistoryView) -> dict:
    request = history.final(1).output_as(BriefRequest)
    return {
        "topic": request.topic,
        "audience": request.audience,
        "word_budget": request.word_budget,
    }


def check_summary(output: Summary) -> list[Issue]:
    issues = []
    if len(output.key_points) < 3:
        issues.append(
            Issue(
                id="too_few_key_points",
                severity=Severity.CRITICAL,
                description=f"Expected at least 3 key points, got {len(output.key_points)}",
                suggestions=["List three or more distinct key points"],
            )
        )
    if not output.title.strip():
        issues.append(
            Issue(
                id="missing_title",
                severity=Severity.MEDIUM,
                description="Summary has no title",
            )
        )
    return issues


STEPS = [
    LocalStep(
        tool_name="normalise_request",
        compute=normalise_request,
        description="Clean up the incoming request.",
        output_type=BriefRequest,
    ),
    ToolCallStep(
        tool_name="write_summary",
        description="Write a short policy brief on the topic for the audience.",
        input_builder=summary_input,
        include_results=(1,),
        output_type=Summary,
        config=StepConfig(
            audits=(FunctionAudit("key_points", check_summary, Summary),),
            max_retries=2,
        ),
    ),
]

# Offline responses: the first draft fails the audit, the retry passes.
MOCK_RESPONSES = {
    "write_summary": [
        {"title": "Tidal Energy", "body": "Tides are predictable.", "key_points": ["predictable"]},
        {
            "title": "Tidal Energy for the City",
            "body": "Tidal power is predictable, low-carbon and suited to our estuary.",
            "key_points": ["predictable output", "low carbon", "local jobs"],
        },
    ]
}


def build_service(config: FlowConfig) -> GenerationService:
    if config.api_key:
        return OpenAIToolService(config)
    return MockToolService(MOCK_RESPONSES)


def main() -> None:
    display.configure_logging(logging.INFO)
    config = FlowConfig.from_env()
    flow = ToolFlow(STEPS, service=build_service(config), config=config)

    display.flow_banner(flow)
    report = flow.run_sync(INITIAL_INPUT)
    display.report_summary(report)


if __name__ == "__main__":
    main()

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from toolflow.audit import FunctionAudit
from toolflow.config import FlowConfig
from toolflow.errors import ConfigurationError, DecodeError, InputBuildError, UnregisteredToolError
from toolflow.flow import FlowReport, ToolFlow, UsageScope
from toolflow.history import HistoryView
from toolflow.models import InvocationFailure, Issue, SeedOutput, Severity, TokenUsage, ToolOutput
from toolflow.registry import OutputRegistry, default_registry
from toolflow.service import MockToolService
from toolflow.steps import LocalStep, StepConfig, ToolCallStep

INITIAL = {"topic": "tides"}


class Draft(ToolOutput):
    text: str


class Count(ToolOutput):
    count: int


class Words(ToolOutput):
    words: int


class Length(ToolOutput):
    length: int


def require_text(output: Draft) -> list[Issue]:
    if not output.text:
        return [Issue(id="empty_text", severity=Severity.CRITICAL, description="Draft is empty")]
    return []


def style_note(output: Draft) -> list[Issue]:
    return [Issue(id="style", severity=Severity.MEDIUM, description="Could be punchier")]


def draft_step(**config) -> ToolCallStep:
    return ToolCallStep(
        "draft",
        output_type=Draft,
        config=StepConfig(audits=(FunctionAudit("require_text", require_text, Draft),), **config),
    )


def run(flow: ToolFlow, **kwargs) -> FlowReport:
    return asyncio.run(flow.run(dict(INITIAL), **kwargs))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_single_step_passes_first_round():
    service = MockToolService({"draft": {"text": "Tides rise twice a day."}})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    report = run(flow)

    assert len(report.results) == 2
    assert len(report.attempts_for(1)) == 1
    assert report.passed is True
    assert report.halted_at is None
    assert report.final_results[1].output_as(Draft).text == "Tides rise twice a day."


def test_retries_until_audit_passes():
    service = MockToolService({"draft": [{"text": ""}, {"text": ""}, {"text": "third time lucky"}]})
    flow = ToolFlow([draft_step(max_retries=2)], service=service, registry=OutputRegistry())

    report = run(flow)

    attempts = report.attempts_for(1)
    assert [a.round for a in attempts] == [0, 1, 2]
    assert [a.passed for a in attempts] == [False, False, True]
    assert attempts[0].audit.failure_reason.startswith("require_text: Critical issues found")
    assert report.passed is True


def test_retry_rounds_see_earlier_attempts():
    service = MockToolService({"draft": [{"text": ""}, {"text": "fixed"}]})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    run(flow)

    assert service.calls[0]["retry_attempts"] == []
    retries = service.calls[1]["retry_attempts"]
    assert len(retries) == 1
    assert retries[0].round == 0
    assert [i.id for i in retries[0].issues] == ["empty_text"]
    assert service.calls[1]["input"].round == 1


def test_seed_context_is_empty_under_high_filter():
    service = MockToolService({"draft": {"text": "ok"}})
    step = ToolCallStep(
        "draft",
        output_type=Draft,
        include_results=(0,),
        config=StepConfig(severity_filter=Severity.HIGH),
    )
    run(ToolFlow([step], service=service, registry=OutputRegistry()))

    assert service.calls[0]["included_results"] == []


def test_unregistered_tool_aborts_the_run():
    service = MockToolService({"mystery": {"text": "?"}})
    flow = ToolFlow([ToolCallStep("mystery")], service=service, registry=OutputRegistry())

    with pytest.raises(UnregisteredToolError):
        run(flow)


def test_exhausted_step_halts_the_flow():
    service = MockToolService({"draft": {"text": ""}, "polish": {"text": "never"}})
    polish = ToolCallStep("polish", output_type=Draft)
    flow = ToolFlow([draft_step(max_retries=1), polish], service=service, registry=OutputRegistry())

    report = run(flow)

    assert len(report.results) == 3
    assert len(report.attempts_for(1)) == 2
    assert report.attempts_for(2) == []
    assert report.halted_at == 1
    assert report.passed is False
    assert all(call["tool_name"] == "draft" for call in service.calls)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

def test_invocation_failure_is_recorded_and_retried():
    service = MockToolService({"draft": [RuntimeError("connection reset"), {"text": "recovered"}]})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    report = run(flow)

    failed, recovered = report.attempts_for(1)
    assert failed.has_output_type(InvocationFailure)
    assert failed.output_as(InvocationFailure).error == "connection reset"
    assert failed.passed is False
    assert failed.usage == TokenUsage.zero()
    assert failed.issues[0].id == "invocation_error_draft_1_round_0"
    assert failed.issues[0].severity is Severity.CRITICAL
    assert failed.issues[0].context["error_type"] == "RuntimeError"
    assert recovered.passed is True


def test_decode_failure_aborts_the_run():
    service = MockToolService({"draft": {"unexpected": "shape"}})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    with pytest.raises(DecodeError):
        run(flow)


def test_output_sanitizer_runs_before_decoding():
    service = MockToolService({"draft": {"body": "renamed"}})
    step = ToolCallStep(
        "draft",
        output_type=Draft,
        config=StepConfig(output_sanitizer=lambda raw: {"text": raw["body"]}),
    )
    report = run(ToolFlow([step], service=service, registry=OutputRegistry()))

    assert report.final_results[1].output_as(Draft).text == "renamed"


def test_input_builder_failure_aborts_the_run():
    def builder(history):
        return {"missing": history.seed.output.to_map()["nope"]}

    step = ToolCallStep("draft", output_type=Draft, input_builder=builder)
    flow = ToolFlow([step], service=MockToolService({"draft": {"text": "x"}}), registry=OutputRegistry())

    with pytest.raises(InputBuildError, match="'draft'"):
        run(flow)


def test_audit_only_final_attempt_does_not_retry_audit_failures():
    service = MockToolService({"draft": {"text": ""}})
    flow = ToolFlow(
        [draft_step(max_retries=3, audit_only_final_attempt=True)],
        service=service,
        registry=OutputRegistry(),
    )

    report = run(flow)

    assert len(report.attempts_for(1)) == 1
    assert report.halted_at == 1


def test_continue_past_failure_feeds_last_attempt_downstream():
    seen = []

    def count_chars(data):
        seen.append(data)
        return {"count": len(data["text"])}

    service = MockToolService({"draft": {"text": ""}})
    flow = ToolFlow(
        [
            draft_step(max_retries=0, stop_on_failure=False),
            LocalStep("count", compute=count_chars, output_type=Count),
        ],
        service=service,
        registry=OutputRegistry(),
    )

    report = run(flow)

    assert report.halted_at is None
    assert report.passed is False
    assert seen == [{"text": ""}]
    assert report.final_results[2].output_as(Count).count == 0


# ---------------------------------------------------------------------------
# Inputs & context
# ---------------------------------------------------------------------------

def test_first_step_defaults_to_seed_input():
    service = MockToolService({"draft": {"text": "ok"}})
    report = run(ToolFlow([draft_step()], service=service, registry=OutputRegistry()))

    assert service.calls[0]["input"].data == INITIAL
    assert service.calls[0]["input"].model == "gpt-4o"
    assert report.results[0][0].output_as(SeedOutput).data == INITIAL


def test_input_builder_reads_typed_history():
    service = MockToolService({"draft": {"text": "hello world"}, "review": {"text": "fine"}})
    review = ToolCallStep(
        "review",
        model="gpt-4o-mini",
        output_type=Draft,
        input_builder=lambda history: {"draft": history.final(1).output_as(Draft).text},
    )
    run(ToolFlow([draft_step(), review], service=service, registry=OutputRegistry()))

    assert service.calls[1]["input"].data == {"draft": "hello world"}
    assert service.calls[1]["input"].model == "gpt-4o-mini"


def test_included_results_carry_surviving_issues():
    service = MockToolService({"draft": {"text": "ok"}, "review": {"text": "fine"}})
    draft = ToolCallStep(
        "draft",
        output_type=Draft,
        config=StepConfig(audits=(FunctionAudit("style", style_note, Draft),)),
    )
    review = ToolCallStep("review", output_type=Draft, include_results=(0, 1))

    report = run(ToolFlow([draft, review], service=service, registry=OutputRegistry()))

    assert report.attempts_for(1)[0].passed is True
    included = service.calls[1]["included_results"]
    assert [e.position for e in included] == [1]
    assert [i.id for i in included[0].issues] == ["style"]


def test_local_step_async_compute_and_zero_usage():
    async def count_keys(data):
        return {"count": len(data)}

    flow = ToolFlow([LocalStep("count", compute=count_keys, output_type=Count)], registry=OutputRegistry())
    report = run(flow)

    final = report.final_results[1]
    assert final.output_as(Count).count == 1
    assert final.usage == TokenUsage.zero()
    assert final.input.model is None
    assert report.usage.total == TokenUsage.zero()


def test_local_step_non_dict_result_is_an_invocation_failure():
    flow = ToolFlow(
        [LocalStep("count", compute=lambda data: 42, output_type=Count, config=StepConfig(max_retries=1))],
        registry=OutputRegistry(),
    )
    report = run(flow)

    assert [a.output_type for a in report.attempts_for(1)] == [InvocationFailure, InvocationFailure]
    assert report.halted_at == 1


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def test_usage_scopes():
    service = MockToolService({"draft": [{"text": ""}, {"text": "ok"}]})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    everything = run(flow)
    final_only = run(flow, usage_scope=UsageScope.FINAL_ONLY)

    assert everything.usage.per_position[0] == TokenUsage.zero()
    assert everything.usage.total.total_tokens == 300
    assert final_only.usage.total.total_tokens == 150


def test_prune_history_keeps_final_attempts_and_full_usage():
    service = MockToolService({"draft": [{"text": ""}, {"text": "ok"}]})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    report = run(flow, prune_history=True)

    assert report.pruned is True
    assert [len(attempts) for attempts in report.results] == [1, 1]
    assert report.results[1][0].round == 1
    assert report.usage.total.total_tokens == 300


def test_flow_is_reusable_across_runs():
    service = MockToolService({"draft": {"text": "ok"}})
    flow = ToolFlow([draft_step()], service=service, registry=OutputRegistry())

    first = run(flow)
    second = run(flow)

    assert len(first.results) == len(second.results) == 2
    assert len(second.attempts_for(1)) == 1
    assert len(service.calls) == 2


def test_report_lookups_and_dict():
    service = MockToolService({"draft": [{"text": ""}, {"text": "ok"}]})
    report = run(ToolFlow([draft_step()], service=service, registry=OutputRegistry()))

    assert report.final_result_by_tool("draft").output_as(Draft).text == "ok"
    assert report.final_result_by_tool("nothing") is None
    assert [i.id for i in report.all_issues] == ["empty_text"]
    assert report.final_issues == []

    data = report.to_dict()
    assert data["passed"] is True
    assert data["results"][1][1]["output_type"] == "Draft"
    assert data["usage"]["total"]["total_tokens"] == 300


def test_run_sync():
    flow = ToolFlow([LocalStep("count", compute=lambda d: {"count": 3}, output_type=Count)], registry=OutputRegistry())
    assert flow.run_sync({"a": 1}).passed is True


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_forward_reference_is_rejected():
    step = ToolCallStep("draft", output_type=Draft, include_results=(1,))
    with pytest.raises(ConfigurationError, match="includes position 1"):
        ToolFlow([step], service=MockToolService(), registry=OutputRegistry())


def test_remote_step_needs_a_service():
    with pytest.raises(ConfigurationError, match="no service"):
        ToolFlow([draft_step()], registry=OutputRegistry())


def test_initial_input_must_be_a_mapping():
    flow = ToolFlow([LocalStep("count", compute=lambda d: {"count": 0}, output_type=Count)], registry=OutputRegistry())
    with pytest.raises(TypeError):
        asyncio.run(flow.run(["not", "a", "dict"]))


def test_step_output_types_are_registered_on_the_flow_only():
    source = OutputRegistry()
    flow = ToolFlow([draft_step()], service=MockToolService(), registry=source)
    assert flow.registry.get_type("draft") is Draft
    assert not source.is_registered("draft")


def test_pre_registered_decoders_are_carried_over():
    source = OutputRegistry()
    source.register_model("draft", Draft)
    service = MockToolService({"draft": {"text": "typed elsewhere"}})

    report = run(ToolFlow([ToolCallStep("draft")], service=service, registry=source))

    assert report.final_results[1].output_as(Draft).text == "typed elsewhere"
    assert service.calls[0]["output_type"] is Draft


def test_flows_on_the_default_registry_do_not_interfere():
    first = ToolFlow([LocalStep("measure", compute=lambda data: {"words": 2}, output_type=Words)])
    second = ToolFlow([LocalStep("measure", compute=lambda data: {"length": 9}, output_type=Length)])

    assert run(first).final_results[1].output_as(Words).words == 2
    assert run(second).final_results[1].output_as(Length).length == 9
    assert not default_registry.is_registered("measure")


def test_conflicting_output_types_for_one_tool_are_rejected():
    steps = [
        LocalStep("measure", compute=lambda data: {"words": 2}, output_type=Words),
        LocalStep("measure", compute=lambda data: {"length": 9}, output_type=Length),
    ]
    with pytest.raises(ConfigurationError, match="Words and Length"):
        ToolFlow(steps)


def test_repeated_tool_with_same_output_type_is_allowed():
    steps = [
        LocalStep("measure", compute=lambda data: {"words": 2}, output_type=Words),
        LocalStep("measure", compute=lambda data: {"words": 3}, output_type=Words),
    ]
    report = run(ToolFlow(steps))
    assert [a.output_as(Words).words for a in report.final_results[1:]] == [2, 3]


# ---------------------------------------------------------------------------
# Retry delay, sanitizers, history access
# ---------------------------------------------------------------------------

def test_retry_delay_is_awaited_between_rounds():
    service = MockToolService({"draft": {"text": ""}})
    flow = ToolFlow([draft_step(max_retries=2, retry_delay=0.5)], service=service, registry=OutputRegistry())

    with patch("toolflow.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        report = run(flow)

    assert len(report.attempts_for(1)) == 3
    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.5)


def test_retry_delay_is_skipped_when_first_round_passes():
    service = MockToolService({"draft": {"text": "fine"}})
    flow = ToolFlow([draft_step(max_retries=2, retry_delay=0.5)], service=service, registry=OutputRegistry())

    with patch("toolflow.executor.asyncio.sleep", new_callable=AsyncMock) as sleep:
        run(flow)

    sleep.assert_not_awaited()


def test_input_sanitizer_shapes_the_service_input():
    service = MockToolService({"draft": {"text": "ok"}})
    step = ToolCallStep(
        "draft",
        output_type=Draft,
        config=StepConfig(input_sanitizer=lambda data: {"topic": data["topic"].upper()}),
    )
    run(ToolFlow([step], service=service, registry=OutputRegistry()))

    assert service.calls[0]["input"].data == {"topic": "TIDES"}


def test_failing_input_sanitizer_aborts_the_run():
    def reject(data):
        raise ValueError("topic not allowed")

    step = ToolCallStep("draft", output_type=Draft, config=StepConfig(input_sanitizer=reject))
    flow = ToolFlow([step], service=MockToolService({"draft": {"text": "x"}}), registry=OutputRegistry())

    with pytest.raises(InputBuildError, match="topic not allowed"):
        run(flow)


def test_input_builder_gets_a_read_only_history():
    seen = []

    def builder(history):
        seen.append(history)
        return {"seen": len(history)}

    step = LocalStep("count", compute=lambda data: {"count": data["seen"]}, input_builder=builder, output_type=Count)
    report = run(ToolFlow([step], registry=OutputRegistry()))

    assert isinstance(seen[0], HistoryView)
    assert not hasattr(seen[0], "append_position")
    assert report.final_results[1].output_as(Count).count == 1


def test_input_builder_cannot_grow_the_history():
    def builder(history):
        history.append_position([])
        return {}

    step = LocalStep("count", compute=lambda data: {"count": 0}, input_builder=builder, output_type=Count)
    with pytest.raises(InputBuildError, match="append_position"):
        run(ToolFlow([step], registry=OutputRegistry()))


# ---------------------------------------------------------------------------
# Model settings on step inputs
# ---------------------------------------------------------------------------

def test_local_step_input_has_no_model_settings():
    flow = ToolFlow(
        [LocalStep("count", compute=lambda data: {"count": 1}, output_type=Count)],
        config=FlowConfig(default_max_tokens=500, default_temperature=0.3),
        registry=OutputRegistry(),
    )
    step_input = run(flow).final_results[1].input

    assert step_input.model is None
    assert step_input.temperature is None
    assert step_input.max_tokens is None


def test_explicit_zero_max_tokens_is_not_replaced_by_default():
    service = MockToolService({"draft": {"text": "ok"}})
    flow = ToolFlow(
        [draft_step(max_tokens=0)],
        service=service,
        config=FlowConfig(default_max_tokens=500),
        registry=OutputRegistry(),
    )
    run(flow)

    assert service.calls[0]["input"].max_tokens == 0


def test_step_max_tokens_defaults_to_flow_config():
    service = MockToolService({"draft": {"text": "ok"}})
    flow = ToolFlow([draft_step()], service=service, config=FlowConfig(default_max_tokens=500), registry=OutputRegistry())
    run(flow)

    assert service.calls[0]["input"].max_tokens == 500

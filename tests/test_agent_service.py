import asyncio
import json

import pytest

from ponder.application.agent_service import AgentService
from ponder.config import AgentSettings
from ponder.domain.context.memory.knowledge_store import InMemoryKnowledgeStore
from ponder.domain.context.state.kv_store import InMemoryKeyValueStore
from ponder.domain.errors import AgentRunError, AgentTimeoutError, SessionBusyError, SessionNotFoundError
from ponder.domain.models.agent_state import (
    AgentPhase, AgentStep, AgentTrajectory, StepType, TokenCounts, ToolCall, TrajectoryStatus
)
from ponder.domain.models.trajectory_log import LogEntryType
from ponder.domain.orchestration.core.main_agent import RunOutcome, get_final_response, retry_key
from ponder.domain.streaming.streaming_handler import OutputChannel
from ponder.domain.tool.tool_definitions import EXPLAIN_TOOL, SEARCH_TOOL
from ponder.domain.tool.tool_registry import ToolRegistry, ToolSchema
from ponder.domain.trajectory.trajectory_logger import get_entries_by_type, has_errors

from conftest import Hang, ScriptedModel, word_count


def tool_call(name, **params):
    return (
        f"Let me use {name}.\n<tool_call>\n<name>{name}</name>\n"
        f"<parameters>{json.dumps(params)}</parameters>\n<reasoning>needed</reasoning>\n</tool_call>"
    )


def url_schema(name):
    return ToolSchema(
        name=name,
        description=f"{name} tool",
        parameters={"type": "object", "properties": {"url": {"type": "string"}}, "required": ["url"]},
    )


def make_service(model, settings=None, **kwargs):
    return AgentService(
        model,
        settings or AgentSettings(run_timeout_seconds=5.0, tool_timeout_seconds=1.0),
        token_counter=word_count,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_goal_with_tool_completes_and_streams_answer():
    model = ScriptedModel({"reason": [tool_call(EXPLAIN_TOOL, selectedText="eventual consistency")]})
    service = make_service(model)
    session = await service.create_session()
    statuses = []
    output = OutputChannel()

    result = await service.run_goal(session.session_id, "explain eventual consistency", statuses.append, output)

    assert result.outcome == RunOutcome.COMPLETED
    assert result.response == "Final answer"
    assert result.trajectory.status == TrajectoryStatus.COMPLETED
    assert [s.type for s in result.trajectory.steps] == [
        StepType.THOUGHT, StepType.ACTION, StepType.OBSERVATION, StepType.SYNTHESIS
    ]
    assert result.trajectory.steps[1].tool_result.data == {"explanation": "It means replicas converge eventually."}
    assert 0.0 <= result.trajectory.efficiency <= 1.0
    assert await output.collect() == "Final answer"

    assert [s.phase for s in statuses] == [
        AgentPhase.IDLE, AgentPhase.THINKING, AgentPhase.EXECUTING, AgentPhase.ANALYZING,
        AgentPhase.SYNTHESIZING, AgentPhase.DONE, AgentPhase.IDLE,
    ]
    assert statuses[2].current_tool == EXPLAIN_TOOL
    assert model.count("explain") == 1

    stored = await service.get_session(session.session_id)
    assert stored.trajectory.status == TrajectoryStatus.COMPLETED
    assert stored.token_usage.session_total.total > 0
    assert stored.trajectory.total_tokens.total == stored.token_usage.current_operation.total
    assert service.sessions.active_count() == 0


@pytest.mark.asyncio
async def test_direct_synthesis_skips_tools():
    service = make_service(ScriptedModel())
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "say hi")

    assert result.outcome == RunOutcome.COMPLETED
    assert result.response == "Default answer"
    assert [s.type for s in result.trajectory.steps] == [StepType.THOUGHT, StepType.SYNTHESIS]


@pytest.mark.asyncio
async def test_repeated_timeouts_inject_reflections_and_alternative():
    async def slow(params, cancel_token):
        await asyncio.sleep(5)

    async def echo(params, cancel_token):
        return {"url": params["url"]}

    registry = ToolRegistry()
    registry.register_tool(url_schema("fetch_page"), slow, timeout_seconds=0.05)
    registry.register_tool(url_schema("echo"), echo)

    model = ScriptedModel({"reason": [
        tool_call("fetch_page", url="https://example.com"),
        tool_call("fetch_page", url="https://example.com"),
        "<synthesis>Done</synthesis>",
    ]})
    service = make_service(model, registry=registry)
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "read the page")

    assert result.outcome == RunOutcome.COMPLETED
    state = await service.get_session(session.session_id)
    assert state.memory.error_counts == {"timeout:fetch_page": 2}
    assert len(state.memory.reflections) == 2
    assert model.count("reflect") == 2
    assert model.count("alternative") == 1

    second, third = model.prompts("reason")[1:]
    assert "<last_tool_error>\nTool execution timeout after 0.05s" in second[1].content
    assert "<previous_failures>" not in second[0].content
    assert "<previous_failures>" in third[0].content
    assert "<previous_failures>" not in third[1].content
    assert "<suggested_alternative>" in third[1].content
    assert '"tool": "echo"' in third[1].content

    # the reflection pulled into the context for the second attempt is marked applied in memory too
    attached = {r.id: r for r in state.context.reflections}
    assert attached
    for reflection in state.memory.reflections:
        if reflection.id in attached:
            assert reflection.applied
            assert attached[reflection.id] == reflection

    reflections = get_entries_by_type(result.log, LogEntryType.REFLECTION)
    assert [e.metadata["trigger_condition"] for e in reflections] == ["timeout:fetch_page"] * 2


@pytest.mark.asyncio
async def test_retry_limit_stops_reflecting():
    async def broken(params, cancel_token):
        raise RuntimeError("page exploded")

    registry = ToolRegistry()
    registry.register_tool(url_schema("fetch_page"), broken)
    model = ScriptedModel({"reason": [tool_call("fetch_page", url="u")]})
    settings = AgentSettings(max_steps=4, max_retries=1, run_timeout_seconds=5.0)
    service = make_service(model, settings, registry=registry)
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "read the page")

    assert result.outcome == RunOutcome.FAILED
    assert model.count("reflect") == 1
    assert has_errors(result.log)
    assert any("Retry limit reached for fetch_page" in e.content for e in result.log.entries)


@pytest.mark.asyncio
async def test_budget_exhaustion_fails_without_synthesis_call():
    model = ScriptedModel(
        {"reason": [tool_call(EXPLAIN_TOOL, selectedText="x")]},
        usage=TokenCounts(input=30, output=30),
    )
    settings = AgentSettings(token_budget=50, run_timeout_seconds=5.0)
    service = make_service(model, settings)
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "explain x")

    assert result.outcome == RunOutcome.FAILED
    assert result.trajectory.status == TrajectoryStatus.FAILED
    assert result.response == "[Incomplete - failed]\nLet me use explain_text_with_context."
    assert model.count("synthesize") == 0
    assert model.count("explain") == 0
    assert result.trajectory.total_tokens == TokenCounts(input=30, output=30)


@pytest.mark.asyncio
async def test_step_limit_ends_with_partial_result():
    model = ScriptedModel({
        "reason": [tool_call(EXPLAIN_TOOL, selectedText="x")],
        "observe": ["Useful but more is needed. <status>CONTINUE</status>"],
    })
    settings = AgentSettings(max_steps=2, run_timeout_seconds=5.0)
    service = make_service(model, settings)
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "explain x")

    assert result.outcome == RunOutcome.FAILED
    assert model.count("reason") == 2
    assert max(s.step_number for s in result.trajectory.steps) == 2
    assert result.response == "[Partial Result - failed]\nUseful but more is needed. <status>CONTINUE</status>"


@pytest.mark.asyncio
async def test_search_outage_disables_search_for_rest_of_run():
    model = ScriptedModel({
        "reason": [tool_call(SEARCH_TOOL, query="python news"), "<synthesis>Answer without search</synthesis>"],
        "observe": ["Search did not help. <status>CONTINUE</status>"],
    })
    service = make_service(model, knowledge_store=InMemoryKnowledgeStore())
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "latest python news")

    assert result.outcome == RunOutcome.COMPLETED
    first, second = model.prompts("reason")
    assert f"### {SEARCH_TOOL}" in first[0].content
    assert f"### {SEARCH_TOOL}" not in second[0].content

    state = await service.get_session(session.session_id)
    assert "Web search is unavailable; continue without it" in state.context.grounding.key_decisions


@pytest.mark.asyncio
async def test_timeout_reenters_in_degraded_mode():
    model = ScriptedModel({"reason": [Hang(2.0), "<synthesis>Recovered</synthesis>"]})
    settings = AgentSettings(run_timeout_seconds=0.2, degraded_retries=2, max_context_tokens=1000)
    service = make_service(model, settings)
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "answer quickly")

    assert result.outcome == RunOutcome.COMPLETED
    assert result.response == "Recovered"
    assert model.count("reason") == 2
    assert has_errors(result.log)

    state = await service.get_session(session.session_id)
    assert state.context.max_tokens == 500


@pytest.mark.asyncio
async def test_exhausted_degraded_retries_raise_timeout():
    model = ScriptedModel({"reason": [Hang(2.0)]})
    settings = AgentSettings(run_timeout_seconds=0.1, degraded_retries=1)
    service = make_service(model, settings)
    session = await service.create_session()

    with pytest.raises(AgentTimeoutError) as excinfo:
        await service.run_goal(session.session_id, "never answers")

    partial = excinfo.value.partial
    assert excinfo.value.error_type == "timeout"
    assert partial.outcome == RunOutcome.FAILED
    assert partial.trajectory.status == TrajectoryStatus.FAILED
    assert model.count("reason") == 2

    state = await service.get_session(session.session_id)
    assert state.trajectory.status == TrajectoryStatus.FAILED
    assert service.sessions.active_count() == 0


@pytest.mark.asyncio
async def test_timeout_on_last_step_does_not_extend_step_limit():
    model = ScriptedModel({
        "reason": [tool_call(EXPLAIN_TOOL, selectedText="x"), Hang(2.0)],
        "observe": ["Useful but more is needed. <status>CONTINUE</status>"],
    })
    settings = AgentSettings(max_steps=2, run_timeout_seconds=0.3, degraded_retries=2)
    service = make_service(model, settings)
    session = await service.create_session()
    statuses = []

    result = await service.run_goal(session.session_id, "explain x", statuses.append)

    assert result.outcome == RunOutcome.FAILED
    assert result.response.startswith("[Partial Result - failed]")
    assert model.count("reason") == 2
    assert max(s.step_number for s in result.trajectory.steps) <= 2
    assert all(s.max_steps == 2 for s in statuses)
    assert has_errors(result.log)


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    model = ScriptedModel({"reason": [RuntimeError("Rate limit exceeded"), "<synthesis>ok</synthesis>"]})
    service = make_service(model)
    session = await service.create_session()

    result = await service.run_goal(session.session_id, "anything")

    assert result.outcome == RunOutcome.COMPLETED
    assert result.response == "ok"
    errors = get_entries_by_type(result.log, LogEntryType.ERROR)
    assert errors[0].metadata["context_state"]["error_type"] == "rate_limit"


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    model = ScriptedModel({"reason": [ValueError("model exploded")]})
    service = make_service(model)
    session = await service.create_session()

    with pytest.raises(AgentRunError) as excinfo:
        await service.run_goal(session.session_id, "anything")

    assert excinfo.value.error_type == "error"
    assert excinfo.value.partial.outcome == RunOutcome.FAILED
    assert model.count("reason") == 1
    assert len(get_entries_by_type(excinfo.value.partial.log, LogEntryType.ERROR)) == 1


@pytest.mark.asyncio
async def test_cancellation_terminates_run():
    started = asyncio.Event()

    async def slow(params, cancel_token):
        started.set()
        await asyncio.sleep(10)

    registry = ToolRegistry()
    registry.register_tool(url_schema("fetch_page"), slow)
    model = ScriptedModel({"reason": [tool_call("fetch_page", url="u")]})
    settings = AgentSettings(run_timeout_seconds=5.0, tool_timeout_seconds=30.0)
    service = make_service(model, settings, registry=registry)
    session = await service.create_session()
    statuses = []

    task = asyncio.ensure_future(service.run_goal(session.session_id, "read", statuses.append))
    await started.wait()

    with pytest.raises(SessionBusyError):
        await service.run_goal(session.session_id, "second goal")

    assert await service.cancel_run(session.session_id)
    result = await task

    assert result.outcome == RunOutcome.CANCELLED
    assert result.trajectory.status == TrajectoryStatus.TERMINATED
    assert not has_errors(result.log)
    assert statuses[-1].phase == AgentPhase.IDLE
    assert AgentPhase.DONE not in [s.phase for s in statuses]
    assert service.sessions.active_count() == 0
    assert not await service.cancel_run(session.session_id)

    state = await service.get_session(session.session_id)
    assert state.trajectory.status == TrajectoryStatus.TERMINATED


@pytest.mark.asyncio
async def test_session_carries_state_between_runs():
    service = make_service(ScriptedModel())
    session = await service.create_session()

    first = await service.run_goal(session.session_id, "first goal")
    after_first = await service.get_session(session.session_id)
    second = await service.run_goal(session.session_id, "second goal")
    after_second = await service.get_session(session.session_id)

    assert first.request_id != second.request_id
    assert after_second.trajectory.goal == "second goal"
    assert after_second.context.grounding.current_goal == "second goal"
    assert after_second.token_usage.session_total.total > after_first.token_usage.session_total.total
    history = [e.content for e in after_second.context.history]
    assert "first goal" in history and "second goal" in history


@pytest.mark.asyncio
async def test_restart_recovery_and_session_lookup():
    store = InMemoryKeyValueStore()
    before = make_service(ScriptedModel(), store=store)
    state = await before.create_session()
    state.trajectory = AgentTrajectory(request_id="req_old", goal="interrupted")
    await before.state_manager.save_state(state)

    after = make_service(ScriptedModel(), store=store)
    assert await after.start() == [state.session_id]

    recovered = await after.get_session(state.session_id)
    assert recovered.trajectory.status == TrajectoryStatus.TERMINATED

    with pytest.raises(SessionNotFoundError):
        await after.get_session("missing")

    fresh = await after.resume_or_create("brand_new")
    assert fresh.session_id == "brand_new"
    assert fresh.trajectory is None


class RecordingStore(InMemoryKeyValueStore):
    """Keeps every written record so intermediate states can be inspected"""

    def __init__(self):
        super().__init__()
        self.writes = []

    async def set(self, key, value):
        self.writes.append(json.loads(value))
        await super().set(key, value)


@pytest.mark.asyncio
async def test_run_after_restart_terminates_interrupted_trajectory():
    store = RecordingStore()
    before = make_service(ScriptedModel(), store=store)
    state = await before.create_session()
    state.trajectory = AgentTrajectory(request_id="req_old", goal="interrupted")
    await before.state_manager.save_state(state)
    store.writes.clear()

    # no start() sweep: the run itself has to notice the interruption
    after = make_service(ScriptedModel(), store=store)
    result = await after.run_goal(state.session_id, "say hi")

    assert result.outcome == RunOutcome.COMPLETED
    written = [
        (w["trajectory"]["request_id"], w["trajectory"]["status"])
        for w in store.writes if w.get("trajectory")
    ]
    assert written[0] == ("req_old", "terminated")
    assert ("req_old", "running") not in written


@pytest.mark.asyncio
async def test_describe_and_end_session():
    service = make_service(ScriptedModel())
    session = await service.create_session()
    await service.run_goal(session.session_id, "say hi")

    summary = await service.describe_session(session.session_id)
    assert summary["status"] == "completed"
    assert summary["active"] is False
    assert summary["token_usage"]["budget"] == 100000
    assert summary["memory"] == "No previous failures recorded."
    assert service.get_log(session.session_id) is not None

    await service.end_session(session.session_id)
    assert await service.list_sessions() == []
    assert service.get_log(session.session_id) is None


def test_get_final_response_fallbacks():
    assert get_final_response(None) == "[No result - no trajectory]"

    trajectory = AgentTrajectory(request_id="r", goal="g")
    trajectory.finish(TrajectoryStatus.FAILED)
    assert get_final_response(trajectory) == "[No result - failed]"

    trajectory.add_step(AgentStep(step_number=1, type=StepType.THOUGHT, content="thinking"))
    assert get_final_response(trajectory) == "[Incomplete - failed]\nthinking"

    trajectory.add_step(AgentStep(step_number=1, type=StepType.OBSERVATION, content="half"))
    assert get_final_response(trajectory) == "[Partial Result - failed]\nhalf"

    trajectory.add_step(AgentStep(step_number=2, type=StepType.SYNTHESIS, content="answer"))
    assert get_final_response(trajectory) == "answer"


def test_retry_key_normalizes_parameters():
    a = ToolCall(name="fetch", parameters={"url": " Example.COM ", "n": 1})
    b = ToolCall(name="fetch", parameters={"n": 1.0, "url": "example.com"})

    assert retry_key(a) == retry_key(b)
    assert retry_key(a) != retry_key(ToolCall(name="other", parameters=a.parameters))

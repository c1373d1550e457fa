import json

import pytest
from langchain_core.messages import HumanMessage, ToolMessage

from query_agent.agent.events import Aborted, ContentDelta, Failed, Finished, TablesDetected, ToolResult
from query_agent.agent.orchestrator import (
    BUDGET_EXHAUSTED_TEXT,
    NO_ANSWER_TEXT,
    SKIPPED_TOOL_OUTPUT,
    ToolCallState,
    ToolOrchestrator,
)
from query_agent.core.cancellation import AbortSignal, REASON_TIMEOUT
from query_agent.core.errors import GENERIC_UPSTREAM_MESSAGE
from query_agent.llm.stream import Done, ModelStream, TextDelta, ToolCallArgDelta, ToolCallComplete, ToolCallStart
from query_agent.services.tools import ToolRunner

PROJECTS_SQL = "SELECT id, name FROM projects WHERE tenant_id = 't1'"
COMPANIES_SQL = "SELECT id, name FROM companies WHERE tenant_id = 't1'"


class ProviderError(Exception):
    status_code = 500


class ExplodingRunner(ToolRunner):
    async def run(self, name, arguments, signal=None):
        raise RuntimeError("unexpected")


def orchestrator(model, executor, max_tool_calls=3, runner_cls=ToolRunner):
    return ToolOrchestrator(
        ModelStream(model, timeout_ms=5000, max_retries=0),
        runner_cls(executor, "t1"),
        max_tool_calls=max_tool_calls,
    )


async def run(orch, signal=None):
    return [event async for event in orch.run([HumanMessage(content="question")], signal)]


def test_tool_call_state_arguments():
    assert ToolCallState("1", "execute_sql", '{"query": "x"}').parsed_arguments() == {"query": "x"}
    assert ToolCallState("1", "execute_sql", "{broken").parsed_arguments() == {}
    assert ToolCallState("1", "execute_sql", "[1]").parsed_arguments() == {}


@pytest.mark.asyncio
async def test_plain_answer(scripted_model, chunks, executor):
    model = scripted_model([[chunks.text("Hi"), chunks.text(" there")]])
    events = await run(orchestrator(model, executor))
    assert events == [ContentDelta("Hi"), ContentDelta("Hi there"), Finished("Hi there", None, 0)]


@pytest.mark.asyncio
async def test_empty_answer_gets_fallback_text(scripted_model, executor):
    model = scripted_model([[]])
    events = await run(orchestrator(model, executor))
    assert events == [Finished(NO_ANSWER_TEXT, None, 0)]


@pytest.mark.asyncio
async def test_sql_round_trip(scripted_model, chunks, executor):
    model = scripted_model([
        [chunks.text("Let me check. "), chunks.sql(PROJECTS_SQL)],
        [chunks.text("You have 6 projects.")],
    ])
    events = await run(orchestrator(model, executor))

    assert isinstance(events[1], TablesDetected)
    assert events[1].tables == ("projects",)
    assert isinstance(events[2], ToolResult)
    assert events[2].output.startswith("Found 6 results")
    contents = [e.content for e in events if isinstance(e, ContentDelta)]
    assert contents == ["Let me check. ", "Let me check. You have 6 projects."]

    final = events[-1]
    assert isinstance(final, Finished)
    assert final.content == "Let me check. You have 6 projects."
    assert final.tool_calls == 1
    assert final.result.is_tabular

    second_call = model.calls[1]["messages"]
    assert isinstance(second_call[-1], ToolMessage)
    assert second_call[-1].tool_call_id == "call_1"
    assert second_call[-2].tool_calls[0]["args"] == {"query": PROJECTS_SQL}


@pytest.mark.asyncio
async def test_tables_reported_once(scripted_model, chunks, executor):
    model = scripted_model([
        [chunks.sql(PROJECTS_SQL, "a")],
        [chunks.sql(COMPANIES_SQL, "b")],
        [chunks.text("done")],
    ])
    events = await run(orchestrator(model, executor))
    detected = [e for e in events if isinstance(e, TablesDetected)]
    assert len(detected) == 1
    assert detected[0].tables == ("projects",)
    # Latest successful result wins
    assert events[-1].result.detected_tables == ("companies",)


@pytest.mark.asyncio
async def test_guard_violation_is_absorbed(scripted_model, chunks, executor):
    model = scripted_model([
        [chunks.sql("DELETE FROM projects")],
        [chunks.text("I can only read data.")],
    ])
    events = await run(orchestrator(model, executor))
    result = next(e for e in events if isinstance(e, ToolResult))
    assert result.output.startswith("Query validation failed:")
    assert events[-1] == Finished("I can only read data.", None, 1)


@pytest.mark.asyncio
async def test_budget_withdraws_tools(scripted_model, chunks, executor):
    model = scripted_model([
        [chunks.sql(PROJECTS_SQL, "a")],
        [chunks.sql(PROJECTS_SQL, "b")],
        [chunks.text("Summary.")],
    ])
    events = await run(orchestrator(model, executor, max_tool_calls=2))
    assert model.calls[0]["tools"] is not None
    assert model.calls[1]["tools"] is not None
    assert model.calls[2]["tools"] is None
    assert events[-1].content == "Summary."
    assert events[-1].tool_calls == 2


@pytest.mark.asyncio
async def test_tool_request_past_budget_finishes(scripted_model, chunks, executor):
    model = scripted_model([
        [chunks.sql(PROJECTS_SQL, "a")],
        [chunks.sql(PROJECTS_SQL, "b")],
    ])
    events = await run(orchestrator(model, executor, max_tool_calls=1))
    assert len([e for e in events if isinstance(e, ToolResult)]) == 1
    assert events[-1].content == BUDGET_EXHAUSTED_TEXT
    assert len(model.calls) == 2


@pytest.mark.asyncio
async def test_extra_calls_in_one_segment_skipped(scripted_model, chunks, executor):
    model = scripted_model([
        [chunks.sql(PROJECTS_SQL, "a", 0), chunks.sql(COMPANIES_SQL, "b", 1)],
        [chunks.text("Partial answer.")],
    ])
    events = await run(orchestrator(model, executor, max_tool_calls=1))
    results = [e for e in events if isinstance(e, ToolResult)]
    assert [r.call_id for r in results] == ["a"]

    tool_messages = [m for m in model.calls[1]["messages"] if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["a", "b"]
    assert tool_messages[1].content == SKIPPED_TOOL_OUTPUT
    assert events[-1].content == "Partial answer."


@pytest.mark.asyncio
async def test_model_error_fails_turn(scripted_model, executor):
    model = scripted_model([ProviderError()])
    events = await run(orchestrator(model, executor))
    assert events == [Failed(GENERIC_UPSTREAM_MESSAGE, status=500)]


@pytest.mark.asyncio
async def test_timeout_aborts_with_partial_content(scripted_model, chunks, executor):
    model = scripted_model([[chunks.text("Working"), chunks.pause(1.0), chunks.text(" on it")]])
    signal = AbortSignal.timeout(50)
    events = await run(orchestrator(model, executor), signal)
    assert events == [ContentDelta("Working"), Aborted(REASON_TIMEOUT, "Working")]


@pytest.mark.asyncio
async def test_unexpected_error_is_generic(scripted_model, chunks, executor):
    model = scripted_model([[chunks.sql(PROJECTS_SQL)]])
    events = await run(orchestrator(model, executor, runner_cls=ExplodingRunner))
    assert events == [Failed(GENERIC_UPSTREAM_MESSAGE)]


class EventStream:
    """Plays pre-built model events, one list per model segment."""

    def __init__(self, segments):
        self.segments = list(segments)

    async def stream(self, messages, tools=None, signal=None):
        for event in self.segments.pop(0):
            yield event


@pytest.mark.asyncio
async def test_tool_arguments_come_from_completed_call(executor):
    stream = EventStream([
        [
            ToolCallStart(0, "call_9", "execute_sql"),
            ToolCallArgDelta(0, '{"query": "partial'),
            ToolCallComplete("call_9", "execute_sql", json.dumps({"query": PROJECTS_SQL})),
            Done("tool_calls"),
        ],
        [TextDelta("Six."), Done("stop")],
    ])
    orch = ToolOrchestrator(stream, ToolRunner(executor, "t1"), max_tool_calls=3)
    events = await run(orch)

    results = [e for e in events if isinstance(e, ToolResult)]
    assert len(results) == 1
    assert results[0].output.startswith("Found 6 results")
    final = events[-1]
    assert isinstance(final, Finished)
    assert (final.content, final.tool_calls) == ("Six.", 1)

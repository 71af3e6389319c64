#!/usr/bin/env python3
"""
Tests for the agent loop state machine.

The chat model is scripted (see conftest.ScriptedChatModel), so every test
controls exactly which actions the model takes.

Run with: pytest iso_assistant/test_agent_loop.py -v
"""

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage, ToolMessage

from iso_assistant.agent_loop import chunk_text, trim_history
from iso_assistant.agent_state import ThreadGuard
from iso_assistant.config import (
    GENERATION_ERROR_MESSAGE,
    RETRIEVER_TOOL_NAME,
    TIMEOUT_ERROR_MESSAGE,
)
from iso_assistant.conftest import RecordingSink, answer, make_state, passage, tool_call
from iso_assistant.errors import ConversationClearedError, GenerationError, TurnTimeoutError
from iso_assistant.prompts import NO_PASSAGES_MESSAGE, RETRIEVAL_INCOMPLETE_NOTE, TOOL_LIMIT_NOTE

THREAD = "u1:default"


async def phases(checkpoints, thread_id=THREAD):
    return [c.phase for c in await checkpoints.history(thread_id)]


# ============================================================================
# HAPPY PATHS
# ============================================================================


@pytest.mark.asyncio
async def test_direct_answer_streams_tokens_in_order(make_loop, checkpoints):
    loop, model = make_loop([answer("The ", "FCM ", "is ", "annual.")])
    sink = RecordingSink()

    result = await loop.run(THREAD, "When is the FCA?", sink, interaction_id=7)

    assert result.ok
    assert result.text == "The FCM is annual."
    assert result.interaction_id == 7
    assert sink.tokens == ["The ", "FCM ", "is ", "annual."]
    assert sink.ended == ["The FCM is annual."]
    assert await phases(checkpoints) == ["start", "reasoning", "responding", "done"]

    # First model call sees the system prompt, the question, and the bound tool
    call = model.calls[0]
    assert isinstance(call["messages"][0], SystemMessage)
    assert call["messages"][-1].content == "When is the FCA?"
    assert [t["function"]["name"] for t in call["tools"]] == [RETRIEVER_TOOL_NAME]


@pytest.mark.asyncio
async def test_tool_call_then_answer(make_loop, checkpoints, index):
    index.results = [
        passage("https://www.iso-ne.com/fcm", 0.9, text="The Forward Capacity Market procures capacity."),
        passage("https://www.iso-ne.com/fca", 0.7),
    ]
    loop, model = make_loop([tool_call("forward capacity market"), answer("It procures capacity.")])

    result = await loop.run(THREAD, "What is the FCM?", RecordingSink())

    assert result.ok
    assert result.contexts == [
        "The Forward Capacity Market procures capacity.",
        "Excerpt from https://www.iso-ne.com/fca",
    ]
    assert index.calls[0][0] == "forward capacity market"
    assert await phases(checkpoints) == [
        "start", "reasoning", "tool_call", "tool_result", "reasoning", "responding", "done",
    ]

    second_call = model.calls[1]["messages"]
    tool_message = second_call[-1]
    assert isinstance(tool_message, ToolMessage)
    assert tool_message.tool_call_id == "call_1"
    assert "https://www.iso-ne.com/fcm" in tool_message.content
    assert second_call[-2].tool_calls[0]["args"] == {"query": "forward capacity market"}

    final = await checkpoints.load(THREAD)
    assert final.state["tool_calls_made"] == 1
    assert final.state["messages"][-1].content == "It procures capacity."


@pytest.mark.asyncio
async def test_empty_index_tells_model_to_say_it_does_not_know(make_loop, index):
    loop, model = make_loop([tool_call("unknown topic"), answer("I don't know.")])
    sink = RecordingSink()

    result = await loop.run(THREAD, "Who won the 1962 world cup?", sink)

    assert result.ok
    assert result.contexts == []
    assert model.calls[1]["messages"][-1].content == NO_PASSAGES_MESSAGE
    assert sink.ended == ["I don't know."]


@pytest.mark.asyncio
async def test_repeated_sources_are_not_sent_twice(make_loop, checkpoints, index):
    index.results = [passage("https://iso-ne.com/a", 0.9)]
    loop, model = make_loop([
        tool_call("first", call_id="c1"),
        tool_call("second", call_id="c2"),
        answer("done"),
    ])

    result = await loop.run(THREAD, "q", RecordingSink())

    assert result.contexts == ["Excerpt from https://iso-ne.com/a"]
    assert (await checkpoints.load(THREAD)).state["sources"] == ["https://iso-ne.com/a"]
    second_tool_message = model.calls[2]["messages"][-1]
    assert "https://iso-ne.com/a" not in second_tool_message.content


# ============================================================================
# TOOL RETRIES AND LIMITS
# ============================================================================


@pytest.mark.asyncio
async def test_tool_retry_then_success(make_loop, checkpoints, index):
    index.results = [passage("https://iso-ne.com/ok", 0.8)]
    index.failures = 1
    loop, _ = make_loop([tool_call("retry me"), answer("fine")], tool_attempts=2)

    result = await loop.run(THREAD, "q", RecordingSink())

    assert result.ok
    assert len(index.calls) == 2
    assert result.contexts == ["Excerpt from https://iso-ne.com/ok"]
    assert (await checkpoints.load(THREAD)).state["retrieval_incomplete"] is False


@pytest.mark.asyncio
async def test_tool_exhaustion_continues_with_incomplete_note(make_loop, checkpoints, index):
    index.failures = 5
    loop, model = make_loop([tool_call("q"), answer("Partial answer.")], tool_attempts=2)

    result = await loop.run(THREAD, "q", RecordingSink())

    assert result.ok
    assert result.text == "Partial answer."
    assert len(index.calls) == 2
    # The forced answer runs without tools and sees the note
    assert model.calls[1]["tools"] is None
    assert model.calls[1]["messages"][-1].content == RETRIEVAL_INCOMPLETE_NOTE
    assert (await checkpoints.load(THREAD)).state["retrieval_incomplete"] is True


@pytest.mark.asyncio
async def test_tool_limit_forces_an_answer(make_loop, index):
    loop, model = make_loop([tool_call("q"), answer("Answer now.")], max_tool_calls=1)

    result = await loop.run(THREAD, "q", RecordingSink())

    assert result.ok
    assert len(index.calls) == 1
    assert model.calls[1]["tools"] is None
    assert model.calls[1]["messages"][-1].content == TOOL_LIMIT_NOTE


# ============================================================================
# GENERATION FAILURES
# ============================================================================


@pytest.mark.asyncio
async def test_model_error_is_retried(make_loop):
    loop, model = make_loop([RuntimeError("ollama unavailable"), answer("Recovered.")])

    result = await loop.run(THREAD, "q", RecordingSink())

    assert result.ok
    assert result.text == "Recovered."
    assert len(model.calls) == 2


@pytest.mark.asyncio
async def test_unrecognised_output_ends_with_generation_error(make_loop, checkpoints):
    loop, _ = make_loop([[], tool_call("q", name="web_search")], reasoning_attempts=2)
    sink = RecordingSink()

    result = await loop.run(THREAD, "What is LMP?", sink)

    assert isinstance(result.error, GenerationError)
    assert result.text == GENERATION_ERROR_MESSAGE
    assert sink.tokens == []
    assert sink.ended == [GENERATION_ERROR_MESSAGE]

    final = await checkpoints.load(THREAD)
    assert final.phase == "done"
    assert [type(m) for m in final.state["messages"]] == [HumanMessage, AIMessage]
    assert [m.content for m in final.state["messages"]] == ["What is LMP?", GENERATION_ERROR_MESSAGE]


@pytest.mark.asyncio
async def test_invalid_tool_arguments_are_not_executed(make_loop, index):
    for bad_query in (123, "   "):
        loop, _ = make_loop([tool_call(bad_query), answer("ok")])

        result = await loop.run(f"{THREAD}:{bad_query!r}", "q", RecordingSink())

        assert result.ok
        assert index.calls == []


@pytest.mark.asyncio
async def test_turn_timeout(make_loop, checkpoints):
    loop, _ = make_loop([[AIMessageChunk(content="partial"), 5.0, AIMessageChunk(content="late")]], turn_timeout=0.1)
    sink = RecordingSink()

    result = await loop.run(THREAD, "slow question", sink)

    assert isinstance(result.error, TurnTimeoutError)
    assert result.text == TIMEOUT_ERROR_MESSAGE
    assert sink.tokens == ["partial"]
    assert sink.ended == [TIMEOUT_ERROR_MESSAGE]
    final = await checkpoints.load(THREAD)
    assert [m.content for m in final.state["messages"]] == ["slow question", TIMEOUT_ERROR_MESSAGE]


# ============================================================================
# HISTORY
# ============================================================================


@pytest.mark.asyncio
async def test_second_turn_sees_first_turn(make_loop):
    loop, model = make_loop([answer("First answer."), answer("Second answer.")])

    await loop.run(THREAD, "first question", RecordingSink())
    await loop.run(THREAD, "second question", RecordingSink())

    contents = [m.content for m in model.calls[1]["messages"][1:]]
    assert contents == ["first question", "First answer.", "second question"]


@pytest.mark.asyncio
async def test_unfinished_turn_is_abandoned_on_next_run(make_loop, checkpoints):
    old = [HumanMessage(content="earlier"), AIMessage(content="earlier answer"), HumanMessage(content="crashed")]
    await checkpoints.save(THREAD, make_state(messages=old, phase="tool_call", turn_start=2, prompt="crashed"))
    loop, model = make_loop([answer("fresh")])

    result = await loop.run(THREAD, "new question", RecordingSink())

    assert result.ok
    contents = [m.content for m in model.calls[0]["messages"][1:]]
    assert contents == ["earlier", "earlier answer", "new question"]


def test_trim_history_cuts_on_human_boundary():
    messages = [
        HumanMessage(content="q1"), AIMessage(content="a1"),
        HumanMessage(content="q2"), AIMessage(content="", tool_calls=[{"name": "t", "args": {}, "id": "1"}]),
        ToolMessage(content="r", tool_call_id="1"), AIMessage(content="a2"),
        HumanMessage(content="q3"),
    ]

    trimmed = trim_history(messages, 4)
    assert [m.content for m in trimmed] == ["q3"]

    trimmed = trim_history(messages, 5)
    assert [m.content for m in trimmed] == ["q2", "", "r", "a2", "q3"]

    assert trim_history(messages, 20) == messages


def test_chunk_text_handles_content_blocks():
    assert chunk_text(AIMessageChunk(content="plain")) == "plain"
    blocks = AIMessageChunk(content=[{"type": "text", "text": "a"}, {"type": "image_url", "image_url": {"url": "x"}}, "b"])
    assert chunk_text(blocks) == "ab"


# ============================================================================
# RESUME
# ============================================================================


@pytest.mark.asyncio
async def test_resume_reruns_tool_call_from_tool_result(make_loop, checkpoints, index):
    index.results = [passage("https://iso-ne.com/resumed", 0.9)]
    call = {"id": "call_9", "name": RETRIEVER_TOOL_NAME, "query": "interrupted query"}
    messages = [
        HumanMessage(content="question"),
        AIMessage(content="", tool_calls=[{"name": RETRIEVER_TOOL_NAME, "args": {"query": "interrupted query"}, "id": "call_9"}]),
    ]
    await checkpoints.save(THREAD, make_state(
        messages=messages, phase="tool_result", prompt="question", interaction_id=3,
        turn_start=0, pending_tool_call=call,
    ))
    loop, _ = make_loop([answer("Resumed answer.")])
    sink = RecordingSink()

    result = await loop.resume(THREAD, sink)

    assert result.ok
    assert result.interaction_id == 3
    assert result.text == "Resumed answer."
    assert [query for query, _ in index.calls] == ["interrupted query"]
    assert result.contexts == ["Excerpt from https://iso-ne.com/resumed"]
    assert (await phases(checkpoints))[1:3] == ["tool_call", "tool_result"]


@pytest.mark.asyncio
async def test_resume_without_unfinished_turn(make_loop, checkpoints):
    loop, _ = make_loop([answer("done")])
    assert await loop.resume(THREAD, RecordingSink()) is None

    await loop.run(THREAD, "q", RecordingSink())
    assert await loop.resume(THREAD, RecordingSink()) is None


# ============================================================================
# CLEARED CONVERSATION
# ============================================================================


@pytest.mark.asyncio
async def test_cleared_guard_stops_without_writing(make_loop, checkpoints):
    guard = ThreadGuard(THREAD)
    guard.cleared = True
    loop, _ = make_loop([answer("never")])
    sink = RecordingSink()

    result = await loop.run(THREAD, "q", sink, guard=guard)

    assert isinstance(result.error, ConversationClearedError)
    assert result.text == ""
    assert sink.ended == []
    assert await checkpoints.history(THREAD) == []

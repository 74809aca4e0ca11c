import base64

import pytest

from workchat.events import TurnStream
from workchat.images import MediaStore
from workchat.llm import UpstreamError
from workchat.stream_runner import (
    RunStatus,
    StreamedToolCall,
    StreamRunError,
    StreamRunner,
    ToolCallFrozenError,
    ToolCallTracker,
)
from tests.fakes import (
    FakeResponsesClient,
    call_added,
    call_delta,
    call_done,
    completed,
    created,
    image_exchange,
    text_delta,
    text_exchange,
    tool_exchange,
)


PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")


async def drain(stream: TurnStream):
    return [event async for event in stream.events()]


def test_accumulator_appends_and_freezes():
    call = StreamedToolCall(id="fc_1", call_id="call_1", name="echo")
    call.append('{"query": ')
    call.append('"vpn"}')
    call.append({"extra": 1})
    assert call.buffer == '{"query": "vpn"}{"extra": 1}'
    call.finalize()
    assert call.finalized
    with pytest.raises(ToolCallFrozenError):
        call.append("x")


def test_finalize_prefers_supplied_arguments():
    call = StreamedToolCall(id="fc_1", call_id="call_1", name="echo", fragments=['{"a"'])
    assert call.finalize({"a": 1}).arguments == '{"a": 1}'


def test_tracker_finish_untracked_call_fails():
    tracker = ToolCallTracker()
    assert tracker.append("ghost", "x") is False
    with pytest.raises(StreamRunError):
        tracker.finish({"id": "ghost"})


@pytest.mark.asyncio
async def test_text_deltas_forwarded_in_order():
    client = FakeResponsesClient([text_exchange("resp_1", "Hel", "lo", " there")])
    stream = TurnStream()
    runner = StreamRunner(client, stream, model="m", instructions="be nice", effort="low")
    result = await runner.run([{"role": "user", "content": "hi"}])
    stream.close()
    events = await drain(stream)
    assert [e["content"] for e in events] == ["Hel", "lo", " there"]
    assert result.text == "Hello there"
    assert result.response_id == "resp_1"
    assert result.status is RunStatus.COMPLETED
    payload = client.payloads[0]
    assert payload["store"] is True
    assert payload["reasoning"] == {"effort": "low"}
    assert "previous_response_id" not in payload


@pytest.mark.asyncio
async def test_tool_calls_accumulate_and_return_in_announcement_order():
    script = tool_exchange(
        "resp_1",
        [
            ("fc_1", "call_1", "search_hr_policies", {"query": "leave"}),
            ("fc_2", "call_2", "search_tickets", {"status": "open"}),
        ],
        text="Checking. ",
    )
    client = FakeResponsesClient([script])
    runner = StreamRunner(client, TurnStream(), model="m")
    result = await runner.run("hi", previous_response_id="resp_0")
    assert [c.call_id for c in result.tool_calls] == ["call_1", "call_2"]
    assert result.tool_calls[0].arguments == '{"query": "leave"}'
    assert result.tool_calls[1].arguments == '{"status": "open"}'
    assert client.payloads[0]["previous_response_id"] == "resp_0"


@pytest.mark.asyncio
async def test_final_arguments_from_done_event_win():
    script = [
        created("resp_1"),
        call_added("fc_1", "call_1", "echo"),
        call_delta("fc_1", '{"query": "partial'),
        call_done("fc_1", "call_1", "echo", arguments='{"query": "complete"}'),
        completed("resp_1"),
    ]
    runner = StreamRunner(FakeResponsesClient([script]), TurnStream(), model="m")
    result = await runner.run("hi")
    assert result.tool_calls[0].arguments == '{"query": "complete"}'


@pytest.mark.asyncio
async def test_dangling_tool_call_fails_the_run():
    script = [
        created("resp_1"),
        call_added("fc_1", "call_1", "echo"),
        call_delta("fc_1", "{}"),
        completed("resp_1"),
    ]
    stream = TurnStream()
    runner = StreamRunner(FakeResponsesClient([script]), stream, model="m")
    with pytest.raises(StreamRunError, match="unfinished tool calls: fc_1"):
        await runner.run("hi")
    assert runner.status is RunStatus.FAILED
    events = await drain(stream)
    assert events[-1]["type"] == "error"
    assert stream.closed


@pytest.mark.asyncio
async def test_failure_event_keeps_streamed_text_and_emits_error():
    script = [
        created("resp_1"),
        text_delta("Partial answer"),
        {"type": "response.failed", "response": {"id": "resp_1", "error": {"message": "server overloaded"}}},
    ]
    stream = TurnStream()
    runner = StreamRunner(FakeResponsesClient([script]), stream, model="m")
    with pytest.raises(StreamRunError, match="server overloaded"):
        await runner.run("hi")
    events = await drain(stream)
    assert events == [
        {"type": "delta", "content": "Partial answer"},
        {"type": "error", "error": "server overloaded"},
    ]


@pytest.mark.asyncio
async def test_truncated_stream_fails():
    script = [created("resp_1"), text_delta("cut")]
    runner = StreamRunner(FakeResponsesClient([script]), TurnStream(), model="m")
    with pytest.raises(StreamRunError, match="ended before the response completed"):
        await runner.run("hi")


@pytest.mark.asyncio
async def test_upstream_error_becomes_stream_run_error():
    client = FakeResponsesClient([UpstreamError("Model service unreachable: refused")])
    stream = TurnStream()
    runner = StreamRunner(client, stream, model="m")
    with pytest.raises(StreamRunError, match="unreachable"):
        await runner.run("hi")
    events = await drain(stream)
    assert events[-1]["type"] == "error"


@pytest.mark.asyncio
async def test_generated_image_is_saved_and_announced(tmp_path):
    client = FakeResponsesClient([image_exchange("resp_1", PNG_B64, text="Here it is.")])
    stream = TurnStream()
    media = MediaStore(tmp_path, "/media")
    runner = StreamRunner(client, stream, model="fast", tools=[{"type": "image_generation"}], effort="low", media=media)
    result = await runner.run("draw a cat")
    stream.close()
    events = await drain(stream)
    assert [e["type"] for e in events] == ["delta", "partial_image", "saved"]
    assert len(result.images) == 1
    image = result.images[0]
    assert image.url.startswith("/media/generated-images/ai-")
    assert (tmp_path / image.storage_path).read_bytes().startswith(b"\x89PNG")
    assert "![Generated image](" in result.text
    # Image generation rejects an explicit reasoning setting.
    assert "reasoning" not in client.payloads[0]


@pytest.mark.asyncio
async def test_duplicate_image_completion_is_stored_once(tmp_path):
    script = image_exchange("resp_1", PNG_B64)
    script.insert(-1, {"type": "image_generation.completed", "item_id": "ig_1", "b64_json": PNG_B64})
    runner = StreamRunner(FakeResponsesClient([script]), TurnStream(), model="m", media=MediaStore(tmp_path))
    result = await runner.run("draw")
    assert len(result.images) == 1


@pytest.mark.asyncio
async def test_completion_without_item_id_is_not_stored_twice(tmp_path):
    script = image_exchange("resp_1", PNG_B64)
    script.insert(-2, {"type": "image_generation.completed", "b64_json": PNG_B64})
    stream = TurnStream()
    runner = StreamRunner(FakeResponsesClient([script]), stream, model="m", media=MediaStore(tmp_path))
    result = await runner.run("draw")
    stream.close()
    events = await drain(stream)
    assert len(result.images) == 1
    assert [e["type"] for e in events].count("saved") == 1
    assert result.text.count("![Generated image](") == 1

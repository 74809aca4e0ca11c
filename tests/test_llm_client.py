import base64
import json

import httpx
import pytest
import respx
from httpx import Response

from workchat.llm import ResponsesClient, UpstreamError


def sse_body(*events) -> bytes:
    lines = []
    for event in events:
        chunk = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {chunk}\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_stream_response_decodes_events_until_done():
    client = ResponsesClient("http://model.test/v1/", api_key="sk-test")
    captured = {}
    body = sse_body(
        {"type": "response.created", "response": {"id": "resp_1"}},
        "not json",
        {"type": "response.output_text.delta", "delta": "Hi"},
        "[DONE]",
        {"type": "response.output_text.delta", "delta": "ignored"},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, content=body, headers={"Content-Type": "text/event-stream"})

            respx_mock.post("http://model.test/v1/responses").mock(side_effect=handler)
            events = [e async for e in client.stream_response({"model": "m", "input": "hi"})]
    finally:
        await client.close()

    assert [e["type"] for e in events] == ["response.created", "response.output_text.delta"]
    assert captured["json"]["stream"] is True
    assert captured["json"]["model"] == "m"
    assert captured["headers"]["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_stream_response_error_status_raises_upstream_error():
    client = ResponsesClient("http://model.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://model.test/v1/responses").mock(
                return_value=Response(400, json={"error": {"message": "Unsupported parameter: reasoning"}})
            )
            with pytest.raises(UpstreamError) as excinfo:
                async for _ in client.stream_response({"model": "m"}):
                    pass
    finally:
        await client.close()

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "Unsupported parameter: reasoning"


@pytest.mark.asyncio
async def test_stream_response_connection_error():
    client = ResponsesClient("http://model.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://model.test/v1/responses").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(UpstreamError, match="unreachable"):
                async for _ in client.stream_response({"model": "m"}):
                    pass
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_generate_image_returns_json_and_maps_errors():
    client = ResponsesClient("http://model.test/v1", api_key="sk-test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post("http://model.test/v1/images/generations")
            route.mock(return_value=Response(200, json={"data": [{"b64_json": "abc"}]}))
            data = await client.generate_image({"model": "gpt-image-1", "prompt": "fox"})
            assert data["data"][0]["b64_json"] == "abc"

            route.mock(return_value=Response(429, text="slow down"))
            with pytest.raises(UpstreamError) as excinfo:
                await client.generate_image({"model": "gpt-image-1", "prompt": "fox"})
            assert excinfo.value.status_code == 429
            assert "slow down" in str(excinfo.value)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fetch_image_b64():
    client = ResponsesClient("http://model.test/v1")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://cdn.test/a.png").mock(return_value=Response(200, content=b"png-bytes"))
            respx_mock.get("https://cdn.test/missing.png").mock(return_value=Response(404))
            assert await client.fetch_image_b64("https://cdn.test/a.png") == base64.b64encode(b"png-bytes").decode()
            with pytest.raises(UpstreamError) as excinfo:
                await client.fetch_image_b64("https://cdn.test/missing.png")
            assert excinfo.value.status_code == 404
    finally:
        await client.close()

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from workchat.llm import UpstreamError


USER_HEADERS = {
    "X-User-Id": "user-1",
    "X-User-Email": "sam@example.com",
    "X-User-Name": "Sam Lee",
    "X-User-Department": "Engineering",
}


Script = Union[List[Any], Exception]


def created(response_id: str) -> Dict[str, Any]:
    return {"type": "response.created", "response": {"id": response_id}}


def completed(response_id: str) -> Dict[str, Any]:
    return {"type": "response.completed", "response": {"id": response_id}}


def text_delta(text: str) -> Dict[str, Any]:
    return {"type": "response.output_text.delta", "delta": text}


def text_exchange(response_id: str, *chunks: str) -> List[Dict[str, Any]]:
    return [created(response_id), *[text_delta(c) for c in chunks], completed(response_id)]


def call_added(item_id: str, call_id: str, name: str) -> Dict[str, Any]:
    return {
        "type": "response.output_item.added",
        "item": {"type": "function_call", "id": item_id, "call_id": call_id, "name": name, "arguments": ""},
    }


def call_delta(item_id: str, fragment: Any) -> Dict[str, Any]:
    return {"type": "response.function_call_arguments.delta", "item_id": item_id, "delta": fragment}


def call_done(item_id: str, call_id: str, name: str, arguments: Optional[str] = None) -> Dict[str, Any]:
    item: Dict[str, Any] = {"type": "function_call", "id": item_id, "call_id": call_id, "name": name}
    if arguments is not None:
        item["arguments"] = arguments
    return {"type": "response.output_item.done", "item": item}


def tool_exchange(response_id: str, calls: Sequence[Tuple[str, str, str, Any]], text: str = "") -> List[Dict[str, Any]]:
    """One exchange that announces ``calls`` as (item_id, call_id, name, arguments) and streams their arguments."""
    events: List[Dict[str, Any]] = [created(response_id)]
    if text:
        events.append(text_delta(text))
    for item_id, call_id, name, arguments in calls:
        events.append(call_added(item_id, call_id, name))
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        midpoint = len(raw) // 2
        events.append(call_delta(item_id, raw[:midpoint]))
        events.append(call_delta(item_id, raw[midpoint:]))
        events.append(call_done(item_id, call_id, name))
    events.append(completed(response_id))
    return events


def image_exchange(response_id: str, b64: str, text: str = "") -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = [created(response_id)]
    if text:
        events.append(text_delta(text))
    events.append(
        {
            "type": "response.image_generation_call.partial_image",
            "item_id": "ig_1",
            "partial_image_index": 0,
            "partial_image_b64": b64[:8],
        }
    )
    events.append(
        {
            "type": "response.output_item.done",
            "item": {
                "type": "image_generation_call",
                "id": "ig_1",
                "result": b64,
                "output_format": "png",
                "size": "1024x1024",
            },
        }
    )
    events.append(completed(response_id))
    return events


class FakeResponsesClient:
    """Scripted model service: each ``stream_response`` call consumes the next exchange script."""

    def __init__(
        self,
        exchanges: Optional[List[Script]] = None,
        image_results: Optional[List[Union[Dict[str, Any], Exception]]] = None,
        downloads: Optional[Dict[str, str]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.base_url = "http://model.test/v1"
        self.api_key: Optional[str] = None
        self.exchanges: List[Script] = list(exchanges or [])
        self.image_results = list(image_results or [])
        self.downloads = downloads or {}
        self.delay_seconds = delay_seconds
        self.payloads: List[Dict[str, Any]] = []
        self.image_calls: List[Dict[str, Any]] = []
        self.fetched: List[str] = []
        self.closed = False

    async def stream_response(self, payload: Dict[str, Any]):
        self.payloads.append(payload)
        if not self.exchanges:
            raise UpstreamError("No scripted exchange left")
        script = self.exchanges.pop(0)
        if isinstance(script, Exception):
            raise script
        for event in script:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            if isinstance(event, Exception):
                raise event
            yield event

    async def generate_image(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.image_calls.append(params)
        if not self.image_results:
            raise UpstreamError("No scripted image result left")
        outcome = self.image_results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_image_b64(self, url: str) -> str:
        self.fetched.append(url)
        if url not in self.downloads:
            raise UpstreamError(f"Image download failed ({404})", status_code=404)
        return self.downloads[url]

    async def close(self) -> None:
        self.closed = True


class FakeTicketingClient:
    def __init__(self, endpoint_url: Optional[str] = None, response: Optional[Dict[str, Any]] = None) -> None:
        self.endpoint_url = endpoint_url
        self.auth_header = "Authorization"
        self.auth_token: Optional[str] = None
        self.response = response if response is not None else {"ticketId": "EXT-1"}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint_url)

    async def create_ticket(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "not_configured"}
        self.calls.append(payload)
        return self.response

    async def close(self) -> None:
        self.closed = True

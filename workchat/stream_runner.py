"""One streamed exchange with the model service.

``StreamRunner.run`` consumes the Responses API event stream, forwards caller
events as they arrive, accumulates tool-call arguments and collects images.
It never executes tools itself: finalized calls are handed back to the
controller in the order the model announced them.
"""

import enum
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from .events import TurnStream
from .images import GeneratedImage, MediaStore, extract_base64_image, format_from_mime
from .llm import UpstreamError


logger = logging.getLogger("uvicorn.error")

TOOL_CALL_ITEM_TYPES = {"function_call", "tool_call"}
ARGUMENT_DELTA_EVENTS = {"response.function_call_arguments.delta", "response.tool_call.delta"}
PARTIAL_IMAGE_EVENTS = {"response.image_generation_call.partial_image", "image_generation.partial_image"}
FAILURE_EVENTS = {"response.failed", "error"}
COMPLETION_EVENTS = {"response.completed", "response.incomplete"}


class RunStatus(str, enum.Enum):
    STARTED = "started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamRunError(RuntimeError):
    """The exchange failed; whatever was already streamed stays visible to the caller."""


class ToolCallFrozenError(RuntimeError):
    pass


@dataclass
class StreamedToolCall:
    id: str
    call_id: str
    name: str
    seq: int = 0
    fragments: List[str] = field(default_factory=list)
    arguments: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.arguments is not None

    @property
    def buffer(self) -> str:
        return "".join(self.fragments)

    def append(self, fragment: Any) -> None:
        if self.finalized:
            raise ToolCallFrozenError(f"Tool call {self.id} is already finalized")
        if fragment is None or fragment == "":
            return
        self.fragments.append(fragment if isinstance(fragment, str) else json.dumps(fragment))

    def finalize(self, final_arguments: Any = None) -> "StreamedToolCall":
        if self.finalized:
            raise ToolCallFrozenError(f"Tool call {self.id} is already finalized")
        if isinstance(final_arguments, str) and final_arguments:
            self.arguments = final_arguments
        elif final_arguments not in (None, ""):
            self.arguments = json.dumps(final_arguments)
        else:
            self.arguments = self.buffer
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "call_id": self.call_id, "name": self.name, "arguments": self.arguments or ""}


@dataclass
class ExecutedToolCall:
    id: str
    call_id: str
    name: str
    arguments: str
    status: str
    result: str

    @classmethod
    def from_call(cls, call: StreamedToolCall, status: str, result: str) -> "ExecutedToolCall":
        return cls(
            id=call.id,
            call_id=call.call_id,
            name=call.name,
            arguments=call.arguments or "",
            status=status,
            result=result,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status,
            "result": self.result,
        }

    def to_input_item(self) -> Dict[str, Any]:
        return {"type": "function_call_output", "call_id": self.call_id, "output": self.result}


class ToolCallTracker:
    """Pending tool calls for one exchange, keyed by output item id."""

    def __init__(self) -> None:
        self.pending: Dict[str, StreamedToolCall] = {}
        self._final_hints: Dict[str, Any] = {}
        self._seq = 0

    @property
    def has_pending(self) -> bool:
        return bool(self.pending)

    def start(self, item: Dict[str, Any]) -> StreamedToolCall:
        item_id = str(item.get("id") or item.get("call_id") or "")
        if not item_id:
            raise StreamRunError("Tool call announced without an identifier")
        self._seq += 1
        call = StreamedToolCall(
            id=item_id,
            call_id=str(item.get("call_id") or item_id),
            name=str(item.get("name") or ""),
            seq=self._seq,
        )
        call.append(item.get("arguments"))
        self.pending[item_id] = call
        return call

    def append(self, item_id: str, fragment: Any) -> bool:
        call = self.pending.get(item_id)
        if call is None:
            logger.warning("Argument fragment for untracked tool call %s ignored", item_id)
            return False
        call.append(fragment)
        return True

    def note_final_arguments(self, item_id: str, arguments: Any) -> None:
        if item_id in self.pending:
            self._final_hints[item_id] = arguments

    def finish(self, item: Dict[str, Any]) -> StreamedToolCall:
        item_id = str(item.get("id") or item.get("call_id") or "")
        call = self.pending.pop(item_id, None)
        if call is None:
            raise StreamRunError(f"Tool call {item_id} not tracked")
        hint = self._final_hints.pop(item_id, None)
        final = item.get("arguments")
        if final in (None, ""):
            final = hint
        if item.get("name") and not call.name:
            call.name = str(item["name"])
        return call.finalize(final)


@dataclass
class StreamStepResult:
    status: RunStatus
    response_id: Optional[str]
    text: str = ""
    images: List[GeneratedImage] = field(default_factory=list)
    tool_calls: List[StreamedToolCall] = field(default_factory=list)


def _payload_key(b64: str) -> str:
    return hashlib.sha256(b64.encode("ascii", "ignore")).hexdigest()


def _event_error_message(event: Dict[str, Any]) -> str:
    response = event.get("response") or {}
    error = response.get("error") or event.get("error") or {}
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return str(event.get("message") or "Response failed")


class StreamRunner:
    def __init__(
        self,
        client: Any,
        stream: TurnStream,
        *,
        model: str,
        instructions: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        effort: Optional[str] = None,
        media: Optional[MediaStore] = None,
    ) -> None:
        self.client = client
        self.stream = stream
        self.model = model
        self.instructions = instructions
        self.tools = tools or []
        self.effort = effort
        self.media = media
        self.status = RunStatus.STARTED

    def build_payload(self, input_items: Union[str, List[Dict[str, Any]]], previous_response_id: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "input": input_items,
            # Every exchange is stored so the next one can chain onto it.
            "store": True,
        }
        if self.instructions:
            payload["instructions"] = self.instructions
        includes_image_tool = any(t.get("type") == "image_generation" for t in self.tools)
        # The image tool rejects explicit reasoning settings.
        if self.effort and not includes_image_tool:
            payload["reasoning"] = {"effort": self.effort}
        if self.tools:
            payload["tools"] = self.tools
        if previous_response_id:
            payload["previous_response_id"] = previous_response_id
        return payload

    async def run(
        self,
        input_items: Union[str, List[Dict[str, Any]]],
        previous_response_id: Optional[str] = None,
    ) -> StreamStepResult:
        self.status = RunStatus.STARTED
        result = StreamStepResult(status=self.status, response_id=previous_response_id)
        tracker = ToolCallTracker()
        finished: List[StreamedToolCall] = []
        image_chunks: Dict[int, List[str]] = {}
        saved_items: Set[str] = set()
        saved_payloads: Set[str] = set()
        text_parts: List[str] = []
        payload = self.build_payload(input_items, previous_response_id)
        events = self.client.stream_response(payload)
        try:
            async for event in events:
                if self.status is RunStatus.STARTED:
                    self.status = RunStatus.STREAMING
                event_type = event.get("type") or ""

                if event_type == "response.created":
                    response_id = (event.get("response") or {}).get("id")
                    if response_id:
                        result.response_id = response_id

                elif event_type == "response.output_text.delta":
                    delta = event.get("delta")
                    if delta:
                        text_parts.append(delta)
                        self.stream.delta(delta)

                elif event_type == "response.output_item.added":
                    item = event.get("item") or {}
                    if item.get("type") in TOOL_CALL_ITEM_TYPES:
                        tracker.start(item)

                elif event_type in ARGUMENT_DELTA_EVENTS:
                    tracker.append(str(event.get("item_id") or event.get("id") or ""), event.get("delta"))

                elif event_type == "response.function_call_arguments.done":
                    tracker.note_final_arguments(str(event.get("item_id") or ""), event.get("arguments"))

                elif event_type == "response.output_item.done":
                    item = event.get("item") or {}
                    item_type = item.get("type")
                    if item_type in TOOL_CALL_ITEM_TYPES:
                        finished.append(tracker.finish(item))
                    elif item_type == "image_generation_call":
                        item_id = str(item.get("id") or "")
                        b64 = extract_base64_image(item.get("result"))
                        if b64 and item_id not in saved_items and _payload_key(b64) not in saved_payloads:
                            saved_items.add(item_id)
                            saved_payloads.add(_payload_key(b64))
                            media = item.get("media") or [{}]
                            fmt = item.get("output_format") or format_from_mime((media[0] or {}).get("mime_type"))
                            image = self._store_image(b64, fmt, item.get("size") or "auto")
                            result.images.append(image)
                            text_parts.append(self._image_markdown(image))

                elif event_type in PARTIAL_IMAGE_EVENTS:
                    b64 = event.get("partial_image_b64") or event.get("b64_json")
                    if b64:
                        self.stream.write(
                            {
                                "type": "partial_image",
                                "b64_json": b64,
                                "index": event.get("partial_image_index") or 0,
                            }
                        )

                elif event_type == "image_generation.completed":
                    item_id = str(event.get("item_id") or "")
                    b64 = event.get("b64_json")
                    # Completion events may omit the item id; the payload still identifies the image.
                    if b64 and item_id not in saved_items and _payload_key(b64) not in saved_payloads:
                        if item_id:
                            saved_items.add(item_id)
                        saved_payloads.add(_payload_key(b64))
                        image = self._store_image(b64, event.get("output_format") or "png", event.get("size") or "auto")
                        result.images.append(image)
                        text_parts.append(self._image_markdown(image))

                elif event_type == "response.output_image.delta":
                    index = int(event.get("index") or 0)
                    chunk = event.get("delta") or ""
                    image_chunks.setdefault(index, []).append(chunk)
                    if chunk:
                        self.stream.write({"type": "partial_image", "b64_json": chunk, "index": index})

                elif event_type == "response.output_image.completed":
                    index = int(event.get("index") or 0)
                    b64 = "".join(image_chunks.pop(index, []))
                    if b64:
                        mime = (event.get("media") or {}).get("mime_type")
                        image = self._store_image(b64, format_from_mime(mime), "auto")
                        result.images.append(image)
                        text_parts.append(self._image_markdown(image))

                elif event_type in COMPLETION_EVENTS:
                    response_id = (event.get("response") or {}).get("id")
                    if response_id:
                        result.response_id = response_id
                    if event_type == "response.incomplete":
                        logger.warning("Response %s finished incomplete", result.response_id)
                    self.status = RunStatus.COMPLETED

                elif event_type in FAILURE_EVENTS:
                    raise StreamRunError(_event_error_message(event))

                else:
                    logger.debug("Unhandled stream event %s", event_type)
        except UpstreamError as exc:
            self._fail(str(exc))
            raise StreamRunError(str(exc)) from exc
        except StreamRunError as exc:
            self._fail(str(exc))
            raise
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.status is not RunStatus.COMPLETED:
            message = "Model stream ended before the response completed"
            self._fail(message)
            raise StreamRunError(message)
        if tracker.has_pending:
            dangling = ", ".join(sorted(tracker.pending))
            message = f"Response completed with unfinished tool calls: {dangling}"
            self._fail(message)
            raise StreamRunError(message)

        result.status = self.status
        result.text = "".join(text_parts)
        result.tool_calls = sorted(finished, key=lambda c: c.seq)
        return result

    def _fail(self, message: str) -> None:
        self.status = RunStatus.FAILED
        logger.warning("Stream run failed: %s", message)
        self.stream.fail(message)

    def _store_image(self, b64: str, fmt: str, size: str) -> GeneratedImage:
        image = GeneratedImage(data_b64=b64, format=fmt, size=size, model=self.model)
        if self.media is None:
            return image
        try:
            self.media.save(image)
        except (OSError, ValueError) as exc:
            # Keep the image in the result; it just has no stored location.
            logger.warning("Failed to store generated image: %s", exc)
            return image
        self.stream.write(
            {
                "type": "saved",
                "url": image.url,
                "storage_path": image.storage_path,
                "format": image.format,
                "size": image.size,
            }
        )
        return image

    @staticmethod
    def _image_markdown(image: GeneratedImage) -> str:
        return f"\n\n{image.markdown}\n" if image.url else ""

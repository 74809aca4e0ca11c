import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class TurnStream:
    """Ordered, single-consumer event channel for one turn.

    Terminal events (``done`` or ``error``) close the channel, and it closes
    exactly once; anything written afterwards is dropped. ``detach`` is used
    when the caller goes away: the turn keeps running but nothing more is
    queued for delivery.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    def write(self, event: Dict[str, Any]) -> None:
        if self._closed or self._detached:
            return
        self._queue.put_nowait(event)

    def delta(self, text: str) -> None:
        self.write({"type": "delta", "content": text})

    def finish(self, response_id: Optional[str], **extra: Any) -> None:
        self.write({"type": "done", "response_id": response_id, **extra})
        self.close()

    def fail(self, message: str, **extra: Any) -> None:
        self.write({"type": "error", "error": message, **extra})
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def detach(self) -> None:
        self._detached = True
        self.close()

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

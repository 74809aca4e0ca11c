import base64
import json
import logging
from typing import Any, AsyncGenerator, Dict, Optional

import httpx


logger = logging.getLogger("uvicorn.error")


class UpstreamError(RuntimeError):
    """The model service refused a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or message


def _normalize_error_text(detail: str) -> str:
    text = detail or ""
    for _ in range(2):
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError):
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, dict):
                    val = val.get("message") or json.dumps(val)
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except ValueError:
        pass
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""


class ResponsesClient:
    """Client for an OpenAI-compatible model service (Responses + Images APIs)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        stream_timeout_s: float = 300.0,
        request_timeout_s: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.request_timeout_s = request_timeout_s
        # Streams can sit idle while the model reasons; bound reads separately from connect.
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(stream_timeout_s, connect=10.0),
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_response(self, payload: Dict[str, Any]) -> AsyncGenerator[Dict[str, Any], None]:
        """POST /responses with ``stream: true`` and yield each decoded event in arrival order."""
        url = f"{self.base_url}/responses"
        body = {**payload, "stream": True}
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    detail = _normalize_error_text(_extract_error_detail(response))
                    raise UpstreamError(
                        f"Model service returned {response.status_code}: {detail}",
                        status_code=response.status_code,
                        detail=detail,
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if not chunk:
                        continue
                    if chunk == "[DONE]":
                        break
                    try:
                        event = json.loads(chunk)
                    except json.JSONDecodeError:
                        logger.warning("Skipping undecodable stream chunk: %s", chunk[:200])
                        continue
                    if isinstance(event, dict):
                        yield event
        except httpx.RequestError as exc:
            raise UpstreamError(f"Model service unreachable: {exc}") from exc

    async def generate_image(self, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/images/generations"
        try:
            resp = await self.client.post(url, json=params, headers=self._headers(), timeout=self.request_timeout_s)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _normalize_error_text(_extract_error_detail(exc.response))
            raise UpstreamError(
                f"Image generation failed ({exc.response.status_code}): {detail}",
                status_code=exc.response.status_code,
                detail=detail,
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Image service unreachable: {exc}") from exc
        return resp.json()

    async def fetch_image_b64(self, url: str) -> str:
        try:
            resp = await self.client.get(url, timeout=self.request_timeout_s)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"Image download failed ({exc.response.status_code})",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Image download failed: {exc}") from exc
        return base64.b64encode(resp.content).decode("ascii")

    async def close(self) -> None:
        await self.client.aclose()

from typing import Any, Dict, Optional

import httpx


class TicketingClient:
    def __init__(
        self,
        endpoint_url: Optional[str],
        auth_header: str = "Authorization",
        auth_token: Optional[str] = None,
        timeout: float = 30,
    ):
        self.endpoint_url = endpoint_url
        self.auth_header = auth_header
        self.auth_token = auth_token
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint_url)

    async def create_ticket(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "not_configured"}
        return await self._post(str(self.endpoint_url), payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers[self.auth_header] = self.auth_token
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        except ValueError:
            # 2xx with a non-JSON body still means the ticket was accepted.
            return {}
        return data if isinstance(data, dict) else {"data": data}

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()

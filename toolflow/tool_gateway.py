import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from .schemas import GatewayResponse


logger = logging.getLogger("uvicorn.error")


class ToolGateway(Protocol):
    """Executes a single named tool call."""

    async def execute(self, tool: str, parameters: Dict[str, Any]) -> GatewayResponse: ...

    async def close(self) -> None: ...


class HttpToolGateway:
    """Remote gateway client. Transport errors are retried; HTTP errors are not."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout_s: float = 60.0,
        max_retries: int = 1,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.max_retries = max(0, max_retries)
        self.client = httpx.AsyncClient(
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    async def execute(self, tool: str, parameters: Dict[str, Any]) -> GatewayResponse:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"tool": tool, "parameters": parameters}
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await self.client.post(self.base_url, json=payload, headers=headers)
                resp.raise_for_status()
                return GatewayResponse.model_validate(resp.json())
            except httpx.HTTPStatusError as e:
                detail: Any
                try:
                    detail = e.response.json()
                except ValueError:
                    detail = e.response.text
                if isinstance(detail, dict) and detail.get("error"):
                    detail = detail["error"]
                return GatewayResponse(
                    status="failed",
                    error=f"HTTP {e.response.status_code}: {detail}",
                )
            except httpx.RequestError as e:
                if attempt <= self.max_retries:
                    logger.warning("Tool %s request failed (attempt %s): %s", tool, attempt, e)
                    continue
                return GatewayResponse(status="failed", error=f"Request failed: {e}")
            except (ValueError, ValidationError):
                return GatewayResponse(status="failed", error="Malformed gateway response")

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()

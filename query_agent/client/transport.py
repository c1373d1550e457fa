import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from query_agent.api.schemas import AIChunk
from query_agent.core.cancellation import AbortSignal
from query_agent.core.errors import AbortError, QueryAgentError

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/v1/ai/chat"


class ChatTransportError(QueryAgentError):
    """Non-200 answer from the chat endpoint. `message` is the server's error text."""

    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, status: int, code: Optional[str] = None):
        super().__init__(message, code)
        self.status_code = status
        self.status = status


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        # Our own handlers send `error`, FastAPI's HTTPException sends `detail`
        detail = body.get("error") or body.get("detail")
        if isinstance(detail, str):
            return detail
    return f"HTTP {response.status_code}"


class HttpChatTransport:
    """
    Posts a chat request and yields AIChunk objects as NDJSON lines arrive.
    Pass a shared httpx.AsyncClient to reuse connections (or to point the
    transport at an ASGI app in tests).
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 130.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = client
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/x-ndjson"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def __call__(self, payload: Dict[str, Any], signal: AbortSignal) -> AsyncIterator[AIChunk]:
        return self.stream(payload, signal)

    async def stream(self, payload: Dict[str, Any], signal: AbortSignal) -> AsyncIterator[AIChunk]:
        owns_client = self.client is None
        client = self.client or httpx.AsyncClient(timeout=self.timeout)
        url = f"{self.base_url}{CHAT_PATH}"
        try:
            async with client.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise ChatTransportError(_error_message(response), response.status_code)

                async for line in response.aiter_lines():
                    if signal.aborted:
                        raise AbortError(signal.reason or "aborted")
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield AIChunk.model_validate(json.loads(line))
                    except ValueError as e:
                        logger.warning(f"Skipping malformed stream line: {e}")
        finally:
            if owns_client:
                await client.aclose()

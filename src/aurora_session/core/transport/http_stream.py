"""Chunked HTTP (server-sent events) transport used by the text providers.

One request per user turn; the response body is a stream of ``data:``
events which are yielded as raw frames.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from aurora_session.core.transport.base import RawFrame, TransportError

logger = logging.getLogger(__name__)

REJECT_HTTP_STATUSES = frozenset({400, 401, 403, 404, 422})


@dataclass(slots=True)
class SseTransport:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    timeout_s: float = 60.0
    client: httpx.AsyncClient | None = None

    _owned_client: httpx.AsyncClient | None = field(init=False, default=None, repr=False)
    _closed: bool = field(init=False, default=False)

    async def open(self) -> None:
        if self.client is None and self._owned_client is None:
            self._owned_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s))
        self._closed = False

    def _client(self) -> httpx.AsyncClient:
        client = self.client or self._owned_client
        if client is None or self._closed:
            raise TransportError("http transport is not open")
        return client

    async def post_stream(self, body: dict[str, Any]) -> AsyncIterator[RawFrame]:
        client = self._client()
        headers = {"Accept": "text/event-stream", **self.headers}
        try:
            async with client.stream("POST", self.url, json=body, headers=headers) as resp:
                if resp.status_code >= 400:
                    detail = (await resp.aread()).decode("utf-8", errors="ignore")
                    raise TransportError(
                        f"HTTP {resp.status_code}: {detail[:200]}",
                        status=resp.status_code,
                        rejected=resp.status_code in REJECT_HTTP_STATUSES,
                    )
                data_lines: list[str] = []
                async for line in resp.aiter_lines():
                    if not line:
                        if data_lines:
                            yield RawFrame("\n".join(data_lines))
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    if line.startswith("data:"):
                        value = line[5:]
                        data_lines.append(value[1:] if value.startswith(" ") else value)
                if data_lines:
                    yield RawFrame("\n".join(data_lines))
        except asyncio.CancelledError:
            raise
        except TransportError:
            raise
        except httpx.TimeoutException as exc:
            raise TransportError(f"stream timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"stream failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None
        logger.debug("[HTTP] Transport closed")

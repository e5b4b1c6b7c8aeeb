"""One-shot extraction of key points from a finished conversation.

Independent from the live stream: it takes a copy of the transcript and
talks to the backend over plain request/response.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx

from aurora_session.core.errors import FinalizeFailed
from aurora_session.domain.models import Turn

logger = logging.getLogger(__name__)


class Finalizer(Protocol):
    async def finalize(self, turns: Sequence[Turn]) -> list[str]: ...


def _extract_points(data: Any) -> list[str]:
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        if data.get("success") is False:
            raise FinalizeFailed(str(data.get("message") or "backend reported failure"))
        data = data["data"]
    points = data.get("importantPoints") if isinstance(data, dict) else None
    if not isinstance(points, list) or not all(isinstance(p, str) for p in points):
        raise FinalizeFailed("response did not contain importantPoints")
    return [p.strip() for p in points if p.strip()]


@dataclass(slots=True)
class HttpSessionFinalizer:
    url: str
    auth_token: str | None = None
    timeout_s: float = 30.0
    client: httpx.AsyncClient | None = None

    _owned_client: httpx.AsyncClient | None = field(init=False, default=None, repr=False)

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is not None:
            return self.client
        if self._owned_client is None:
            self._owned_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s))
        return self._owned_client

    async def finalize(self, turns: Sequence[Turn]) -> list[str]:
        if not turns:
            raise ValueError("turns must be non-empty")
        body = {"turns": [turn.to_message() for turn in turns]}
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        logger.info(f"[Finalizer] Extracting key points from {len(turns)} turns")
        try:
            resp = await self._get_client().post(self.url, json=body, headers=headers)
        except asyncio.CancelledError:
            raise
        except httpx.TimeoutException as exc:
            raise FinalizeFailed(f"finalize timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FinalizeFailed(f"finalize request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise FinalizeFailed(f"finalize returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise FinalizeFailed("finalize response was not JSON") from exc

        points = _extract_points(data)
        logger.info(f"[Finalizer] {len(points)} key points extracted")
        return points

    async def close(self) -> None:
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

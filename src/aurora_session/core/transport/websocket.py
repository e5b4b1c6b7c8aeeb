"""WebSocket transport used by the realtime voice providers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from aurora_session.core.transport.base import DuplexTransport, RawFrame, TransportError

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]

# Close codes that end a stream without an error.
NORMAL_CLOSE_CODES = frozenset({1000, 1001})
# Close codes that mean the server refused us (policy / auth).
REJECT_CLOSE_CODES = frozenset({1008, 4001, 4003})
REJECT_HTTP_STATUSES = frozenset({400, 401, 403, 404})


async def _websockets_connector(
    url: str, *, headers: dict[str, str], open_timeout: float
) -> Any:
    import websockets

    return await websockets.connect(
        url,
        additional_headers=headers or None,
        open_timeout=open_timeout,
        ping_interval=20,
        max_size=None,
    )


def _close_code(exc: BaseException) -> tuple[int | None, str]:
    rcvd = getattr(exc, "rcvd", None)
    if rcvd is not None:
        return getattr(rcvd, "code", None), str(getattr(rcvd, "reason", "") or "")
    return getattr(exc, "code", None), str(getattr(exc, "reason", "") or "")


def _handshake_status(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


@dataclass(slots=True)
class WebSocketTransport(DuplexTransport):
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    open_timeout_s: float = 10.0
    connector: Connector | None = None

    _ws: Any = field(init=False, default=None, repr=False)
    _closed: bool = field(init=False, default=False)

    async def open(self) -> None:
        if self._ws is not None:
            return
        connect = self.connector or _websockets_connector
        try:
            self._ws = await connect(
                self.url, headers=dict(self.headers), open_timeout=self.open_timeout_s
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            raise TransportError("websocket open timed out") from exc
        except Exception as exc:
            status = _handshake_status(exc)
            raise TransportError(
                f"websocket connect failed: {exc}",
                status=status,
                rejected=status in REJECT_HTTP_STATUSES,
            ) from exc
        logger.debug("[WS] Connected")

    async def send(self, payload: str | bytes) -> None:
        if self._ws is None or self._closed:
            raise TransportError("websocket is not open")
        try:
            await self._ws.send(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            code, reason = _close_code(exc)
            raise TransportError(
                f"websocket send failed: {reason or exc}",
                status=code,
                rejected=code in REJECT_CLOSE_CODES,
            ) from exc

    async def frames(self) -> AsyncIterator[RawFrame]:
        ws = self._ws
        if ws is None:
            raise TransportError("websocket is not open")
        while not self._closed:
            try:
                message = await ws.recv()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._closed:
                    return
                code, reason = _close_code(exc)
                if code in NORMAL_CLOSE_CODES:
                    logger.debug(f"[WS] Closed normally ({code})")
                    return
                raise TransportError(
                    f"websocket closed: {reason or exc} (code: {code})",
                    status=code,
                    rejected=code in REJECT_CLOSE_CODES,
                ) from exc
            if message is None:
                return
            yield RawFrame(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.exception("[WS] Error while closing")
        logger.debug("[WS] Closed")

"""Text chat providers: one streamed HTTP request per user turn."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import httpx

from aurora_session.core.stream.decoder import StreamDecoder, WireDialect
from aurora_session.core.transport.base import TransportError
from aurora_session.core.transport.http_stream import SseTransport
from aurora_session.domain.events import ProviderError, ProviderErrorKind, TurnComplete
from aurora_session.domain.models import Modality, Turn
from aurora_session.providers.base import EventSink, ProviderHandle

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

RequestBuilder = Callable[[Sequence[Turn]], dict[str, Any]]


@dataclass(slots=True)
class TextCompletionAdapter:
    provider_id: str
    url: str
    dialect: WireDialect
    build_request: RequestBuilder
    headers: dict[str, str] = field(default_factory=dict)
    timeout_s: float = 60.0
    client: httpx.AsyncClient | None = None
    modality: Modality = Modality.TEXT
    supports_mute: bool = False

    async def start_stream(self, sink: EventSink, *, muted: bool = False) -> ProviderHandle:
        transport = SseTransport(
            url=self.url, headers=dict(self.headers), timeout_s=self.timeout_s, client=self.client
        )
        await transport.open()
        logger.info(f"[Text:{self.provider_id}] Stream ready")
        return _TextCompletionHandle(
            provider_id=self.provider_id,
            transport=transport,
            decoder=StreamDecoder(self.dialect),
            build_request=self.build_request,
            sink=sink,
        )


@dataclass(slots=True)
class _TextCompletionHandle:
    provider_id: str
    transport: SseTransport
    decoder: StreamDecoder
    build_request: RequestBuilder
    sink: EventSink

    _request_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _stopped: bool = field(init=False, default=False)

    async def send(self, turns: Sequence[Turn]) -> None:
        if self._stopped:
            raise RuntimeError("stream is stopped")
        if self._request_task is not None and not self._request_task.done():
            raise RuntimeError("a response is already streaming")
        body = self.build_request(turns)
        self._request_task = asyncio.create_task(self._stream_response(body))

    async def _stream_response(self, body: dict[str, Any]) -> None:
        deltas = 0
        try:
            async with contextlib.aclosing(self.transport.post_stream(body)) as frames:
                async for raw in frames:
                    for event in self.decoder.decode(raw):
                        self.sink(event)
                        if isinstance(event, (TurnComplete, ProviderError)):
                            logger.info(
                                f"[Text:{self.provider_id}] Response ended after {deltas} deltas"
                            )
                            return
                        deltas += 1
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            if self._stopped:
                return
            kind = ProviderErrorKind.REJECTED if exc.rejected else ProviderErrorKind.CONNECTION_LOST
            logger.error(f"[Text:{self.provider_id}] Stream failed: {exc}")
            self.sink(ProviderError(kind=kind, message=str(exc)))
            return
        if not self._stopped:
            self.sink(
                ProviderError(
                    kind=ProviderErrorKind.CONNECTION_LOST,
                    message="response stream ended before completion",
                )
            )

    async def set_muted(self, muted: bool) -> None:
        raise RuntimeError("text streams have no capture to mute")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task = self._request_task
        self._request_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.transport.close()
        logger.info(f"[Text:{self.provider_id}] Stream stopped")


def backend_chat_adapter(
    *,
    api_base_url: str,
    auth_token: str | None,
    provider_id: str = "aurora-chat",
    timeout_s: float = 60.0,
    client: httpx.AsyncClient | None = None,
) -> TextCompletionAdapter:
    def build(turns: Sequence[Turn]) -> dict[str, Any]:
        return {"messages": [turn.to_message() for turn in turns]}

    headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
    return TextCompletionAdapter(
        provider_id=provider_id,
        url=api_base_url.rstrip("/") + "/ai/chat",
        dialect=WireDialect.SSE_BACKEND,
        build_request=build,
        headers=headers,
        timeout_s=timeout_s,
        client=client,
    )


def openai_chat_adapter(
    *,
    api_key: str,
    model: str = "gpt-4o-mini",
    temperature: float = 0.7,
    max_tokens: int | None = None,
    system_prompt: str = "",
    provider_id: str = "openai-chat",
    url: str = OPENAI_CHAT_URL,
    timeout_s: float = 60.0,
    client: httpx.AsyncClient | None = None,
) -> TextCompletionAdapter:
    if not api_key:
        raise ValueError("api_key must be non-empty")

    def build(turns: Sequence[Turn]) -> dict[str, Any]:
        messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        messages.extend(turn.to_message() for turn in turns)
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "temperature": temperature,
        }
        if max_tokens:
            body["max_tokens"] = max_tokens
        return body

    return TextCompletionAdapter(
        provider_id=provider_id,
        url=url,
        dialect=WireDialect.SSE_OPENAI,
        build_request=build,
        headers={"Authorization": f"Bearer {api_key}"},
        timeout_s=timeout_s,
        client=client,
    )

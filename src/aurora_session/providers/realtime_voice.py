"""Live voice calls over a realtime WebSocket.

``VoiceStreamHandle`` owns one connection plus (while unmuted) one mic
capture. It is shared by every voice provider; the adapters only differ
in where they connect and how the session is configured.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from aurora_session.core.audio.format import audio_level, encode_pcm16_base64, prepare_capture_frame
from aurora_session.core.audio.source import AudioSource, AudioSourceFactory
from aurora_session.core.stream.decoder import StreamDecoder, WireDialect, parse_json_frame
from aurora_session.core.transport.base import DuplexTransport, RawFrame, TransportError
from aurora_session.core.transport.websocket import Connector, WebSocketTransport
from aurora_session.domain.events import AudioLevel, ProviderError, ProviderErrorKind
from aurora_session.domain.models import Modality, Role, Turn
from aurora_session.providers.base import EventSink, ProviderHandle

logger = logging.getLogger(__name__)

REALTIME_SAMPLE_RATE_HZ = 24_000

# Given one inbound frame, the control messages to answer it with.
ControlResponder = Callable[[RawFrame], list[dict[str, Any]]]


def _error_kind(exc: TransportError) -> ProviderErrorKind:
    return ProviderErrorKind.REJECTED if exc.rejected else ProviderErrorKind.CONNECTION_LOST


@dataclass(slots=True)
class VoiceStreamHandle:
    name: str
    transport: DuplexTransport
    decoder: StreamDecoder
    sink: EventSink
    audio_source_factory: AudioSourceFactory | None = None
    wire_sample_rate_hz: int = REALTIME_SAMPLE_RATE_HZ
    respond: ControlResponder | None = None
    request_response: bool = True

    _recv_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _capture_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _source: AudioSource | None = field(init=False, default=None, repr=False)
    _muted: bool = field(init=False, default=False)
    _stopped: bool = field(init=False, default=False)

    @property
    def capturing(self) -> bool:
        return self._source is not None

    async def begin(self, *, muted: bool = False) -> None:
        await self.transport.open()
        self._recv_task = asyncio.create_task(self._recv_loop())
        self._muted = muted
        if not muted:
            self._open_capture()
        logger.info(f"[{self.name}] Call connected (muted={muted})")

    async def send(self, turns: Sequence[Turn]) -> None:
        if self._stopped:
            raise RuntimeError("stream is stopped")
        text = next((t.content for t in reversed(turns) if t.role == Role.USER), "")
        if not text:
            raise ValueError("no user turn to send")
        await self._send_json(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": text}],
                },
            }
        )
        if self.request_response:
            await self._send_json({"type": "response.create"})

    async def set_muted(self, muted: bool) -> None:
        if self._stopped or muted == self._muted:
            return
        self._muted = muted
        if muted:
            await self._close_capture()
        else:
            self._open_capture()
        logger.info(f"[{self.name}] {'Muted' if muted else 'Unmuted'}")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        await self._close_capture()
        task = self._recv_task
        self._recv_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.transport.close()
        logger.info(f"[{self.name}] Call ended")

    async def _send_json(self, message: dict[str, Any]) -> None:
        await self.transport.send(json.dumps(message))

    def _open_capture(self) -> None:
        if self.audio_source_factory is None or self._source is not None:
            return
        source = self.audio_source_factory()
        self._source = source
        self._capture_task = asyncio.create_task(self._capture_loop(source))

    async def _close_capture(self) -> None:
        task = self._capture_task
        source = self._source
        self._capture_task = None
        self._source = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if source is not None:
            try:
                await source.close()
            except Exception:
                logger.exception(f"[{self.name}] Failed to release microphone")

    async def _capture_loop(self, source: AudioSource) -> None:
        try:
            async for frame in source.frames():
                samples = prepare_capture_frame(frame, target_rate_hz=self.wire_sample_rate_hz)
                self.sink(AudioLevel(audio_level(samples), from_capture=True))
                await self._send_json(
                    {"type": "input_audio_buffer.append", "audio": encode_pcm16_base64(samples)}
                )
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            if not self._stopped:
                logger.warning(f"[{self.name}] Audio upload failed: {exc}")
                self.sink(ProviderError(kind=_error_kind(exc), message=str(exc)))

    async def _recv_loop(self) -> None:
        try:
            async for raw in self.transport.frames():
                if self.respond is not None:
                    for reply in self.respond(raw):
                        await self._send_json(reply)
                for event in self.decoder.decode(raw):
                    self.sink(event)
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            if not self._stopped:
                logger.error(f"[{self.name}] Connection failed: {exc}")
                self.sink(ProviderError(kind=_error_kind(exc), message=str(exc)))
            return
        if not self._stopped:
            logger.warning(f"[{self.name}] Server ended the call")
            self.sink(
                ProviderError(
                    kind=ProviderErrorKind.CONNECTION_LOST, message="voice connection closed by server"
                )
            )


async def open_voice_handle(handle: VoiceStreamHandle, *, muted: bool) -> VoiceStreamHandle:
    try:
        await handle.begin(muted=muted)
    except (Exception, asyncio.CancelledError):
        await handle.stop()
        raise
    return handle


@dataclass(slots=True)
class RealtimeVoiceAdapter:
    """Voice provider backed by the OpenAI realtime API (through a proxy)."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    instructions: str = ""
    voice: str = "alloy"
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500
    sample_rate_hz: int = REALTIME_SAMPLE_RATE_HZ
    audio_source_factory: AudioSourceFactory | None = None
    open_timeout_s: float = 10.0
    connector: Connector | None = None
    provider_id: str = "openai-realtime"
    modality: Modality = Modality.VOICE
    supports_mute: bool = True

    def session_config(self) -> dict[str, Any]:
        session: dict[str, Any] = {
            "modalities": ["text", "audio"],
            "voice": self.voice,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": self.transcription_model},
            "turn_detection": {
                "type": "server_vad",
                "threshold": self.vad_threshold,
                "prefix_padding_ms": self.prefix_padding_ms,
                "silence_duration_ms": self.silence_duration_ms,
            },
        }
        if self.instructions:
            session["instructions"] = self.instructions
        return {"type": "session.update", "session": session}

    def _respond(self, raw: RawFrame) -> list[dict[str, Any]]:
        data = parse_json_frame(raw)
        if isinstance(data, dict) and data.get("type") == "session.created":
            logger.info("[Realtime] Session created, sending configuration")
            return [self.session_config()]
        return []

    async def start_stream(self, sink: EventSink, *, muted: bool = False) -> ProviderHandle:
        transport = WebSocketTransport(
            url=self.url,
            headers=dict(self.headers),
            open_timeout_s=self.open_timeout_s,
            connector=self.connector,
        )
        handle = VoiceStreamHandle(
            name="Realtime",
            transport=transport,
            decoder=StreamDecoder(WireDialect.OPENAI_REALTIME),
            sink=sink,
            audio_source_factory=self.audio_source_factory,
            wire_sample_rate_hz=self.sample_rate_hz,
            respond=self._respond,
        )
        return await open_voice_handle(handle, muted=muted)

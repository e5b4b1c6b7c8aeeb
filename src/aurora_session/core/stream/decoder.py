"""Raw frames -> typed stream events.

Every wire dialect is first normalized into canonical frames
``{"type": ..., "payload": ...}`` and then typed by ``canonical_to_event``.
"""

from __future__ import annotations

import binascii
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from aurora_session.core.audio.format import audio_level, decode_pcm16_base64, pcm16le_to_float32
from aurora_session.core.transport.base import RawFrame
from aurora_session.domain.events import (
    AudioLevel,
    ProviderError,
    ProviderErrorKind,
    ResponseStarted,
    StreamEvent,
    TokenDelta,
    TurnComplete,
    UserTranscript,
)

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"

_REJECT_MARKERS = (
    "authentication",
    "unauthorized",
    "bearer",
    "api key",
    "missing",
    "forbidden",
    "invalid",
    "quota",
    "rate limit",
)


class WireDialect(str, Enum):
    CANONICAL = "canonical"
    SSE_BACKEND = "sse_backend"
    SSE_OPENAI = "sse_openai"
    OPENAI_REALTIME = "openai_realtime"
    PERSONAPLEX = "personaplex"


CanonicalFrame = dict[str, Any]


def _frame(type_: str, payload: Any = None) -> CanonicalFrame:
    return {"type": type_, "payload": payload}


def parse_json_frame(raw: RawFrame) -> Any | None:
    text = raw.text().strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"[Decoder] Non-JSON frame ignored: {text[:60]!r}")
        return None


def classify_error(message: str) -> ProviderErrorKind:
    lowered = message.lower()
    if any(marker in lowered for marker in _REJECT_MARKERS):
        return ProviderErrorKind.REJECTED
    return ProviderErrorKind.CONNECTION_LOST


def _error_message(error: Any, default: str = "Unknown error") -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or default)
    if error:
        return str(error)
    return default


def canonical_to_event(frame: CanonicalFrame) -> StreamEvent | None:
    type_ = frame.get("type")
    payload = frame.get("payload")

    if type_ == "token":
        text = payload.get("text") if isinstance(payload, dict) else payload
        if not text:
            return None
        return TokenDelta(str(text))

    if type_ == "turn_complete":
        return TurnComplete()

    if type_ == "error":
        if isinstance(payload, dict):
            message = _error_message(payload)
            try:
                kind = ProviderErrorKind(payload.get("kind"))
            except ValueError:
                kind = classify_error(message)
        else:
            message = _error_message(payload)
            kind = classify_error(message)
        return ProviderError(kind=kind, message=message)

    if type_ == "audio_level":
        try:
            level = float(payload)
        except (TypeError, ValueError):
            return None
        return AudioLevel(min(1.0, max(0.0, level)))

    if type_ == "response_started":
        return ResponseStarted()

    if type_ == "user_transcript":
        text = payload.get("text") if isinstance(payload, dict) else payload
        if not text:
            return None
        return UserTranscript(str(text).strip())

    logger.debug(f"[Decoder] Unknown canonical frame type: {type_!r}")
    return None


def _normalize_canonical(raw: RawFrame) -> list[CanonicalFrame]:
    data = parse_json_frame(raw)
    if isinstance(data, dict) and "type" in data:
        return [data]
    return []


def _normalize_sse_backend(raw: RawFrame) -> list[CanonicalFrame]:
    if raw.text().strip() == SSE_DONE:
        return [_frame("turn_complete")]
    data = parse_json_frame(raw)
    if not isinstance(data, dict):
        return []
    if "error" in data:
        return [_frame("error", _error_message(data["error"], "Streaming error"))]
    if data.get("content"):
        return [_frame("token", data["content"])]
    return []


def _normalize_sse_openai(raw: RawFrame) -> list[CanonicalFrame]:
    if raw.text().strip() == SSE_DONE:
        return [_frame("turn_complete")]
    data = parse_json_frame(raw)
    if not isinstance(data, dict):
        return []
    if "error" in data:
        return [_frame("error", _error_message(data["error"]))]
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return []
    content = (choices[0].get("delta") or {}).get("content")
    if content:
        return [_frame("token", content)]
    return []


def _audio_delta_level(delta: Any) -> list[CanonicalFrame]:
    if not isinstance(delta, str) or not delta:
        return []
    try:
        samples = decode_pcm16_base64(delta)
    except (binascii.Error, ValueError):
        logger.debug("[Decoder] Undecodable audio delta")
        return []
    return [_frame("audio_level", audio_level(samples))]


def _normalize_realtime_message(data: dict[str, Any]) -> list[CanonicalFrame]:
    type_ = data.get("type")

    if type_ == "response.created":
        return [_frame("response_started")]
    if type_ in ("response.audio_transcript.delta", "response.text.delta"):
        delta = data.get("delta")
        return [_frame("token", delta)] if delta else []
    if type_ in ("response.audio.delta", "audio.delta"):
        return _audio_delta_level(data.get("delta"))
    if type_ == "response.done":
        response = data.get("response") or {}
        if response.get("status") == "failed":
            details = (response.get("status_details") or {}).get("error")
            return [_frame("error", _error_message(details, "Response failed"))]
        return [_frame("turn_complete")]
    if type_ in ("conversation.item.input_audio_transcription.completed", "transcript"):
        text = data.get("transcript") or data.get("text")
        return [_frame("user_transcript", text)] if text else []
    if type_ == "error":
        return [_frame("error", _error_message(data.get("error")))]
    return []


def _normalize_openai_realtime(raw: RawFrame) -> list[CanonicalFrame]:
    data = parse_json_frame(raw)
    if not isinstance(data, dict):
        return []
    return _normalize_realtime_message(data)


def _normalize_personaplex(raw: RawFrame) -> list[CanonicalFrame]:
    # The bridge sends JSON events as text frames and assistant audio as binary PCM16.
    if isinstance(raw.data, bytes):
        return [_frame("audio_level", audio_level(pcm16le_to_float32(raw.data)))]
    return _normalize_openai_realtime(raw)


_NORMALIZERS: dict[WireDialect, Callable[[RawFrame], list[CanonicalFrame]]] = {
    WireDialect.CANONICAL: _normalize_canonical,
    WireDialect.SSE_BACKEND: _normalize_sse_backend,
    WireDialect.SSE_OPENAI: _normalize_sse_openai,
    WireDialect.OPENAI_REALTIME: _normalize_openai_realtime,
    WireDialect.PERSONAPLEX: _normalize_personaplex,
}


@dataclass(slots=True)
class StreamDecoder:
    dialect: WireDialect = WireDialect.CANONICAL
    _normalize: Callable[[RawFrame], list[CanonicalFrame]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._normalize = _NORMALIZERS[self.dialect]

    def decode(self, raw: RawFrame) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for frame in self._normalize(raw):
            event = canonical_to_event(frame)
            if event is not None:
                events.append(event)
        return events

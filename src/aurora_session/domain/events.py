from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class ProviderErrorKind(str, Enum):
    STALLED = "stalled"
    CONNECTION_LOST = "connection_lost"
    REJECTED = "rejected"


class StreamEventType(str, Enum):
    TOKEN_DELTA = "TOKEN_DELTA"
    TURN_COMPLETE = "TURN_COMPLETE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    AUDIO_LEVEL = "AUDIO_LEVEL"
    RESPONSE_STARTED = "RESPONSE_STARTED"
    USER_TRANSCRIPT = "USER_TRANSCRIPT"


@dataclass(frozen=True, slots=True)
class TokenDelta:
    text: str
    type: StreamEventType = StreamEventType.TOKEN_DELTA


@dataclass(frozen=True, slots=True)
class TurnComplete:
    type: StreamEventType = StreamEventType.TURN_COMPLETE


@dataclass(frozen=True, slots=True)
class ProviderError:
    kind: ProviderErrorKind
    message: str
    type: StreamEventType = StreamEventType.PROVIDER_ERROR


@dataclass(frozen=True, slots=True)
class AudioLevel:
    level: float
    from_capture: bool = False  # local mic frame, not provider data
    type: StreamEventType = StreamEventType.AUDIO_LEVEL

    def __post_init__(self) -> None:
        if not (0.0 <= self.level <= 1.0):
            raise ValueError("AudioLevel.level must be in 0.0..1.0")


@dataclass(frozen=True, slots=True)
class ResponseStarted:
    type: StreamEventType = StreamEventType.RESPONSE_STARTED


@dataclass(frozen=True, slots=True)
class UserTranscript:
    text: str
    type: StreamEventType = StreamEventType.USER_TRANSCRIPT


StreamEvent = (
    TokenDelta | TurnComplete | ProviderError | AudioLevel | ResponseStarted | UserTranscript
)


class UIEventType(str, Enum):
    STATE_CHANGED = "STATE_CHANGED"
    TRANSCRIPT_UPDATED = "TRANSCRIPT_UPDATED"
    AUDIO_LEVEL = "AUDIO_LEVEL"
    ERROR = "ERROR"
    BUSY = "BUSY"
    FINALIZED = "FINALIZED"


@dataclass(frozen=True, slots=True)
class UIEvent:
    type: UIEventType
    session_id: UUID | None = None
    payload: object | None = None
    fatal: bool = False

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from uuid import UUID, uuid4


class Modality(str, Enum):
    TEXT = "text"
    VOICE = "voice"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


class ConsentStatus(str, Enum):
    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True, slots=True)
class Turn:
    role: Role
    content: str
    timestamp: float  # wall-clock seconds (Clock.wall)
    streaming: bool = False
    id: UUID = field(default_factory=uuid4)

    def extended(self, delta: str) -> "Turn":
        if not self.streaming:
            raise ValueError("cannot extend a frozen turn")
        return replace(self, content=self.content + delta)

    def frozen(self) -> "Turn":
        return replace(self, streaming=False)

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(slots=True)
class Session:
    modality: Modality
    provider_id: str
    started_at: float
    consent_status: ConsentStatus
    id: UUID = field(default_factory=uuid4)
    turns: list[Turn] = field(default_factory=list)
    muted: bool = False

    @property
    def in_flight(self) -> Turn | None:
        if self.turns and self.turns[-1].streaming:
            return self.turns[-1]
        return None

    def frozen_turns(self) -> tuple[Turn, ...]:
        return tuple(t for t in self.turns if not t.streaming)

    def append(self, turn: Turn) -> None:
        if self.in_flight is not None:
            raise ValueError("previous turn is still streaming")
        self.turns.append(turn)

    def insert_settled(self, turn: Turn) -> None:
        """Add a frozen turn, keeping a streaming turn (if any) last."""
        if self.in_flight is not None:
            self.turns.insert(len(self.turns) - 1, turn)
        else:
            self.turns.append(turn)

    def extend_in_flight(self, delta: str, *, timestamp: float) -> Turn:
        current = self.in_flight
        if current is None:
            current = Turn(role=Role.ASSISTANT, content="", timestamp=timestamp, streaming=True)
            self.turns.append(current)
        updated = current.extended(delta)
        self.turns[-1] = updated
        return updated

    def freeze_in_flight(self) -> Turn | None:
        current = self.in_flight
        if current is None:
            return None
        self.turns[-1] = current.frozen()
        return self.turns[-1]

    def discard_in_flight(self) -> Turn | None:
        current = self.in_flight
        if current is not None:
            self.turns.pop()
        return current


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only projection handed to the UI."""

    state: SessionState
    transcript: tuple[Turn, ...] = ()
    audio_level: float = 0.0
    error: str | None = None
    muted: bool = False
    modality: Modality | None = None
    provider_id: str | None = None
    session_id: UUID | None = None

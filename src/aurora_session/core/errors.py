"""Error taxonomy of the session engine.

Only lifecycle misuse is raised to the caller. Provider failures travel as
``ProviderError`` stream events and end in the ``error`` state instead.
"""

from __future__ import annotations

from enum import Enum

from aurora_session.domain.models import ConsentStatus, Modality, SessionState


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    BUSY = "busy"


class SessionError(Exception):
    pass


class AlreadyActive(SessionError):
    def __init__(self, modality: Modality) -> None:
        super().__init__(f"a {modality.value} session is already active")
        self.modality = modality


class ConsentRequired(SessionError):
    def __init__(self, modality: Modality, status: ConsentStatus) -> None:
        super().__init__(f"AI consent is {status.value}; cannot start a {modality.value} session")
        self.modality = modality
        self.status = status


class UnknownProvider(SessionError):
    def __init__(self, provider_id: str, reason: str = "not registered") -> None:
        super().__init__(f"provider {provider_id!r} {reason}")
        self.provider_id = provider_id


class InvalidTransition(SessionError):
    def __init__(self, current: SessionState, target: SessionState) -> None:
        super().__init__(f"illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class FinalizeRejected(SessionError):
    pass


class FinalizeFailed(SessionError):
    """Finalization did not complete; the live session is unaffected and may retry."""

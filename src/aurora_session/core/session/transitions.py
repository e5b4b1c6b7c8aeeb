from __future__ import annotations

from aurora_session.core.errors import InvalidTransition
from aurora_session.domain.models import SessionState

S = SessionState

# Re-entering INITIALIZING from a live state is a provider switch or restart.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.IDLE: frozenset({S.INITIALIZING}),
    S.INITIALIZING: frozenset({S.LISTENING, S.PROCESSING, S.ERROR, S.IDLE}),
    S.LISTENING: frozenset({S.PROCESSING, S.SPEAKING, S.INITIALIZING, S.ERROR, S.IDLE}),
    S.PROCESSING: frozenset({S.SPEAKING, S.LISTENING, S.INITIALIZING, S.ERROR, S.IDLE}),
    S.SPEAKING: frozenset({S.LISTENING, S.INITIALIZING, S.ERROR, S.IDLE}),
    S.ERROR: frozenset({S.INITIALIZING, S.IDLE}),
}

STREAMING_STATES = frozenset({S.PROCESSING, S.SPEAKING})
SWITCHABLE_STATES = frozenset({S.LISTENING, S.PROCESSING, S.SPEAKING, S.ERROR})


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: SessionState, target: SessionState) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from aurora_session.core.errors import AlreadyActive
from aurora_session.domain.models import Modality

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Claim:
    modality: Modality
    owner: str
    token: UUID = field(default_factory=uuid4)


@dataclass(slots=True)
class SessionRegistry:
    """Process-wide ownership of the single live session per modality.

    ``claim`` is synchronous so that checking and taking the slot cannot be
    interleaved with another coroutine.
    """

    _claims: dict[Modality, Claim] = field(default_factory=dict)

    def claim(self, modality: Modality, owner: str) -> Claim:
        current = self._claims.get(modality)
        if current is not None:
            raise AlreadyActive(modality)
        claim = Claim(modality=modality, owner=owner)
        self._claims[modality] = claim
        logger.debug(f"[Registry] {modality.value} claimed by {owner}")
        return claim

    def release(self, claim: Claim) -> bool:
        current = self._claims.get(claim.modality)
        if current is None or current.token != claim.token:
            return False
        del self._claims[claim.modality]
        logger.debug(f"[Registry] {claim.modality.value} released by {claim.owner}")
        return True

    def transfer(self, claim: Claim, new_owner: str) -> Claim:
        current = self._claims.get(claim.modality)
        if current is None or current.token != claim.token:
            raise ValueError("claim is not the current owner of its modality")
        moved = Claim(modality=claim.modality, owner=new_owner)
        self._claims[claim.modality] = moved
        logger.info(f"[Registry] {claim.modality.value}: {claim.owner} -> {new_owner}")
        return moved

    def owner_of(self, modality: Modality) -> str | None:
        current = self._claims.get(modality)
        return current.owner if current else None

    def is_active(self, modality: Modality) -> bool:
        return modality in self._claims


default_registry = SessionRegistry()

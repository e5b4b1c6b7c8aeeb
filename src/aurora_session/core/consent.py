from __future__ import annotations

import logging
from dataclasses import dataclass, field

from aurora_session.core.storage.secrets import SecretStore
from aurora_session.domain.models import ConsentStatus, Modality

logger = logging.getLogger(__name__)

AI_CONSENT_KEY = "ai_data_consent"


@dataclass(slots=True)
class ConsentStore:
    """Persists the user's AI data-sharing decision.

    Only ``granted`` and ``denied`` are written; ``reset`` removes the
    record so the next load reports ``unknown``.
    """

    secrets: SecretStore
    key: str = AI_CONSENT_KEY

    def load(self) -> ConsentStatus:
        try:
            stored = self.secrets.get(self.key)
        except ValueError:
            logger.warning("[Consent] Stored consent unreadable, treating as unknown")
            return ConsentStatus.UNKNOWN
        if stored in (ConsentStatus.GRANTED.value, ConsentStatus.DENIED.value):
            return ConsentStatus(stored)
        return ConsentStatus.UNKNOWN

    def save(self, status: ConsentStatus) -> None:
        if status == ConsentStatus.UNKNOWN:
            self.secrets.delete(self.key)
        else:
            self.secrets.set(self.key, status.value)


@dataclass(slots=True)
class ConsentGate:
    store: ConsentStore
    ai_modalities: frozenset[Modality] = frozenset({Modality.TEXT, Modality.VOICE})

    _status: ConsentStatus | None = field(init=False, default=None)

    @property
    def status(self) -> ConsentStatus:
        if self._status is None:
            self._status = self.store.load()
        return self._status

    def require_consent(self, modality: Modality) -> ConsentStatus:
        if modality not in self.ai_modalities:
            return ConsentStatus.GRANTED
        return self.status

    def grant(self) -> None:
        self._record(ConsentStatus.GRANTED)

    def deny(self) -> None:
        self._record(ConsentStatus.DENIED)

    def reset(self) -> None:
        self._record(ConsentStatus.UNKNOWN)

    def _record(self, status: ConsentStatus) -> None:
        try:
            self.store.save(status)
        finally:
            # The in-process decision stands even if persisting it failed.
            self._status = status
        logger.info(f"[Consent] AI consent -> {status.value}")

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

from aurora_session.core.errors import UnknownProvider
from aurora_session.domain.events import StreamEvent
from aurora_session.domain.models import Modality, Turn

EventSink = Callable[[StreamEvent], None]


class ProviderHandle(Protocol):
    """Live resources of one provider stream (connection, capture, request).

    ``stop()`` undoes everything ``start_stream`` set up and is idempotent.
    """

    async def send(self, turns: Sequence[Turn]) -> None: ...
    async def set_muted(self, muted: bool) -> None: ...
    async def stop(self) -> None: ...


class ProviderAdapter(Protocol):
    provider_id: str
    modality: Modality
    supports_mute: bool

    async def start_stream(self, sink: EventSink, *, muted: bool = False) -> ProviderHandle: ...


@dataclass(slots=True)
class ProviderCatalog:
    """Dispatch table from provider id to adapter."""

    adapters: dict[str, ProviderAdapter] = field(default_factory=dict)

    def register(self, adapter: ProviderAdapter) -> None:
        if adapter.provider_id in self.adapters:
            raise ValueError(f"provider {adapter.provider_id!r} is already registered")
        self.adapters[adapter.provider_id] = adapter

    def get(self, provider_id: str, *, modality: Modality | None = None) -> ProviderAdapter:
        adapter = self.adapters.get(provider_id)
        if adapter is None:
            raise UnknownProvider(provider_id)
        if modality is not None and adapter.modality != modality:
            raise UnknownProvider(provider_id, f"does not serve {modality.value} sessions")
        return adapter

    def ids(self, modality: Modality | None = None) -> list[str]:
        return [
            pid
            for pid, adapter in self.adapters.items()
            if modality is None or adapter.modality == modality
        ]

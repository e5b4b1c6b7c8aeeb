from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

from aurora_session.core.audio.source import AudioSourceFactory
from aurora_session.core.stream.decoder import StreamDecoder, WireDialect
from aurora_session.core.transport.base import TransportError
from aurora_session.core.transport.websocket import Connector, WebSocketTransport
from aurora_session.domain.models import Modality
from aurora_session.providers.base import EventSink, ProviderHandle
from aurora_session.providers.realtime_voice import (
    REALTIME_SAMPLE_RATE_HZ,
    VoiceStreamHandle,
    open_voice_handle,
)

logger = logging.getLogger(__name__)


def personaplex_ws_url(api_base_url: str, token: str) -> str:
    """Backend REST base (``https://host/api``) -> PersonaPlex bridge socket URL."""
    base = api_base_url.rstrip("/")
    if base.endswith("/api"):
        base = base[: -len("/api")]
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]
    return f"{base}/api/personaplex/ws?token={quote(token, safe='')}"


@dataclass(slots=True)
class PersonaPlexVoiceAdapter:
    """Voice provider bridged by the backend; the backend configures the model session."""

    api_base_url: str
    auth_token: str | None = None
    sample_rate_hz: int = REALTIME_SAMPLE_RATE_HZ
    audio_source_factory: AudioSourceFactory | None = None
    open_timeout_s: float = 10.0
    connector: Connector | None = None
    provider_id: str = "personaplex"
    modality: Modality = Modality.VOICE
    supports_mute: bool = True

    async def start_stream(self, sink: EventSink, *, muted: bool = False) -> ProviderHandle:
        if not self.auth_token:
            raise TransportError("not authenticated: no auth token configured", rejected=True)
        url = personaplex_ws_url(self.api_base_url, self.auth_token)
        logger.info(f"[PersonaPlex] Connecting to {url.split('?', 1)[0]}?token=***")
        handle = VoiceStreamHandle(
            name="PersonaPlex",
            transport=WebSocketTransport(
                url=url, open_timeout_s=self.open_timeout_s, connector=self.connector
            ),
            decoder=StreamDecoder(WireDialect.PERSONAPLEX),
            sink=sink,
            audio_source_factory=self.audio_source_factory,
            wire_sample_rate_hz=self.sample_rate_hz,
            request_response=False,
        )
        return await open_voice_handle(handle, muted=muted)

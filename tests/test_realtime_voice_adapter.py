from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import numpy as np
import pytest

from aurora_session.core.audio.format import AudioFrameF32
from aurora_session.core.transport.base import TransportError
from aurora_session.domain.events import AudioLevel, ProviderError, ProviderErrorKind, TokenDelta
from aurora_session.domain.models import Role, Turn
from aurora_session.providers.personaplex import PersonaPlexVoiceAdapter, personaplex_ws_url
from aurora_session.providers.realtime_voice import RealtimeVoiceAdapter


class FakeClosed(Exception):
    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(f"closed {code}")
        self.code = code
        self.reason = reason


class FakeHandshakeRejected(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"server rejected WebSocket connection: HTTP {status_code}")
        self.status_code = status_code


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, obj) -> None:
        self.inbox.put_nowait(json.dumps(obj) if isinstance(obj, dict) else obj)

    def sent_types(self) -> list[str]:
        return [json.loads(p)["type"] for p in self.sent]

    async def send(self, payload) -> None:
        if self.closed:
            raise FakeClosed(1006)
        self.sent.append(payload)

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeConnector:
    ws: FakeWebSocket | None = None
    error: Exception | None = None
    calls: list = field(default_factory=list)

    async def __call__(self, url, *, headers, open_timeout):
        self.calls.append((url, headers))
        if self.error is not None:
            raise self.error
        self.ws = FakeWebSocket()
        return self.ws


@dataclass
class FakeMic:
    blocks: list
    closed: bool = False

    async def frames(self):
        for block in self.blocks:
            yield AudioFrameF32(samples=block, sample_rate_hz=48_000)
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeMicFactory:
    blocks: list = field(default_factory=lambda: [np.full(960, 0.5, dtype=np.float32)])
    opened: list = field(default_factory=list)

    def __call__(self) -> FakeMic:
        mic = FakeMic(blocks=list(self.blocks))
        self.opened.append(mic)
        return mic


async def _until(cond, timeout_s: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not cond():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


TURNS = [Turn(role=Role.USER, content="Can we talk?", timestamp=0.0)]


@pytest.mark.asyncio
async def test_realtime_configures_session_after_created_and_decodes_events():
    connect = FakeConnector()
    adapter = RealtimeVoiceAdapter(
        url="ws://proxy.test",
        headers={"X-Client": "aurora"},
        instructions="Be warm.",
        connector=connect,
    )
    events: list = []
    handle = await adapter.start_stream(events.append, muted=True)
    ws = connect.ws

    ws.push({"type": "session.created"})
    ws.push({"type": "response.audio_transcript.delta", "delta": "Hello"})
    await _until(lambda: events)

    assert connect.calls == [("ws://proxy.test", {"X-Client": "aurora"})]
    update = json.loads(ws.sent[0])
    assert update["type"] == "session.update"
    assert update["session"]["instructions"] == "Be warm."
    assert update["session"]["turn_detection"]["type"] == "server_vad"
    assert events == [TokenDelta("Hello")]
    await handle.stop()


@pytest.mark.asyncio
async def test_realtime_send_creates_item_and_requests_response():
    connect = FakeConnector()
    handle = await RealtimeVoiceAdapter(url="ws://proxy.test", connector=connect).start_stream(
        lambda _e: None, muted=True
    )

    await handle.send(TURNS)

    ws = connect.ws
    assert ws.sent_types() == ["conversation.item.create", "response.create"]
    item = json.loads(ws.sent[0])["item"]
    assert item["content"] == [{"type": "input_text", "text": "Can we talk?"}]
    await handle.stop()


@pytest.mark.asyncio
async def test_mic_frames_are_uploaded_and_mute_releases_device():
    connect = FakeConnector()
    mics = FakeMicFactory()
    adapter = RealtimeVoiceAdapter(url="ws://proxy.test", connector=connect, audio_source_factory=mics)
    events: list = []
    handle = await adapter.start_stream(events.append)
    ws = connect.ws

    await _until(lambda: ws.sent)
    append = json.loads(ws.sent[0])
    assert append["type"] == "input_audio_buffer.append"
    assert append["audio"]
    (level,) = events
    assert isinstance(level, AudioLevel) and level.from_capture is True

    await handle.set_muted(True)
    assert mics.opened[0].closed is True
    assert handle.capturing is False

    await handle.set_muted(False)
    assert len(mics.opened) == 2
    assert handle.capturing is True

    await handle.stop()
    assert mics.opened[1].closed is True


@pytest.mark.asyncio
async def test_muted_start_never_opens_microphone():
    connect = FakeConnector()
    mics = FakeMicFactory()
    adapter = RealtimeVoiceAdapter(url="ws://proxy.test", connector=connect, audio_source_factory=mics)

    handle = await adapter.start_stream(lambda _e: None, muted=True)

    assert mics.opened == []
    await handle.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_silent():
    connect = FakeConnector()
    events: list = []
    handle = await RealtimeVoiceAdapter(url="ws://proxy.test", connector=connect).start_stream(
        events.append, muted=True
    )

    await handle.stop()
    await handle.stop()

    assert connect.ws.closed is True
    assert events == []
    with pytest.raises(RuntimeError):
        await handle.send(TURNS)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "kind"),
    [(1000, ProviderErrorKind.CONNECTION_LOST), (1006, ProviderErrorKind.CONNECTION_LOST), (1008, ProviderErrorKind.REJECTED)],
)
async def test_server_close_mid_call_is_reported(code, kind):
    connect = FakeConnector()
    events: list = []
    handle = await RealtimeVoiceAdapter(url="ws://proxy.test", connector=connect).start_stream(
        events.append, muted=True
    )

    connect.ws.push(FakeClosed(code, "bye"))
    await _until(lambda: events)

    (error,) = events
    assert isinstance(error, ProviderError)
    assert error.kind == kind
    await handle.stop()


@pytest.mark.asyncio
async def test_rejected_handshake_fails_start():
    connect = FakeConnector(error=FakeHandshakeRejected(401))
    mics = FakeMicFactory()
    adapter = RealtimeVoiceAdapter(url="ws://proxy.test", connector=connect, audio_source_factory=mics)

    with pytest.raises(TransportError) as excinfo:
        await adapter.start_stream(lambda _e: None)

    assert excinfo.value.rejected is True
    assert excinfo.value.status == 401
    assert mics.opened == []


def test_personaplex_url_from_backend_base():
    assert (
        personaplex_ws_url("https://api.aurora.test/api", "a/b c")
        == "wss://api.aurora.test/api/personaplex/ws?token=a%2Fb%20c"
    )
    assert (
        personaplex_ws_url("http://localhost:3000/api/", "t")
        == "ws://localhost:3000/api/personaplex/ws?token=t"
    )


@pytest.mark.asyncio
async def test_personaplex_requires_auth_token():
    connect = FakeConnector()
    adapter = PersonaPlexVoiceAdapter(api_base_url="http://localhost:3000/api", connector=connect)

    with pytest.raises(TransportError) as excinfo:
        await adapter.start_stream(lambda _e: None)

    assert excinfo.value.rejected is True
    assert connect.calls == []


@pytest.mark.asyncio
async def test_personaplex_leaves_response_timing_to_bridge():
    connect = FakeConnector()
    adapter = PersonaPlexVoiceAdapter(
        api_base_url="http://localhost:3000/api", auth_token="tok", connector=connect
    )
    handle = await adapter.start_stream(lambda _e: None, muted=True)

    await handle.send(TURNS)

    assert connect.calls[0][0] == "ws://localhost:3000/api/personaplex/ws?token=tok"
    assert connect.ws.sent_types() == ["conversation.item.create"]
    await handle.stop()

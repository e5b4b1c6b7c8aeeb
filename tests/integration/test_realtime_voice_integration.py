from __future__ import annotations

import asyncio
import os

import pytest

from aurora_session.domain.events import ProviderError, TokenDelta, TurnComplete
from aurora_session.domain.models import Role, Turn
from aurora_session.providers.realtime_voice import RealtimeVoiceAdapter

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.getenv("INTEGRATION") != "1", reason="set INTEGRATION=1 to run integration tests"
    ),
]


@pytest.mark.asyncio
async def test_realtime_proxy_answers_typed_message() -> None:
    proxy_url = os.getenv("AURORA_REALTIME_PROXY_URL")
    if not proxy_url:
        pytest.skip("missing env var AURORA_REALTIME_PROXY_URL")

    events: list = []
    done = asyncio.Event()

    def sink(event) -> None:
        events.append(event)
        if isinstance(event, (TurnComplete, ProviderError)):
            done.set()

    # No audio source: the call runs text-in, audio-transcript-out.
    adapter = RealtimeVoiceAdapter(url=proxy_url, instructions="Answer in one short sentence.")
    handle = await adapter.start_stream(sink, muted=True)
    try:
        await asyncio.sleep(1.0)  # let session.created / session.update settle
        await handle.send([Turn(role=Role.USER, content="Hello, can you hear me?", timestamp=0.0)])
        await asyncio.wait_for(done.wait(), timeout=60.0)
    finally:
        await handle.stop()

    assert isinstance(events[-1], TurnComplete), events[-1]
    assert any(isinstance(e, TokenDelta) for e in events)

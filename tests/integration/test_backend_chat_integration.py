from __future__ import annotations

import asyncio
import os

import pytest

from aurora_session.domain.events import ProviderError, TokenDelta, TurnComplete
from aurora_session.domain.models import Role, Turn
from aurora_session.providers.text_completion import backend_chat_adapter, openai_chat_adapter

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.getenv("INTEGRATION") != "1", reason="set INTEGRATION=1 to run integration tests"
    ),
]


async def _one_reply(adapter) -> list:
    events: list = []
    done = asyncio.Event()

    def sink(event) -> None:
        events.append(event)
        if isinstance(event, (TurnComplete, ProviderError)):
            done.set()

    handle = await adapter.start_stream(sink)
    try:
        await handle.send([Turn(role=Role.USER, content="Say hello in one short sentence.", timestamp=0.0)])
        await asyncio.wait_for(done.wait(), timeout=60.0)
    finally:
        await handle.stop()
    return events


@pytest.mark.asyncio
async def test_backend_chat_streams_a_reply() -> None:
    token = os.getenv("AURORA_AUTH_TOKEN")
    if not token:
        pytest.skip("missing env var AURORA_AUTH_TOKEN")

    adapter = backend_chat_adapter(
        api_base_url=os.getenv("AURORA_API_BASE_URL", "http://localhost:3000/api"),
        auth_token=token,
    )
    events = await _one_reply(adapter)

    assert isinstance(events[-1], TurnComplete), events[-1]
    assert "".join(e.text for e in events if isinstance(e, TokenDelta)).strip()


@pytest.mark.asyncio
async def test_openai_chat_streams_a_reply() -> None:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        pytest.skip("missing env var OPENAI_API_KEY")

    adapter = openai_chat_adapter(api_key=api_key, model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"))
    events = await _one_reply(adapter)

    assert isinstance(events[-1], TurnComplete), events[-1]

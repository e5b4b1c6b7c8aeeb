from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field

import pytest

from aurora_session.core.clock import FakeClock
from aurora_session.core.consent import ConsentGate, ConsentStore
from aurora_session.core.errors import AlreadyActive, Outcome, UnknownProvider
from aurora_session.core.session.engine import SessionEngine
from aurora_session.core.session.registry import SessionRegistry
from aurora_session.core.storage.secrets import InMemorySecretStore
from aurora_session.domain.events import ProviderError, ProviderErrorKind, TokenDelta, TurnComplete
from aurora_session.domain.models import Modality, SessionState
from aurora_session.providers.base import ProviderCatalog


@dataclass(slots=True)
class Tracker:
    log: list = field(default_factory=list)
    live: int = 0
    max_live: int = 0


@dataclass(slots=True)
class TrackedHandle:
    adapter: TrackedAdapter
    sink: object
    muted: bool
    stop_calls: int = 0

    async def send(self, turns) -> None:
        for event in self.adapter.script:
            self.sink(event)

    async def set_muted(self, muted: bool) -> None:
        self.muted = muted

    async def stop(self) -> None:
        self.stop_calls += 1
        if self.stop_calls > 1:
            return
        for _ in range(self.adapter.delay()):
            await asyncio.sleep(0)
        self.adapter.tracker.live -= 1
        self.adapter.tracker.log.append(("stop", self.adapter.provider_id))


@dataclass(slots=True)
class TrackedAdapter:
    provider_id: str
    tracker: Tracker
    modality: Modality = Modality.TEXT
    supports_mute: bool = True
    script: list = field(default_factory=list)
    rng: random.Random | None = None
    gate: asyncio.Event | None = None
    handles: list = field(default_factory=list)

    def delay(self) -> int:
        return self.rng.randint(0, 3) if self.rng is not None else 1

    async def start_stream(self, sink, *, muted: bool = False) -> TrackedHandle:
        if self.gate is not None:
            await self.gate.wait()
        for _ in range(self.delay()):
            await asyncio.sleep(0)
        self.tracker.live += 1
        self.tracker.max_live = max(self.tracker.max_live, self.tracker.live)
        self.tracker.log.append(("start", self.provider_id))
        handle = TrackedHandle(adapter=self, sink=sink, muted=muted)
        self.handles.append(handle)
        return handle


def _engine(
    *adapters: TrackedAdapter, registry: SessionRegistry | None = None, name: str = "engine"
) -> SessionEngine:
    gate = ConsentGate(store=ConsentStore(secrets=InMemorySecretStore()))
    gate.grant()
    return SessionEngine(
        catalog=ProviderCatalog({a.provider_id: a for a in adapters}),
        consent=gate,
        registry=registry if registry is not None else SessionRegistry(),
        clock=FakeClock(),
        name=name,
    )


REPLY = [TokenDelta("I hear "), TokenDelta("you."), TurnComplete()]


def test_switch_stops_old_provider_before_starting_new_one():
    async def run():
        tracker = Tracker()
        a = TrackedAdapter("chat-a", tracker, script=list(REPLY))
        b = TrackedAdapter("chat-b", tracker, script=list(REPLY))
        engine = _engine(a, b)
        await engine.start(Modality.TEXT, "chat-a")
        await engine.send("hello")
        await engine.settle()
        before = engine.snapshot.transcript

        assert await engine.switch_provider("chat-b") == Outcome.ACCEPTED

        assert tracker.log == [("start", "chat-a"), ("stop", "chat-a"), ("start", "chat-b")]
        assert a.handles[0].stop_calls == 1
        assert len(b.handles) == 1
        assert engine.snapshot.transcript == before
        assert engine.snapshot.provider_id == "chat-b"
        assert engine.state == SessionState.LISTENING
        assert tracker.max_live == 1
        await engine.close()

    asyncio.run(run())


def test_switch_mid_stream_discards_partial_turn_and_fences_old_handle():
    async def run():
        tracker = Tracker()
        a = TrackedAdapter("chat-a", tracker, script=[TokenDelta("half a thou")])
        b = TrackedAdapter("chat-b", tracker, script=list(REPLY))
        engine = _engine(a, b)
        await engine.start(Modality.TEXT, "chat-a")
        await engine.send("hello")
        await engine.settle()
        assert engine.state == SessionState.SPEAKING

        assert await engine.switch_provider("chat-b") == Outcome.ACCEPTED
        a.handles[0].sink(TokenDelta("ght"))
        await engine.settle()

        assert [t.content for t in engine.snapshot.transcript] == ["hello"]
        assert engine.state == SessionState.LISTENING

        await engine.send("still there?")
        await engine.settle()
        assert [t.content for t in engine.snapshot.transcript] == ["hello", "still there?", "I hear you."]
        await engine.close()

    asyncio.run(run())


def test_switch_carries_mute_to_new_handle():
    async def run():
        tracker = Tracker()
        a = TrackedAdapter("voice-a", tracker, modality=Modality.VOICE)
        b = TrackedAdapter("voice-b", tracker, modality=Modality.VOICE)
        engine = _engine(a, b)
        await engine.start(Modality.VOICE, "voice-a")
        await engine.mute()

        await engine.switch_provider("voice-b")

        assert b.handles[0].muted is True
        assert engine.snapshot.muted is True
        await engine.close()

    asyncio.run(run())


def test_switch_is_busy_without_session_or_while_initializing():
    async def run():
        tracker = Tracker()
        gate = asyncio.Event()
        a = TrackedAdapter("chat-a", tracker, gate=gate)
        b = TrackedAdapter("chat-b", tracker)
        engine = _engine(a, b)

        assert await engine.switch_provider("chat-b") == Outcome.BUSY

        starting = asyncio.create_task(engine.start(Modality.TEXT, "chat-a"))
        await asyncio.sleep(0)
        assert engine.state == SessionState.INITIALIZING
        assert await engine.switch_provider("chat-b") == Outcome.BUSY

        gate.set()
        await starting
        assert engine.state == SessionState.LISTENING
        assert b.handles == []
        await engine.close()

    asyncio.run(run())


def test_switch_to_other_modality_is_unknown_provider():
    async def run():
        tracker = Tracker()
        engine = _engine(
            TrackedAdapter("chat-a", tracker),
            TrackedAdapter("voice-a", tracker, modality=Modality.VOICE),
        )
        await engine.start(Modality.TEXT, "chat-a")
        with pytest.raises(UnknownProvider):
            await engine.switch_provider("voice-a")
        assert engine.state == SessionState.LISTENING
        await engine.close()

    asyncio.run(run())


def test_cancel_during_start_tears_down_late_handle():
    async def run():
        tracker = Tracker()
        gate = asyncio.Event()
        a = TrackedAdapter("chat-a", tracker, gate=gate)
        engine = _engine(a)

        starting = asyncio.create_task(engine.start(Modality.TEXT, "chat-a"))
        await asyncio.sleep(0)
        await engine.cancel()
        assert engine.state == SessionState.IDLE

        gate.set()
        snap = await starting

        assert snap.state == SessionState.IDLE
        assert len(a.handles) == 1
        assert a.handles[0].stop_calls == 1
        assert tracker.live == 0
        assert engine.registry.is_active(Modality.TEXT) is False
        await engine.close()

    asyncio.run(run())


@pytest.mark.parametrize("seed", [1, 7, 42, 1234])
def test_randomized_operations_never_hold_two_handles(seed):
    async def run():
        rng = random.Random(seed)
        tracker = Tracker()
        adapters = [
            TrackedAdapter(pid, tracker, script=list(REPLY), rng=rng)
            for pid in ("chat-a", "chat-b", "chat-c")
        ]
        engine = _engine(*adapters)
        ids = [a.provider_id for a in adapters]

        def pick():
            op = rng.choice(["start", "switch", "cancel", "send", "error", "restart"])
            if op == "start":
                return engine.start(Modality.TEXT, rng.choice(ids))
            if op == "switch":
                return engine.switch_provider(rng.choice(ids))
            if op == "cancel":
                return engine.cancel()
            if op == "send":
                return engine.send("hello")
            if op == "restart":
                return engine.restart()

            async def inject():
                live = [h for a in adapters for h in a.handles if h.stop_calls == 0]
                if live:
                    live[-1].sink(ProviderError(ProviderErrorKind.CONNECTION_LOST, "drop"))

            return inject()

        for _ in range(60):
            batch = [pick() for _ in range(rng.randint(1, 3))]
            results = await asyncio.gather(*batch, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    assert isinstance(result, AlreadyActive), result
            assert tracker.live <= 1
            if rng.random() < 0.5:
                await engine.settle()

        await engine.close()
        await asyncio.sleep(0)
        assert tracker.max_live <= 1
        assert tracker.live == 0
        for adapter in adapters:
            for handle in adapter.handles:
                assert handle.stop_calls == 1

    asyncio.run(run())


def test_cancel_during_start_keeps_slot_until_late_handle_is_stopped():
    async def run():
        tracker = Tracker()
        registry = SessionRegistry()
        gate = asyncio.Event()
        a = TrackedAdapter("voice-a", tracker, modality=Modality.VOICE, gate=gate)
        b = TrackedAdapter("voice-b", tracker, modality=Modality.VOICE)
        first = _engine(a, registry=registry, name="first")
        second = _engine(b, registry=registry, name="second")

        starting = asyncio.create_task(first.start(Modality.VOICE, "voice-a"))
        await asyncio.sleep(0)
        await first.cancel()
        assert first.state == SessionState.IDLE
        assert registry.owner_of(Modality.VOICE) == first.owner

        restarting = asyncio.create_task(first.start(Modality.VOICE, "voice-a"))
        await asyncio.sleep(0)
        with pytest.raises(AlreadyActive):
            await second.start(Modality.VOICE, "voice-b")

        gate.set()
        assert (await starting).state == SessionState.IDLE
        assert (await restarting).state == SessionState.LISTENING
        assert tracker.log == [("start", "voice-a"), ("stop", "voice-a"), ("start", "voice-a")]
        assert tracker.max_live == 1

        await first.close()
        assert registry.is_active(Modality.VOICE) is False
        await second.start(Modality.VOICE, "voice-b")
        assert second.state == SessionState.LISTENING
        assert tracker.max_live == 1
        await second.close()

    asyncio.run(run())


def test_handoff_passes_slot_without_a_gap():
    async def run():
        tracker = Tracker()
        registry = SessionRegistry()
        a = TrackedAdapter("chat-a", tracker, script=list(REPLY))
        b = TrackedAdapter("chat-b", tracker, script=list(REPLY))
        c = TrackedAdapter("chat-c", tracker)
        first = _engine(a, registry=registry, name="first")
        second = _engine(b, registry=registry, name="second")
        third = _engine(c, registry=registry, name="third")
        await first.start(Modality.TEXT, "chat-a")

        assert await first.handoff(second) == Outcome.ACCEPTED

        assert first.state == SessionState.IDLE
        assert a.handles[0].stop_calls == 1
        assert registry.owner_of(Modality.TEXT) == second.owner
        with pytest.raises(AlreadyActive):
            await third.start(Modality.TEXT, "chat-c")

        await second.start(Modality.TEXT, "chat-b")
        await second.send("hello")
        await second.settle()
        assert [t.content for t in second.snapshot.transcript] == ["hello", "I hear you."]
        assert tracker.max_live == 1

        await second.close()
        assert registry.is_active(Modality.TEXT) is False
        await first.close()
        await third.close()

    asyncio.run(run())


def test_handoff_is_busy_without_a_session_and_rejects_foreign_registry():
    async def run():
        tracker = Tracker()
        first = _engine(TrackedAdapter("chat-a", tracker))
        second = _engine(TrackedAdapter("chat-b", tracker), registry=first.registry)
        stranger = _engine(TrackedAdapter("chat-c", tracker))

        assert await first.handoff(second) == Outcome.BUSY
        await first.start(Modality.TEXT, "chat-a")
        with pytest.raises(ValueError):
            await first.handoff(stranger)
        with pytest.raises(ValueError):
            await first.handoff(first)
        assert first.state == SessionState.LISTENING
        await first.close()

    asyncio.run(run())


@pytest.mark.parametrize("seed", [3, 11, 99, 2024])
def test_randomized_operations_across_engines_share_one_slot(seed):
    async def run():
        rng = random.Random(seed)
        tracker = Tracker()
        registry = SessionRegistry()
        engines = []
        adapters = []
        for name in ("left", "right"):
            own = [
                TrackedAdapter(f"{name}-{pid}", tracker, script=list(REPLY), rng=rng)
                for pid in ("a", "b")
            ]
            adapters.extend(own)
            engines.append(_engine(*own, registry=registry, name=name))

        def pick():
            index = rng.randrange(2)
            engine = engines[index]
            ids = [a.provider_id for a in adapters if a.provider_id.startswith(engine.name)]
            op = rng.choice(["start", "start", "switch", "cancel", "send", "error", "handoff"])
            if op == "start":
                return engine.start(Modality.TEXT, rng.choice(ids))
            if op == "switch":
                return engine.switch_provider(rng.choice(ids))
            if op == "cancel":
                return engine.cancel()
            if op == "send":
                return engine.send("hello")
            if op == "handoff":
                return engine.handoff(engines[1 - index])

            async def inject():
                live = [h for a in adapters for h in a.handles if h.stop_calls == 0]
                if live:
                    live[-1].sink(ProviderError(ProviderErrorKind.CONNECTION_LOST, "drop"))

            return inject()

        for _ in range(80):
            batch = [pick() for _ in range(rng.randint(1, 4))]
            results = await asyncio.gather(*batch, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    assert isinstance(result, AlreadyActive), result
            assert tracker.live <= 1
            assert sum(e.session is not None for e in engines) <= 1
            if rng.random() < 0.5:
                for engine in engines:
                    await engine.settle()

        for engine in engines:
            await engine.close()
        await asyncio.sleep(0)
        assert tracker.max_live <= 1
        assert tracker.live == 0
        assert registry.is_active(Modality.TEXT) is False
        for adapter in adapters:
            for handle in adapter.handles:
                assert handle.stop_calls == 1

    asyncio.run(run())

"""The session state machine.

Every decoded stream event reaches the engine through a single inbox queue
tagged with the generation of the handle that produced it. Any operation
that invalidates the current handle (error, switch, cancel) bumps the
generation first, so late events from a dying handle are dropped.

Handles are created only inside ``_connect`` under the handle lock, after
every retired handle has finished ``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import UUID

from aurora_session.core.clock import Clock, SystemClock
from aurora_session.core.consent import ConsentGate
from aurora_session.core.errors import (
    AlreadyActive,
    ConsentRequired,
    FinalizeFailed,
    FinalizeRejected,
    Outcome,
)
from aurora_session.core.session.finalizer import Finalizer
from aurora_session.core.session.registry import Claim, SessionRegistry, default_registry
from aurora_session.core.session.transitions import STREAMING_STATES, SWITCHABLE_STATES, check_transition
from aurora_session.core.session.watchdog import DEFAULT_STALL_WINDOW_S, StallWatchdog
from aurora_session.core.transport.base import TransportError
from aurora_session.domain.events import (
    AudioLevel,
    ProviderError,
    ProviderErrorKind,
    ResponseStarted,
    StreamEvent,
    TokenDelta,
    TurnComplete,
    UIEvent,
    UIEventType,
    UserTranscript,
)
from aurora_session.domain.models import (
    ConsentStatus,
    Modality,
    Role,
    Session,
    SessionSnapshot,
    SessionState,
    Turn,
)
from aurora_session.providers.base import EventSink, ProviderAdapter, ProviderCatalog, ProviderHandle

logger = logging.getLogger(__name__)

S = SessionState

LIVE_STATES = frozenset({S.LISTENING, S.PROCESSING, S.SPEAKING})

USER_MESSAGES: dict[ProviderErrorKind, str] = {
    ProviderErrorKind.STALLED: "The response stopped arriving. Try again or switch providers.",
    ProviderErrorKind.CONNECTION_LOST: "The connection to the AI service was lost.",
    ProviderErrorKind.REJECTED: "The AI service refused the request.",
}


def error_kind_for(exc: BaseException) -> ProviderErrorKind:
    if isinstance(exc, TransportError):
        return ProviderErrorKind.REJECTED if exc.rejected else ProviderErrorKind.CONNECTION_LOST
    if isinstance(exc, ValueError):
        return ProviderErrorKind.REJECTED
    return ProviderErrorKind.CONNECTION_LOST


@dataclass(slots=True)
class SessionEngine:
    catalog: ProviderCatalog
    consent: ConsentGate
    finalizer: Finalizer | None = None
    registry: SessionRegistry = field(default_factory=lambda: default_registry)
    clock: Clock = field(default_factory=SystemClock)
    stall_window_s: float = DEFAULT_STALL_WINDOW_S
    name: str = "engine"

    ui_events: asyncio.Queue[UIEvent] = field(init=False, repr=False)

    _state: SessionState = field(init=False, default=S.IDLE)
    _session: Session | None = field(init=False, default=None, repr=False)
    _claim: Claim | None = field(init=False, default=None, repr=False)
    _handle: ProviderHandle | None = field(init=False, default=None, repr=False)
    _generation: int = field(init=False, default=0)
    _connecting: bool = field(init=False, default=False)
    _connect_done: asyncio.Event = field(init=False, repr=False)
    _orphan_claim: Claim | None = field(init=False, default=None, repr=False)
    _audio_level: float = field(init=False, default=0.0)
    _error: str | None = field(init=False, default=None)
    _inbox: asyncio.Queue[tuple[int, StreamEvent]] = field(init=False, repr=False)
    _consumer: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _handle_lock: asyncio.Lock = field(init=False, repr=False)
    _teardowns: set[asyncio.Task[None]] = field(init=False, default_factory=set, repr=False)
    _watchdog: StallWatchdog = field(init=False, repr=False)
    _last_stall: ProviderError | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self.ui_events = asyncio.Queue()
        self._inbox = asyncio.Queue()
        self._handle_lock = asyncio.Lock()
        self._connect_done = asyncio.Event()
        self._connect_done.set()
        self._watchdog = StallWatchdog(
            on_stall=self._on_stall, window_s=self.stall_window_s, clock=self.clock
        )

    # ----------------------------------------------------------------- views

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def owner(self) -> str:
        return f"{self.name}:{id(self):x}"

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def snapshot(self) -> SessionSnapshot:
        session = self._session
        if session is None:
            return SessionSnapshot(state=self._state, error=self._error)
        return SessionSnapshot(
            state=self._state,
            transcript=tuple(session.turns),
            audio_level=self._audio_level,
            error=self._error,
            muted=session.muted,
            modality=session.modality,
            provider_id=session.provider_id,
            session_id=session.id,
        )

    # ------------------------------------------------------------ operations

    async def start(self, modality: Modality, provider_id: str) -> SessionSnapshot:
        if self._session is not None:
            raise AlreadyActive(modality)
        if self._connecting:
            # A cancelled start or switch still owns the slot until its late stream is stopped.
            logger.info(f"[Engine] Waiting for the cancelled stream to close ({provider_id} next)")
            await self._connect_done.wait()
            if self._session is not None or self._connecting:
                raise AlreadyActive(modality)
        adapter = self.catalog.get(provider_id, modality=modality)
        status = self.consent.require_consent(modality)
        if status != ConsentStatus.GRANTED:
            logger.info(f"[Engine] {modality.value} start refused, consent is {status.value}")
            raise ConsentRequired(modality, status)

        # Claimed before the first await: a concurrent start() fails here.
        if self._claim is not None and self._claim.modality != modality:
            self._release_idle_claim()
        if self._claim is None:
            self._claim = self.registry.claim(modality, self.owner)
        self._ensure_consumer()
        self._session = Session(
            modality=modality,
            provider_id=provider_id,
            started_at=self.clock.wall(),
            consent_status=status,
        )
        self._error = None
        self._audio_level = 0.0
        logger.info(f"[Engine] Starting {modality.value} session with {provider_id}")
        self._transition(S.INITIALIZING)
        await self._connect(adapter, self._fence())
        return self.snapshot

    async def send(self, text: str) -> Outcome:
        text = text.strip()
        if not text:
            raise ValueError("message must not be empty")
        session = self._session
        handle = self._handle
        if session is None or handle is None or self._state != S.LISTENING or self._connecting:
            return self._busy("send")

        session.append(Turn(role=Role.USER, content=text, timestamp=self.clock.wall()))
        self._transition(S.PROCESSING)
        self._watchdog.arm()
        self._publish(UIEventType.TRANSCRIPT_UPDATED)

        generation = self._generation
        try:
            await handle.send(session.frozen_turns())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"[Engine] Forwarding message failed: {exc}")
            self._inbox.put_nowait(
                (generation, ProviderError(kind=error_kind_for(exc), message=str(exc)))
            )
        return Outcome.ACCEPTED

    async def switch_provider(self, provider_id: str) -> Outcome:
        session = self._session
        if session is None or self._connecting or self._state not in SWITCHABLE_STATES:
            return self._busy("switch_provider")
        adapter = self.catalog.get(provider_id, modality=session.modality)

        logger.info(f"[Engine] Switching provider {session.provider_id} -> {provider_id}")
        generation = self._fence()
        self._watchdog.disarm()
        if session.discard_in_flight() is not None:
            self._publish(UIEventType.TRANSCRIPT_UPDATED)
        self._retire_handle()
        session.provider_id = provider_id
        self._error = None
        self._transition(S.INITIALIZING)
        await self._connect(adapter, generation)
        return Outcome.ACCEPTED

    async def restart(self) -> Outcome:
        if self._session is None:
            return self._busy("restart")
        return await self.switch_provider(self._session.provider_id)

    async def mute(self) -> Outcome:
        return await self._set_muted(True)

    async def unmute(self) -> Outcome:
        return await self._set_muted(False)

    async def cancel(self) -> None:
        session = self._session
        if session is None:
            await self._drain_teardowns()
            self._release_idle_claim()
            return

        claim = self._end_session(session)
        if self._connecting:
            # The opening stream keeps the slot; _connect releases it once that stream is stopped.
            self._orphan_claim = claim
            await self._drain_teardowns()
        else:
            try:
                await self._drain_teardowns()
            finally:
                if claim is not None:
                    self.registry.release(claim)
        logger.info(f"[Engine] Session {session.id} cancelled")

    async def handoff(self, successor: SessionEngine) -> Outcome:
        """End this session and pass its registry slot straight to ``successor``.

        The slot never becomes free in between, so no third engine can claim
        the modality before ``successor.start()`` runs.
        """
        if successor is self or successor.registry is not self.registry:
            raise ValueError("handoff needs another engine on the same registry")
        session = self._session
        if (
            session is None
            or self._connecting
            or successor._session is not None
            or successor._claim is not None
        ):
            return self._busy("handoff")

        claim = self._end_session(session)
        try:
            await self._drain_teardowns()
        except BaseException:
            if claim is not None:
                self.registry.release(claim)
            raise
        if claim is None:
            return Outcome.ACCEPTED
        if successor._claim is not None or successor._session is not None:
            self.registry.release(claim)
            logger.info(f"[Engine] {successor.owner} took another slot, session {session.id} ended")
            return Outcome.BUSY
        successor._claim = self.registry.transfer(claim, successor.owner)
        logger.info(f"[Engine] Session {session.id} handed off to {successor.owner}")
        return Outcome.ACCEPTED

    async def finish(self) -> list[str]:
        session = self._session
        if session is None or self._state != S.LISTENING:
            raise FinalizeRejected(f"cannot finish while {self._state.value}")
        turns = session.frozen_turns()
        if not turns:
            raise FinalizeRejected("transcript is empty")
        if self.finalizer is None:
            raise FinalizeRejected("no finalizer is configured")

        try:
            points = await self.finalizer.finalize(turns)
        except FinalizeFailed as exc:
            logger.warning(f"[Engine] Finalize failed: {exc}")
            self._publish(UIEventType.ERROR, {"message": str(exc), "retryable": True})
            raise
        self._publish(UIEventType.FINALIZED, list(points))
        return points

    async def close(self) -> None:
        await self.cancel()
        consumer = self._consumer
        self._consumer = None
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

    async def settle(self) -> None:
        """Wait until every queued stream event has been applied."""
        await self._inbox.join()

    # ---------------------------------------------------------- stream input

    async def on_decoder_event(self, generation: int, event: StreamEvent) -> None:
        session = self._session
        if generation != self._generation or session is None:
            logger.debug(f"[Engine] Dropped stale {event.type.value} (gen {generation})")
            return
        state = self._state

        if isinstance(event, AudioLevel):
            self._audio_level = event.level
            if not event.from_capture and state in STREAMING_STATES:
                self._watchdog.feed()
            self._publish(UIEventType.AUDIO_LEVEL, event.level)
            return

        if isinstance(event, ProviderError):
            timer_rearmed = event is self._last_stall and self._watchdog.armed
            if event.kind == ProviderErrorKind.STALLED and (
                state not in STREAMING_STATES or timer_rearmed
            ):
                # Stream data arrived between the timer firing and this event being applied.
                logger.debug(f"[Engine] Stale stall dropped while {state.value}")
                return
            if state in LIVE_STATES or state == S.INITIALIZING:
                await self._fail(event.kind, event.message)
            return

        if isinstance(event, ResponseStarted):
            if state == S.LISTENING and session.modality == Modality.VOICE:
                self._transition(S.PROCESSING)
                self._watchdog.arm()
            elif state in STREAMING_STATES:
                self._watchdog.feed()
            return

        if isinstance(event, TokenDelta):
            voice_turn = state == S.LISTENING and session.modality == Modality.VOICE
            if state not in STREAMING_STATES and not voice_turn:
                logger.debug(f"[Engine] TokenDelta ignored while {state.value}")
                return
            if state != S.SPEAKING:
                self._transition(S.SPEAKING)
            session.extend_in_flight(event.text, timestamp=self.clock.wall())
            self._watchdog.arm()
            self._publish(UIEventType.TRANSCRIPT_UPDATED)
            return

        if isinstance(event, TurnComplete):
            if state not in LIVE_STATES:
                return
            self._watchdog.disarm()
            frozen = session.freeze_in_flight()
            if state != S.LISTENING:
                self._transition(S.LISTENING)
            if frozen is not None:
                logger.info(f"[Engine] Assistant turn complete ({len(frozen.content)} chars)")
                self._publish(UIEventType.TRANSCRIPT_UPDATED)
            return

        if isinstance(event, UserTranscript):
            if session.modality != Modality.VOICE or state not in LIVE_STATES:
                return
            if state in STREAMING_STATES:
                self._watchdog.feed()
            session.insert_settled(
                Turn(role=Role.USER, content=event.text, timestamp=self.clock.wall())
            )
            self._publish(UIEventType.TRANSCRIPT_UPDATED)

    # -------------------------------------------------------------- internals

    def _sink(self, generation: int) -> EventSink:
        def put(event: StreamEvent) -> None:
            self._inbox.put_nowait((generation, event))

        return put

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            generation, event = await self._inbox.get()
            try:
                await self.on_decoder_event(generation, event)
            except Exception:
                logger.exception(f"[Engine] Failed to apply {event.type.value}")
            finally:
                self._inbox.task_done()

    def _on_stall(self, silent_for: float) -> None:
        stall = ProviderError(
            kind=ProviderErrorKind.STALLED, message=f"no stream data for {silent_for:.1f}s"
        )
        self._last_stall = stall
        self._inbox.put_nowait((self._generation, stall))

    def _fence(self) -> int:
        self._generation += 1
        return self._generation

    async def _connect(self, adapter: ProviderAdapter, generation: int) -> None:
        self._connecting = True
        self._connect_done.clear()
        try:
            async with self._handle_lock:
                await self._drain_teardowns()
                if generation != self._generation or self._session is None:
                    return
                try:
                    handle = await adapter.start_stream(
                        self._sink(generation), muted=self._session.muted
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error(f"[Engine] {adapter.provider_id} failed to start: {exc}")
                    if generation == self._generation and self._session is not None:
                        self._enter_error(error_kind_for(exc), str(exc))
                    return
                if generation != self._generation or self._session is None:
                    # Cancelled, failed or superseded while the stream was opening.
                    logger.info(f"[Engine] Discarding late {adapter.provider_id} stream")
                    await self._stop_handle(handle)
                    return
                self._handle = handle
                self._transition(S.LISTENING)
                logger.info(f"[Engine] {adapter.provider_id} ready")
        finally:
            claim, self._orphan_claim = self._orphan_claim, None
            if claim is not None:
                self.registry.release(claim)
            self._connecting = False
            self._connect_done.set()

    async def _fail(self, kind: ProviderErrorKind, message: str) -> None:
        logger.error(f"[Engine] Provider error ({kind.value}): {message}")
        self._enter_error(kind, message)
        await self._drain_teardowns()

    def _enter_error(self, kind: ProviderErrorKind, message: str) -> None:
        self._fence()
        self._watchdog.disarm()
        if self._session is not None and self._session.discard_in_flight() is not None:
            self._publish(UIEventType.TRANSCRIPT_UPDATED)
        self._retire_handle()
        self._error = USER_MESSAGES[kind]
        self._transition(S.ERROR)
        self._publish(
            UIEventType.ERROR,
            {"kind": kind.value, "message": self._error, "detail": message},
            fatal=True,
        )

    def _end_session(self, session: Session) -> Claim | None:
        self._fence()
        self._watchdog.disarm()
        session.discard_in_flight()
        self._session = None
        self._retire_handle()
        claim, self._claim = self._claim, None
        self._error = None
        self._audio_level = 0.0
        self._transition(S.IDLE, session_id=session.id)
        return claim

    def _release_idle_claim(self) -> None:
        # A slot handed over by another engine but never used by start().
        claim, self._claim = self._claim, None
        if claim is not None:
            self.registry.release(claim)

    def _retire_handle(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        task = asyncio.create_task(self._stop_handle(handle))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    async def _drain_teardowns(self) -> None:
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

    @staticmethod
    async def _stop_handle(handle: ProviderHandle) -> None:
        try:
            await handle.stop()
        except Exception:
            logger.exception("[Engine] Provider teardown failed")

    async def _set_muted(self, muted: bool) -> Outcome:
        op = "mute" if muted else "unmute"
        session = self._session
        handle = self._handle
        if (
            session is None
            or handle is None
            or session.modality != Modality.VOICE
            or self._state != S.LISTENING
            or self._connecting
            or not self.catalog.get(session.provider_id).supports_mute
        ):
            return self._busy(op)
        if session.muted == muted:
            return Outcome.ACCEPTED
        try:
            await handle.set_muted(muted)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"[Engine] {op} failed")
            self._publish(UIEventType.ERROR, {"message": f"{op} failed: {exc}", "retryable": True})
            return Outcome.BUSY
        session.muted = muted
        self._publish(UIEventType.STATE_CHANGED, self._state.value)
        return Outcome.ACCEPTED

    def _transition(self, target: SessionState, *, session_id: UUID | None = None) -> None:
        check_transition(self._state, target)
        previous = self._state
        self._state = target
        if target not in STREAMING_STATES:
            self._watchdog.disarm()
        logger.debug(f"[Engine] {previous.value} -> {target.value}")
        self._publish(UIEventType.STATE_CHANGED, target.value, session_id=session_id)

    def _busy(self, op: str) -> Outcome:
        logger.info(f"[Engine] {op} ignored while {self._state.value}")
        self._publish(UIEventType.BUSY, op)
        return Outcome.BUSY

    def _publish(
        self,
        type_: UIEventType,
        payload: object | None = None,
        *,
        fatal: bool = False,
        session_id: UUID | None = None,
    ) -> None:
        if session_id is None and self._session is not None:
            session_id = self._session.id
        self.ui_events.put_nowait(
            UIEvent(type=type_, session_id=session_id, payload=payload, fatal=fatal)
        )


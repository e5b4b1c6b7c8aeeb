"""Line-oriented terminal front end for chat and voice sessions."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from typing import Callable, TextIO
from uuid import UUID

from aurora_session.core.errors import (
    ConsentRequired,
    FinalizeFailed,
    FinalizeRejected,
    Outcome,
    SessionError,
)
from aurora_session.core.session.engine import SessionEngine
from aurora_session.domain.events import UIEvent, UIEventType
from aurora_session.domain.models import Modality, Role

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_START_FAILED = 2
EXIT_CONSENT_REQUIRED = 3

CHAT_HELP = "Commands: /finish, /switch ID, /restart, /cancel, /quit"
VOICE_HELP = "Commands: /mute, /unmute, /finish, /switch ID, /restart, /cancel, /quit"


@dataclass(slots=True)
class HeadlessSessionRunner:
    engine: SessionEngine
    modality: Modality
    provider_id: str
    read_line: Callable[[], str] = sys.stdin.readline
    out: TextIO = field(default_factory=lambda: sys.stdout)

    _printed: set[UUID] = field(init=False, default_factory=set)

    async def run(self) -> int:
        try:
            await self.engine.start(self.modality, self.provider_id)
        except ConsentRequired as exc:
            self._print(f"Error: {exc}. Run `aurora-session consent grant` first.")
            return EXIT_CONSENT_REQUIRED
        except SessionError as exc:
            self._print(f"Error: {exc}")
            return EXIT_START_FAILED

        self._print(CHAT_HELP if self.modality == Modality.TEXT else VOICE_HELP)
        printer = asyncio.create_task(self._print_events())
        try:
            await self._stdin_loop()
        except KeyboardInterrupt:
            pass
        finally:
            await self.engine.settle()
            printer.cancel()
            await asyncio.gather(printer, return_exceptions=True)
            while not self.engine.ui_events.empty():
                self._render(self.engine.ui_events.get_nowait())
            await self.engine.close()
        return EXIT_OK

    async def _stdin_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, self.read_line)
            if not line:
                return
            text = line.strip()
            if not text:
                continue
            if text.startswith("/"):
                if not await self._command(text):
                    return
                continue
            await self.engine.send(text)

    async def _command(self, text: str) -> bool:
        name, _, arg = text.partition(" ")
        arg = arg.strip()
        engine = self.engine

        if name == "/quit":
            return False
        if name == "/finish":
            await self._finish()
        elif name == "/switch":
            if not arg:
                self._print("Usage: /switch PROVIDER_ID")
                return True
            try:
                if await engine.switch_provider(arg) == Outcome.ACCEPTED:
                    self._print(f"Switched to {arg}")
            except SessionError as exc:
                self._print(f"Error: {exc}")
        elif name == "/restart":
            await engine.restart()
        elif name == "/cancel":
            await engine.cancel()
            self._printed.clear()
            self._print("Conversation discarded, starting over")
            try:
                await engine.start(self.modality, self.provider_id)
            except SessionError as exc:
                self._print(f"Error: {exc}")
                return False
        elif name == "/mute" and self.modality == Modality.VOICE:
            await engine.mute()
        elif name == "/unmute" and self.modality == Modality.VOICE:
            await engine.unmute()
        else:
            self._print(CHAT_HELP if self.modality == Modality.TEXT else VOICE_HELP)
        return True

    async def _finish(self) -> None:
        await self.engine.settle()
        try:
            points = await self.engine.finish()
        except FinalizeRejected as exc:
            self._print(f"Nothing to finish: {exc}")
            return
        except FinalizeFailed as exc:
            self._print(f"Could not save the conversation, try /finish again ({exc})")
            return
        self._print("Key points:")
        for point in points:
            self._print(f"  - {point}")

    async def _print_events(self) -> None:
        while True:
            event = await self.engine.ui_events.get()
            self._render(event)

    def _render(self, event: UIEvent) -> None:
        if event.type == UIEventType.TRANSCRIPT_UPDATED:
            for turn in self.engine.snapshot.transcript:
                if turn.streaming or turn.id in self._printed:
                    continue
                self._printed.add(turn.id)
                if turn.role == Role.ASSISTANT:
                    self._print(f"Aurora: {turn.content}")
                elif self.modality == Modality.VOICE:
                    self._print(f"You: {turn.content}")
        elif event.type == UIEventType.ERROR and isinstance(event.payload, dict):
            suffix = " Use /restart, /switch ID or /cancel." if event.fatal else ""
            self._print(f"Error: {event.payload.get('message')}{suffix}")
        elif event.type == UIEventType.BUSY:
            self._print(f"(busy: {event.payload} ignored)")
        elif event.type == UIEventType.STATE_CHANGED:
            logger.debug(f"[Headless] state -> {event.payload}")

    def _print(self, text: str) -> None:
        print(text, file=self.out, flush=True)

"""Microphone capture for voice calls.

A capture exists only while the call is unmuted: muting closes it and the
device is released, unmuting opens a fresh one through the factory.
"""

from __future__ import annotations

import contextlib
import logging
import queue
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

import janus
import numpy as np

from aurora_session.core.audio.format import AudioFrameF32

logger = logging.getLogger(__name__)


class AudioSource(Protocol):
    def frames(self) -> AsyncIterator[AudioFrameF32]: ...
    async def close(self) -> None: ...


AudioSourceFactory = Callable[[], AudioSource]


def resolve_input_device(device: str) -> int | None:
    """Device index from a numeric id or a case-insensitive name; None = system default."""
    device = (device or "").strip()
    if not device:
        return None

    import sounddevice as sd  # type: ignore

    devices = sd.query_devices()
    if device.isdigit():
        idx = int(device)
        if 0 <= idx < len(devices) and int(devices[idx].get("max_input_channels", 0) or 0) > 0:
            return idx
        raise ValueError(f"input device {idx} does not exist or has no input channels")

    for idx, info in enumerate(devices):
        if int(info.get("max_input_channels", 0) or 0) <= 0:
            continue
        if str(info.get("name", "") or "").lower() == device.lower():
            return idx
    raise ValueError(f"no input device named {device!r}")


@dataclass(slots=True)
class MicrophoneSource:
    """One open PortAudio input stream.

    The PortAudio callback runs on its own thread and hands blocks to the
    event loop through a janus queue. When the consumer falls behind, new
    blocks are dropped rather than blocking the audio thread.
    """

    sample_rate_hz: int | None = None  # None = device default
    device: int | None = None
    blocksize: int = 0
    max_queue_frames: int = 64

    _queue: janus.Queue[np.ndarray | None] = field(init=False, repr=False)
    _stream: Any = field(init=False, default=None, repr=False)
    _closed: bool = field(init=False, default=False)
    _rate_hz: int = field(init=False, default=0)
    _dropped: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.sample_rate_hz is not None and self.sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be > 0 or None")
        if self.max_queue_frames <= 0:
            raise ValueError("max_queue_frames must be > 0")

        import sounddevice as sd  # type: ignore

        self._queue = janus.Queue(maxsize=self.max_queue_frames)
        stream = sd.InputStream(
            samplerate=self.sample_rate_hz,
            channels=1,
            dtype="float32",
            callback=self._on_block,
            device=self.device,
            blocksize=self.blocksize,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            self._queue.close()
            raise
        self._stream = stream
        self._rate_hz = int(stream.samplerate)
        logger.info(f"[Mic] Capture opened ({self._rate_hz} Hz, device={self.device})")

    @property
    def sample_rate(self) -> int:
        return self._rate_hz

    def _on_block(self, indata, _frames, _time, status) -> None:
        if self._closed:
            return
        if status:
            logger.warning(f"[Mic] Input status: {status}")
        try:
            self._queue.sync_q.put_nowait(np.array(indata[:, 0], dtype=np.float32))
        except queue.Full:
            self._dropped += 1

    async def frames(self) -> AsyncIterator[AudioFrameF32]:
        while True:
            block = await self._queue.async_q.get()
            if block is None:
                return
            yield AudioFrameF32(samples=block, sample_rate_hz=self._rate_hz)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(Exception):
            self._stream.stop()
        with contextlib.suppress(Exception):
            self._stream.close()
        with contextlib.suppress(queue.Full, RuntimeError):
            self._queue.sync_q.put_nowait(None)
        self._queue.close()
        await self._queue.wait_closed()
        if self._dropped:
            logger.warning(f"[Mic] {self._dropped} blocks dropped while capturing")
        logger.info("[Mic] Capture released")


def microphone_factory(
    *, sample_rate_hz: int | None = None, device: str = "", blocksize: int = 0
) -> AudioSourceFactory:
    """Factory the voice handle calls on every unmute.

    The device name is resolved on each open so an unplugged headset fails
    the unmute instead of silently capturing from a stale index.
    """

    def _open() -> AudioSource:
        return MicrophoneSource(
            sample_rate_hz=sample_rate_hz,
            device=resolve_input_device(device),
            blocksize=blocksize,
        )

    return _open

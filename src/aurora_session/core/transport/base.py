from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol


@dataclass(frozen=True, slots=True)
class RawFrame:
    data: str | bytes

    def text(self) -> str:
        if isinstance(self.data, bytes):
            return self.data.decode("utf-8", errors="ignore")
        return self.data


class TransportError(Exception):
    """The channel failed to open, was refused, or dropped.

    ``rejected`` is set when the remote end refused the request (auth,
    policy, bad request) rather than the connection breaking.
    """

    def __init__(
        self, message: str, *, status: int | None = None, rejected: bool = False
    ) -> None:
        super().__init__(message)
        self.status = status
        self.rejected = rejected


class DuplexTransport(Protocol):
    async def open(self) -> None: ...
    async def send(self, payload: str | bytes) -> None: ...
    def frames(self) -> AsyncIterator[RawFrame]: ...
    async def close(self) -> None: ...

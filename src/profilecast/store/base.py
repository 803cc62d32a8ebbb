"""Profile store contract — records plus a change feed.

Learn: The store is the only component that knows where profiles live.
Everything above it (service, bus, WebSocket) talks to this interface, so
the in-memory store used by tests and the PostgreSQL store used in
production are interchangeable.

A store exposes two kinds of reads:
1. Point/collection reads (get, all) over the current state
2. A change feed: changes() returns a ChangeCursor positioned at the
   current tail. Each committed mutation shows up on every open cursor,
   in commit order. There is no backfill.

When the underlying feed is lost, the cursor yields one INVALIDATE event
and ends. No replay follows; consumers must assume state diverged.
"""

import asyncio
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional


class StoreError(Exception):
    """Raised when the underlying store fails (unreachable, driver error)."""


@dataclass(frozen=True)
class Profile:
    id: str
    email: str


class ChangeKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    REPLACE = "REPLACE"
    INVALIDATE = "INVALIDATE"


@dataclass(frozen=True)
class ChangeEvent:
    """One committed mutation on the profile collection."""

    kind: ChangeKind
    profile: Optional[Profile] = None

    @classmethod
    def invalidate(cls) -> "ChangeEvent":
        return cls(kind=ChangeKind.INVALIDATE)

    @property
    def is_invalidate(self) -> bool:
        return self.kind is ChangeKind.INVALIDATE


_END = object()


class ChangeCursor:
    """Async iterator over change events from one point in time onwards.

    Stores push events into the cursor from their notification callbacks;
    the consumer iterates with ``async for``. The buffer is unbounded:
    backpressure is applied downstream, per subscriber, by the bus.
    """

    def __init__(self, release: Optional[Callable[[], Awaitable[None]]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._release = release
        self._ended = False
        self._closed = False

    def push(self, event: ChangeEvent) -> None:
        if self._ended:
            return
        self._queue.put_nowait(event)

    def invalidate(self) -> None:
        """Signal feed loss: one INVALIDATE, then end of iteration."""
        if self._ended:
            return
        self._queue.put_nowait(ChangeEvent.invalidate())
        self._queue.put_nowait(_END)
        self._ended = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "ChangeCursor":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Release the underlying feed. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._ended = True
        if self._release is not None:
            await self._release()


class ProfileStore(ABC):
    """Abstract base class for profile stores."""

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Raises StoreError if the store is unreachable."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections and end every open change cursor."""

    @abstractmethod
    def all(self) -> AsyncIterator[Profile]:
        """Iterate over every stored profile. Finite."""

    @abstractmethod
    async def get(self, profile_id: str) -> Optional[Profile]:
        ...

    @abstractmethod
    async def insert(self, email: str) -> Profile:
        """Create a profile with a freshly generated id."""

    @abstractmethod
    async def update(self, profile_id: str, email: str) -> Optional[Profile]:
        ...

    @abstractmethod
    async def delete(self, profile_id: str) -> Optional[Profile]:
        """Remove a profile, returning the removed record."""

    @abstractmethod
    async def changes(self) -> ChangeCursor:
        """Open a change cursor starting at the current tail."""

    @property
    def name(self) -> str:
        """Return the store name for logging."""
        return self.__class__.__name__

"""In-memory profile store.

Primarily used for:
- Local development without PostgreSQL (STORE_URI=memory://)
- Unit and API tests

Profiles live in a dict; every mutation is pushed synchronously into each
open change cursor, so cursor order is exactly mutation order.
"""

import uuid
from typing import AsyncIterator, Optional

import structlog

from profilecast.store.base import (
    ChangeCursor,
    ChangeEvent,
    ChangeKind,
    Profile,
    ProfileStore,
    StoreError,
)

logger = structlog.get_logger()


class MemoryProfileStore(ProfileStore):
    """Dict-backed store with in-process change cursors."""

    def __init__(self):
        self._profiles: dict[str, Profile] = {}
        self._cursors: set[ChangeCursor] = set()
        self._connected = False

    async def connect(self) -> None:
        self._connected = True
        logger.info("store.connected", store=self.name)

    async def close(self) -> None:
        for cursor in list(self._cursors):
            cursor.invalidate()
        self._cursors.clear()
        self._connected = False
        logger.info("store.closed", store=self.name)

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def all(self) -> AsyncIterator[Profile]:
        self._check_connected()
        for profile in list(self._profiles.values()):
            yield profile

    async def get(self, profile_id: str) -> Optional[Profile]:
        self._check_connected()
        return self._profiles.get(profile_id)

    async def insert(self, email: str) -> Profile:
        self._check_connected()
        profile = Profile(id=str(uuid.uuid4()), email=email)
        self._profiles[profile.id] = profile
        self._emit(ChangeEvent(kind=ChangeKind.INSERT, profile=profile))
        return profile

    async def update(self, profile_id: str, email: str) -> Optional[Profile]:
        self._check_connected()
        if profile_id not in self._profiles:
            return None
        profile = Profile(id=profile_id, email=email)
        self._profiles[profile_id] = profile
        self._emit(ChangeEvent(kind=ChangeKind.UPDATE, profile=profile))
        return profile

    async def delete(self, profile_id: str) -> Optional[Profile]:
        self._check_connected()
        profile = self._profiles.pop(profile_id, None)
        if profile is not None:
            self._emit(ChangeEvent(kind=ChangeKind.DELETE, profile=profile))
        return profile

    async def changes(self) -> ChangeCursor:
        self._check_connected()
        cursor: ChangeCursor

        async def release() -> None:
            self._cursors.discard(cursor)

        cursor = ChangeCursor(release=release)
        self._cursors.add(cursor)
        logger.debug("store.cursor_opened", open_cursors=len(self._cursors))
        return cursor

    def reset_change_streams(self) -> int:
        """Drop every open cursor as if the feed connection was lost.

        Each cursor yields INVALIDATE and ends. Returns how many were reset.
        """
        cursors = list(self._cursors)
        self._cursors.clear()
        for cursor in cursors:
            cursor.invalidate()
        logger.warning("store.cursors_reset", count=len(cursors))
        return len(cursors)

    @property
    def open_cursors(self) -> int:
        return len(self._cursors)

    def _emit(self, event: ChangeEvent) -> None:
        for cursor in list(self._cursors):
            cursor.push(event)

    def _check_connected(self) -> None:
        if not self._connected:
            raise StoreError("Memory store not connected")

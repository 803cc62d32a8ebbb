"""PostgreSQL profile store — SQLAlchemy for CRUD, LISTEN/NOTIFY for changes.

Learn: The profiles table carries an AFTER INSERT/UPDATE/DELETE trigger
that calls pg_notify('profile_changes', {...}) for every row change. NOTIFY
is transactional: a notification is delivered only when its transaction
commits, and deliveries follow commit order. That gives us a change feed
with the same guarantees as a tailable collection.

Each change cursor owns a dedicated asyncpg connection (LISTEN is
per-connection). asyncpg invokes our callbacks synchronously on the event
loop; they only push into the cursor's buffer.

If the LISTEN connection drops, the termination listener turns the loss
into INVALIDATE. Notifications sent while no one was listening are gone
(NOTIFY has no replay), which is exactly what INVALIDATE announces.
"""

import json
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg
import structlog
from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from profilecast.db.engine import asyncpg_dsn, build_engine, build_session_factory
from profilecast.db.models import PROFILE_CHANGES_CHANNEL, ProfileRecord
from profilecast.store.base import (
    ChangeCursor,
    ChangeEvent,
    ChangeKind,
    Profile,
    ProfileStore,
    StoreError,
)

logger = structlog.get_logger()

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresProfileStore(ProfileStore):
    """Profiles in PostgreSQL, changes via LISTEN profile_changes."""

    def __init__(self, url: str, echo: bool = False):
        self._url = url
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._cursors: set[ChangeCursor] = set()

    async def connect(self) -> None:
        self._engine = build_engine(self._url, echo=self._echo)
        self._session_factory = build_session_factory(self._engine)
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            raise StoreError(f"Store unreachable: {e}") from e
        logger.info("store.connected", store=self.name)

    async def close(self) -> None:
        for cursor in list(self._cursors):
            await cursor.aclose()
        self._cursors.clear()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("store.closed", store=self.name)

    # ─── Reads ───────────────────────────────────────────

    async def all(self) -> AsyncIterator[Profile]:
        async with self._session() as session:
            result = await session.stream_scalars(
                select(ProfileRecord).order_by(ProfileRecord.created_at, ProfileRecord.id)
            )
            async for record in result:
                yield _to_profile(record)

    async def get(self, profile_id: str) -> Optional[Profile]:
        async with self._session() as session:
            record = await session.get(ProfileRecord, profile_id)
            return _to_profile(record) if record else None

    # ─── Mutations ───────────────────────────────────────

    async def insert(self, email: str) -> Profile:
        record = ProfileRecord(id=str(uuid.uuid4()), email=email)
        async with self._session() as session:
            session.add(record)
            await session.commit()
        return _to_profile(record)

    async def update(self, profile_id: str, email: str) -> Optional[Profile]:
        async with self._session() as session:
            result = await session.execute(
                update(ProfileRecord)
                .where(ProfileRecord.id == profile_id)
                .values(email=email)
                .returning(ProfileRecord.id, ProfileRecord.email)
            )
            row = result.first()
            await session.commit()
        return Profile(id=row.id, email=row.email) if row else None

    async def delete(self, profile_id: str) -> Optional[Profile]:
        async with self._session() as session:
            result = await session.execute(
                delete(ProfileRecord)
                .where(ProfileRecord.id == profile_id)
                .returning(ProfileRecord.id, ProfileRecord.email)
            )
            row = result.first()
            await session.commit()
        return Profile(id=row.id, email=row.email) if row else None

    # ─── Change feed ─────────────────────────────────────

    async def changes(self) -> ChangeCursor:
        """Open a LISTEN connection and return a cursor fed by it."""
        try:
            conn = await asyncpg.connect(asyncpg_dsn(self._url))
        except _DRIVER_ERRORS as e:
            raise StoreError(f"Cannot open change feed: {e}") from e

        cursor: ChangeCursor

        def on_notify(connection, pid, channel, payload):
            event = parse_notification(payload)
            if event is not None:
                cursor.push(event)

        def on_terminate(connection):
            logger.warning("store.change_feed_lost", store=self.name)
            cursor.invalidate()

        async def release() -> None:
            self._cursors.discard(cursor)
            if conn.is_closed():
                return
            conn.remove_termination_listener(on_terminate)
            try:
                await conn.remove_listener(PROFILE_CHANGES_CHANNEL, on_notify)
            except _DRIVER_ERRORS:
                logger.debug("store.unlisten_failed", exc_info=True)
            finally:
                await conn.close()

        cursor = ChangeCursor(release=release)
        try:
            await conn.add_listener(PROFILE_CHANGES_CHANNEL, on_notify)
        except _DRIVER_ERRORS as e:
            await conn.close()
            raise StoreError(f"Cannot LISTEN on {PROFILE_CHANGES_CHANNEL}: {e}") from e
        conn.add_termination_listener(on_terminate)
        self._cursors.add(cursor)
        logger.info("store.cursor_opened", channel=PROFILE_CHANGES_CHANNEL)
        return cursor

    # ─── Helpers ─────────────────────────────────────────

    @asynccontextmanager
    async def _session(self):
        if self._session_factory is None:
            raise StoreError("PostgreSQL store not connected")
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(str(e)) from e


def parse_notification(payload: str) -> Optional[ChangeEvent]:
    """Turn a profile_changes NOTIFY payload into a ChangeEvent.

    Payload shape (built by the trigger): {"op": "INSERT", "id": ..., "email": ...}
    """
    try:
        data = json.loads(payload)
        kind = ChangeKind(data["op"])
        profile = Profile(id=data["id"], email=data["email"])
    except (ValueError, KeyError, TypeError):
        logger.warning("store.bad_notification", payload=payload[:200])
        return None
    return ChangeEvent(kind=kind, profile=profile)


def _to_profile(record: ProfileRecord) -> Profile:
    return Profile(id=record.id, email=record.email)

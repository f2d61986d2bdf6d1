"""Persistence for workflow sessions.

A session belongs to one user and at most one conversation.  Sessions
expire ``ttl`` after their last save; an expired session, or one bound to
a different conversation than the request, is treated as absent so the
caller starts over from a fresh ``idle`` session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..credits.ledger import Clock, utc_now
from ..models import GuidedLookSession
from .state import WorkflowSession


logger = logging.getLogger("guided-look")


@dataclass
class StoredSession:
    session: WorkflowSession
    conversation_id: str | None
    expires_at: datetime
    updated_at: datetime | None = None


class SessionInFlight(Exception):
    """Another request is still running a confirmed action on this session."""

    def __init__(self, session: WorkflowSession) -> None:
        super().__init__(f"Session {session.session_id} is {session.status}")
        self.session = session


class WorkflowSessionStore(Protocol):
    async def get(self, user_id: str, session_id: str) -> StoredSession | None:
        ...

    async def find_for_conversation(self, user_id: str, conversation_id: str) -> StoredSession | None:
        ...

    async def save(self, user_id: str, conversation_id: str | None, session: WorkflowSession) -> None:
        ...

    async def claim(self, user_id: str, session: WorkflowSession, token: str) -> bool:
        ...

    async def delete(self, user_id: str, session_id: str) -> bool:
        ...


class InMemoryWorkflowSessionStore:
    def __init__(self, *, ttl: timedelta = timedelta(hours=12), clock: Clock = utc_now) -> None:
        self.ttl = ttl
        self.clock = clock
        self.records: dict[tuple[str, str], tuple[dict, str | None, datetime]] = {}

    def _stored(self, key: tuple[str, str]) -> StoredSession | None:
        record = self.records.get(key)
        if record is None:
            return None
        state, conversation_id, expires_at = record
        return StoredSession(WorkflowSession.from_state(state), conversation_id, expires_at, expires_at - self.ttl)

    async def get(self, user_id: str, session_id: str) -> StoredSession | None:
        return self._stored((user_id, session_id))

    async def find_for_conversation(self, user_id: str, conversation_id: str) -> StoredSession | None:
        matches = [
            (expires_at, key)
            for key, (_, bound, expires_at) in self.records.items()
            if key[0] == user_id and bound == conversation_id
        ]
        if not matches:
            return None
        return self._stored(max(matches)[1])

    async def save(self, user_id: str, conversation_id: str | None, session: WorkflowSession) -> None:
        if conversation_id:
            for key, (_, bound, _) in list(self.records.items()):
                if key[0] == user_id and bound == conversation_id and key[1] != session.session_id:
                    del self.records[key]
        self.records[(user_id, session.session_id)] = (
            session.to_state(),
            conversation_id,
            self.clock() + self.ttl,
        )

    async def claim(self, user_id: str, session: WorkflowSession, token: str) -> bool:
        record = self.records.get((user_id, session.session_id))
        if record is None or record[0].get("confirmation_token") != token:
            return False
        self.records[(user_id, session.session_id)] = (session.to_state(), record[1], self.clock() + self.ttl)
        return True

    async def delete(self, user_id: str, session_id: str) -> bool:
        return self.records.pop((user_id, session_id), None) is not None


class SqlWorkflowSessionStore:
    def __init__(self, db: AsyncSession, *, ttl: timedelta = timedelta(hours=12), clock: Clock = utc_now) -> None:
        self.db = db
        self.ttl = ttl
        self.clock = clock

    async def _get_record(self, user_id: str, session_id: str) -> GuidedLookSession | None:
        result = await self.db.execute(
            select(GuidedLookSession).where(
                and_(GuidedLookSession.user_id == user_id, GuidedLookSession.session_id == session_id)
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _stored(record: GuidedLookSession) -> StoredSession:
        return StoredSession(
            session=WorkflowSession.from_state(record.state),
            conversation_id=record.conversation_id,
            expires_at=record.expires_at,
            updated_at=record.updated_at,
        )

    async def get(self, user_id: str, session_id: str) -> StoredSession | None:
        record = await self._get_record(user_id, session_id)
        return self._stored(record) if record else None

    async def find_for_conversation(self, user_id: str, conversation_id: str) -> StoredSession | None:
        result = await self.db.execute(
            select(GuidedLookSession)
            .where(
                and_(
                    GuidedLookSession.user_id == user_id,
                    GuidedLookSession.conversation_id == conversation_id,
                )
            )
            .order_by(GuidedLookSession.updated_at.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        return self._stored(record) if record else None

    async def save(self, user_id: str, conversation_id: str | None, session: WorkflowSession) -> None:
        now = self.clock()
        if conversation_id:
            await self.db.execute(
                delete(GuidedLookSession).where(
                    and_(
                        GuidedLookSession.user_id == user_id,
                        GuidedLookSession.conversation_id == conversation_id,
                        GuidedLookSession.session_id != session.session_id,
                    )
                )
            )
        record = await self._get_record(user_id, session.session_id)
        if record is None:
            record = GuidedLookSession(user_id=user_id, session_id=session.session_id)
            self.db.add(record)
        record.conversation_id = conversation_id
        record.status = session.status
        record.confirmation_token = session.confirmation_token
        record.state = session.to_state()
        record.updated_at = now
        record.expires_at = now + self.ttl
        await self.db.commit()

    async def claim(self, user_id: str, session: WorkflowSession, token: str) -> bool:
        """Persist ``session`` only if the stored row still holds ``token``.

        The compare-and-set runs as a single UPDATE so two concurrent
        confirms of the same token cannot both win.
        """
        now = self.clock()
        result = await self.db.execute(
            update(GuidedLookSession)
            .where(
                and_(
                    GuidedLookSession.user_id == user_id,
                    GuidedLookSession.session_id == session.session_id,
                    GuidedLookSession.confirmation_token == token,
                )
            )
            .values(
                status=session.status,
                state=session.to_state(),
                confirmation_token=None,
                updated_at=now,
                expires_at=now + self.ttl,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def delete(self, user_id: str, session_id: str) -> bool:
        record = await self._get_record(user_id, session_id)
        if record is None:
            return False
        await self.db.delete(record)
        await self.db.commit()
        return True


def is_in_flight(stored: StoredSession, now: datetime, grace: timedelta) -> bool:
    if not stored.session.is_running or stored.updated_at is None:
        return False
    return now - stored.updated_at < grace


def is_usable(stored: StoredSession | None, conversation_id: str | None, now: datetime) -> bool:
    if stored is None:
        return False
    if stored.expires_at <= now:
        return False
    if conversation_id and stored.conversation_id and stored.conversation_id != conversation_id:
        return False
    return True


async def resolve_session(
    store: WorkflowSessionStore,
    user_id: str,
    *,
    session_id: str | None,
    conversation_id: str | None,
    clock: Clock = utc_now,
    in_flight_grace: timedelta | None = None,
) -> tuple[WorkflowSession, bool]:
    """Load the active session for a request.

    Returns the session and whether a previously known session had to be
    discarded (expired or bound to another conversation).  With
    ``in_flight_grace`` set, a session saved in a running status less than
    that long ago raises ``SessionInFlight`` instead of being returned; an
    older one is assumed interrupted and handed back for recovery.
    """
    now = clock()
    stored: StoredSession | None = None
    if session_id:
        stored = await store.get(user_id, session_id)
    elif conversation_id:
        stored = await store.find_for_conversation(user_id, conversation_id)
    if is_usable(stored, conversation_id, now):
        if in_flight_grace is not None and is_in_flight(stored, now, in_flight_grace):
            raise SessionInFlight(stored.session)
        return stored.session, False
    if stored is not None:
        logger.info("Discarding stale workflow session %s for user %s", stored.session.session_id, user_id)
        await store.delete(user_id, stored.session.session_id)
        return WorkflowSession(autosave_enabled=stored.session.autosave_enabled), True
    return WorkflowSession(), False

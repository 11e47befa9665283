"""
Server-side session store: opaque session id -> signed-in identity.
Rows expire after ``max_age``; expired rows read as absent and are purged
whenever a new session is issued.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete

from database import Database, SessionRecord
from models import IdentityRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)


class SessionStore:
    def __init__(
        self,
        db: Database,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._db = db
        self._max_age = max_age
        self._clock = clock

    async def create(self) -> str:
        """Issue a fresh, anonymous session."""
        await self.purge_expired()
        session_id = secrets.token_urlsafe(32)
        async with self._db.sessionmaker() as s:
            s.add(SessionRecord(id=session_id, account=None, expires_at=self._expiry()))
            await s.commit()
        return session_id

    async def get(self, session_id: str) -> Optional[IdentityRecord]:
        async with self._db.sessionmaker() as s:
            record = await s.get(SessionRecord, session_id)
            if record is None or not record.account or self._expired(record):
                return None
            return IdentityRecord.model_validate(record.account)

    async def set(self, session_id: str, identity: IdentityRecord) -> None:
        """Store the identity, replacing any previous one wholesale."""
        async with self._db.sessionmaker() as s:
            record = await s.get(SessionRecord, session_id)
            if record is None:
                s.add(SessionRecord(id=session_id, account=identity.model_dump(), expires_at=self._expiry()))
            else:
                record.account = identity.model_dump()
                record.expires_at = self._expiry()
            await s.commit()
        logger.info("session signed in account=%s", identity.id)

    async def clear(self, session_id: str) -> None:
        async with self._db.sessionmaker() as s:
            record = await s.get(SessionRecord, session_id)
            if record is None:
                return
            await s.delete(record)
            await s.commit()

    async def purge_expired(self) -> int:
        async with self._db.sessionmaker() as s:
            result = await s.execute(delete(SessionRecord).where(SessionRecord.expires_at <= self._clock()))
            await s.commit()
        if result.rowcount:
            logger.info("purged %d expired sessions", result.rowcount)
        return result.rowcount or 0

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _expiry(self) -> datetime:
        return self._clock() + self._max_age

    def _expired(self, record: SessionRecord) -> bool:
        return record.expires_at is not None and record.expires_at <= self._clock()

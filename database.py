from datetime import datetime

from sqlalchemy import Column, DateTime, JSON, String, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


# ── Models ────────────────────────────────────────────────────────────────────

class SessionRecord(Base):
    __tablename__ = "sessions"
    id         = Column(String, primary_key=True)
    account    = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)


# ── Engine ────────────────────────────────────────────────────────────────────

class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, url: str):
        connect_args = {}
        engine_kwargs = {}
        if url.startswith("postgresql"):
            connect_args = {"ssl": "require"}
        elif ":memory:" in url:
            # one shared connection, otherwise every checkout sees an empty db
            connect_args = {"check_same_thread": False}
            engine_kwargs["poolclass"] = StaticPool

        self.engine = create_async_engine(
            url,
            echo=False,
            connect_args=connect_args,
            **engine_kwargs,
        )
        self.sessionmaker = sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init(self):
        """Create all tables. Safe to call multiple times."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        async with self.sessionmaker() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def dispose(self):
        await self.engine.dispose()

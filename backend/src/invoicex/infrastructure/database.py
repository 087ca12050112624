"""
Database configuration and session management with SQLAlchemy.

Uses async SQLAlchemy for non-blocking database operations. Holds the
mutable KYB state: the business -> manifest index and the verification
request table.

Design Decisions:
- AsyncSession for non-blocking operations
- Engine owned by a Database object with explicit open/close, so tests
  can run isolated instances side by side
- Partial unique index enforces one pending request per business at the
  database level as well as in the workflow
- Request updates are compare-and-set on a version column, so two
  workers cannot both move one request out of pending
- Session-per-operation pattern
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class BusinessMappingRecord(Base):
    """
    Current manifest for a business.

    Overwritten on every successful manifest store; no history.
    """
    __tablename__ = "business_mappings"

    business_identity: Mapped[str] = mapped_column(String(128), primary_key=True)
    locator: Mapped[str] = mapped_column(String(128))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class VerificationRequestRecord(Base):
    """A KYB verification request and its decision."""
    __tablename__ = "verification_requests"
    __table_args__ = (
        Index(
            "uq_verification_requests_pending",
            "business_identity",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        {"sqlite_autoincrement": True},
    )

    request_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_identity: Mapped[str] = mapped_column(String(128), index=True)
    business_hash: Mapped[str] = mapped_column(String(128))
    jurisdiction: Mapped[str] = mapped_column(String(8))
    business_type: Mapped[str] = mapped_column(String(128))
    submitted_proofs: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), index=True)
    level: Mapped[str] = mapped_column(String(16))
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    decided_by: Mapped[str | None] = mapped_column(String(128))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    renewal_of: Mapped[int | None] = mapped_column(Integer)
    version: Mapped[int] = mapped_column(Integer, default=1)


class Database:
    """
    Async engine and session factory with an explicit lifecycle.

    Usage:
        db = Database("sqlite+aiosqlite:///./invoicex.db")
        await db.open()
        async with db.session() as session:
            ...
        await db.close()
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        """Create the engine and ensure tables exist. Idempotent."""
        if self._engine is not None:
            return

        options: dict = {"echo": self.echo}
        if not self.url.startswith("sqlite"):
            options.update(pool_size=5, max_overflow=10, pool_timeout=30)

        self._engine = create_async_engine(self.url, **options)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info(f"Database engine created ({self._engine.url.get_backend_name()})")
        await self.create_all()

    async def create_all(self) -> None:
        """
        Initialize database tables.

        In production, use Alembic migrations instead.
        """
        async with self._require_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session.

        Usage:
            async with db.session() as session:
                session.add(record)
                await session.commit()
        """
        self._require_engine()
        session = self._session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self) -> None:
        """Close database connections. Idempotent."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed")

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

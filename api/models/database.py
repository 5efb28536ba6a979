"""
SQLAlchemy async models for the Offline Sync API.

Uses PostgreSQL with async support via asyncpg in production and SQLite
via aiosqlite for development and tests.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

from api.core.config import settings


# =============================================================================
# Database Engine and Session
# =============================================================================

def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # SQLite connections are opened per session and bound to no event loop
        options["poolclass"] = NullPool
    else:
        options.update(pool_size=10, max_overflow=20)
    return options


engine = create_async_engine(
    settings.database_url,
    **_engine_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db():
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        yield session


# =============================================================================
# Base Model
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""
    pass


# =============================================================================
# Sync Record Model
# =============================================================================

class SyncRecord(Base):
    """Authoritative copy of a synchronized record."""
    __tablename__ = "sync_records"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    # Optimistic concurrency: bumped by exactly one per accepted mutation
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    updated_at: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_sync_records_owner_updated", "owner_id", "updated_at"),
    )


# =============================================================================
# Audit Log Model
# =============================================================================

class SyncAuditEntry(Base):
    """One accepted operation, keyed by its client-generated id."""
    __tablename__ = "sync_audit_log"

    operation_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    entity_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    kind: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    payload_checksum: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    # Response returned the first time, replayed verbatim for retries
    result: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
    applied_at: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_sync_audit_owner_kind_applied", "owner_id", "kind", "applied_at"),
    )


# =============================================================================
# Database Initialization
# =============================================================================

async def init_db():
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

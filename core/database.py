"""
Relational schema for durable pipeline state with SQLAlchemy models.

Holds jobs (status survives restarts so pollers can resume), persisted outputs per
format, and usage records backing the quota tracker.
"""

from pathlib import Path
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint, Index,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


# ========================================
# SQLAlchemy Models
# ========================================

class TranscriptionJob(Base):
    """Submitted jobs and their lifecycle state."""
    __tablename__ = 'transcription_jobs'

    job_id = Column(String(32), primary_key=True)
    owner = Column(String(128), nullable=False)
    tier = Column(String(20), nullable=False, default='free')
    job_type = Column(String(30), nullable=False, default='transcription')
    source_kind = Column(String(20), nullable=False)
    source_ref = Column(Text, nullable=False)
    options = Column(JSON, default=dict)
    priority = Column(Float, default=0.0)
    status = Column(String(20), nullable=False, default='submitted')
    progress = Column(Integer, default=0)
    provider = Column(String(50))
    audio_url = Column(Text)
    error_category = Column(String(30))
    error_message = Column(Text)
    created_at = Column(DateTime, default=func.current_timestamp())
    updated_at = Column(DateTime, default=func.current_timestamp(), onupdate=func.current_timestamp())
    queued_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    outputs = relationship("TranscriptionOutput", back_populates="job", cascade="all, delete-orphan")

    # Indexes
    __table_args__ = (
        Index('idx_transcription_jobs_status', 'status', 'created_at'),
        Index('idx_transcription_jobs_owner', 'owner'),
    )


class TranscriptionOutput(Base):
    """Rendered transcript, one row per job and format."""
    __tablename__ = 'transcription_outputs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(32), ForeignKey('transcription_jobs.job_id'), nullable=False)
    format = Column(String(10), nullable=False)
    content = Column(Text, nullable=False)
    language = Column(String(10))
    created_at = Column(DateTime, default=func.current_timestamp())

    job = relationship("TranscriptionJob", back_populates="outputs")

    __table_args__ = (
        UniqueConstraint('job_id', 'format', name='uq_output_job_format'),
    )


class UsageRecord(Base):
    """Minutes consumed by an identity: one row per admitted job plus any top-up charges."""
    __tablename__ = 'usage_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity_key = Column(String(128), nullable=False)
    minutes = Column(Float, nullable=False, default=0.0)
    model_type = Column(String(20), nullable=False, default='standard')
    counts_request = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=func.current_timestamp())

    __table_args__ = (
        Index('idx_usage_identity_time', 'identity_key', 'created_at'),
    )


class TranscriptCacheEntry(Base):
    """Provider transcript reused for repeat requests of the same source."""
    __tablename__ = 'transcript_cache'

    cache_key = Column(String(200), primary_key=True)
    owner = Column(String(128))
    result = Column(JSON, nullable=False)
    access_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=func.current_timestamp())
    last_accessed = Column(DateTime)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_transcript_cache_expiry', 'expires_at'),
        Index('idx_transcript_cache_owner', 'owner'),
    )


# ========================================
# Database Connection Management
# ========================================

class DatabaseManager:
    """Async database connection and session management."""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///data/transcription.db"):
        self.database_url = database_url
        self.engine = None
        self.session_factory = None

    async def initialize(self):
        """Initialize async database engine and session factory."""
        engine_kwargs = {"echo": False}

        if self.database_url.startswith('sqlite'):
            db_file = self.database_url.split(":///", 1)[-1]
            if db_file and db_file != ":memory:":
                Path(db_file).parent.mkdir(exist_ok=True, parents=True)
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 30,
            }
        else:
            # Pooling only for server databases
            engine_kwargs.update({
                "pool_size": 5,
                "max_overflow": 5,
                "pool_timeout": 30,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            })

        self.engine = create_async_engine(self.database_url, **engine_kwargs)

        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self):
        """Get an async database session."""
        if not self.session_factory:
            await self.initialize()

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            else:
                await session.commit()

    async def close(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None


async def create_database(database_url: Optional[str] = None) -> DatabaseManager:
    """Create the schema and return an initialized manager."""
    if database_url is None:
        from config.settings import get_database_url
        database_url = get_database_url()
    manager = DatabaseManager(database_url)
    await manager.initialize()
    return manager

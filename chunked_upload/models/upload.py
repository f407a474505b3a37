"""
Database models for chunked upload sessions

Chunk bytes and chunk records hang off the internal upload_id (UUID), not the
client-facing session_id: an expired generation of a session id stays
isolated from the fresh session that reuses the id.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (stored as-is by both SQLite and PostgreSQL)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionStatus:
    RECEIVING = "receiving"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    EXPIRED = "expired"
    FAILED = "failed"
    
    TERMINAL = (COMPLETE, EXPIRED, FAILED)


class UploadSession(Base):
    """
    One client upload of a single file.
    
    Lifecycle:
      receiving -> aggregating -> complete
      receiving -> expired          (lease ran out)
      aggregating -> failed         (aggregation error or stuck worker)
    
    received_count is only ever moved by compare-and-swap updates; the
    receiving -> aggregating flip is a conditional update with exactly one
    winner.
    """
    __tablename__ = "upload_sessions"
    
    upload_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    received_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.RECEIVING, nullable=False, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)  # lease, renewed per chunk
    terminal_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    
    __table_args__ = (
        # At most one live (non-expired) session per client-facing id
        Index(
            "uq_live_session_id",
            "session_id",
            unique=True,
            sqlite_where=text("status != 'expired'"),
            postgresql_where=text("status != 'expired'"),
        ),
    )
    
    @property
    def is_terminal(self) -> bool:
        return self.status in SessionStatus.TERMINAL
    
    def __repr__(self):
        return (
            f"<UploadSession session_id={self.session_id} upload_id={self.upload_id} "
            f"{self.received_count}/{self.total_chunks} status={self.status}>"
        )


class ChunkRecord(Base):
    """
    One received chunk of a session.
    
    recorded_at is set once the analysis result is stored and the chunk has
    been counted towards received_count.
    """
    __tablename__ = "chunk_records"
    
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )
    upload_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("upload_sessions.upload_id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    byte_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    
    analysis_result: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    analysis_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    
    __table_args__ = (
        UniqueConstraint("upload_id", "chunk_index", name="uq_chunk_per_upload"),
    )
    
    def __repr__(self):
        return f"<ChunkRecord upload_id={self.upload_id} index={self.chunk_index} hash={self.content_hash[:8]}>"


class AggregateRecord(Base):
    """Final report of a session; written once, never updated"""
    __tablename__ = "aggregate_results"
    
    upload_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("upload_sessions.upload_id", ondelete="CASCADE"),
        primary_key=True
    )
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    result: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

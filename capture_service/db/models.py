"""Database models for the capture analysis service."""

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from capture_service.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Stored as VARCHAR holding the enum *values*, matching the SQL migrations
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=50,
        values_callable=lambda members: [m.value for m in members],
    )


class Difficulty(str, enum.Enum):
    """How hard the captured subject is to find."""

    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"
    EXPERT = "EXPERT"


class QueueStatus(str, enum.Enum):
    """Status of an analysis queue entry."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"  # Dead-lettered


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.IN_PROGRESS)


class SyncStatus(str, enum.Enum):
    """Sync status of a device upload."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class Capture(Base):
    """A user-submitted image and its AI-derived metadata."""

    __tablename__ = "captures"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True, index=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    device_local_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Image
    image_url: Mapped[str] = mapped_column(Text)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    storage_type: Mapped[str] = mapped_column(String(50), default="s3")

    # AI analysis (worker-owned, except category/tags which users may edit)
    vision_result: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True), nullable=True)
    difficulty: Mapped[Difficulty] = mapped_column(
        _enum(Difficulty, "difficulty"), default=Difficulty.MEDIUM, index=True
    )
    verified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Context reported by the device
    location: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    location_info: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    orientation: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Flags
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    queue_entries: Mapped[list["AnalysisQueueEntry"]] = relationship(
        "AnalysisQueueEntry", back_populates="capture", cascade="all, delete-orphan", passive_deletes=True
    )
    analysis_results: Mapped[list["AnalysisResult"]] = relationship(
        "AnalysisResult", back_populates="capture", cascade="all, delete-orphan", passive_deletes=True
    )


class AnalysisQueueEntry(Base):
    """A pending or finished analysis job for one capture."""

    __tablename__ = "analysis_queue"
    __table_args__ = (
        # At most one active entry per capture
        Index(
            "uq_analysis_queue_active_capture",
            "capture_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'in_progress')"),
            sqlite_where=text("status IN ('pending', 'in_progress')"),
        ),
        Index("ix_analysis_queue_claimable", "status", "available_at", "queued_at"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    capture_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("captures.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[QueueStatus] = mapped_column(
        _enum(QueueStatus, "queuestatus"), default=QueueStatus.PENDING, index=True
    )

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    retryable: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)  # Last failure
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reanalyze: Mapped[bool] = mapped_column(Boolean, default=False)  # Replace an existing result

    # Claim
    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    capture: Mapped["Capture"] = relationship("Capture", back_populates="queue_entries")


class DeviceUpload(Base):
    """Maps a device-local capture id to the server capture it produced."""

    __tablename__ = "device_uploads"
    __table_args__ = (
        UniqueConstraint("device_id", "device_local_id", name="uq_device_uploads_device_local"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    device_id: Mapped[str] = mapped_column(String(255), index=True)
    device_local_id: Mapped[str] = mapped_column(String(255))
    server_capture_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("captures.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[SyncStatus] = mapped_column(
        _enum(SyncStatus, "syncstatus"), default=SyncStatus.PENDING, index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class AnalysisResult(Base):
    """Append-only log of every analysis a model produced for a capture."""

    __tablename__ = "analysis_results"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    capture_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("captures.id", ondelete="CASCADE"), index=True
    )
    model_name: Mapped[str] = mapped_column(String(100))
    model_version: Mapped[str] = mapped_column(String(50))
    result: Mapped[dict] = mapped_column(JSON)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )

    capture: Mapped["Capture"] = relationship("Capture", back_populates="analysis_results")


class Tag(Base):
    """Normalized tag name."""

    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class CaptureTag(Base):
    """Join row between a capture and a tag (mirror of captures.tags)."""

    __tablename__ = "capture_tags"

    capture_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("captures.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True, index=True
    )

"""Database models for the script generation service."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from scriptflow.db.session import Base


class JobStatus(str, enum.Enum):
    """Status of a generation job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


class Job(Base):
    """One generation request working its way through the pipeline."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    # Equals fingerprint while queued/processing, NULL once terminal.
    # The unique constraint is what enforces a single active job per fingerprint.
    active_fingerprint: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )

    # Request
    identity: Mapped[str] = mapped_column(String(128), index=True)
    source_reference: Mapped[str] = mapped_column(Text)
    normalized_source: Mapped[str] = mapped_column(Text)
    idea: Mapped[str] = mapped_column(Text)
    hints: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Processing
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e]),
        default=JobStatus.QUEUED,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metrics
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Script(Base):
    """Finished artifact. One row per fingerprint."""

    __tablename__ = "scripts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True)
    public_id: Mapped[str] = mapped_column(String(16), unique=True)

    identity: Mapped[str] = mapped_column(String(128), index=True)
    source_reference: Mapped[str] = mapped_column(Text)
    source_key: Mapped[str] = mapped_column(String(64), index=True)  # analysis cache key
    idea: Mapped[str] = mapped_column(Text)

    result_text: Mapped[str] = mapped_column(Text)
    result_image_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    generation_timings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ReelAnalysis(Base):
    """Tier-1 analysis cache entry, keyed by the normalized source only."""

    __tablename__ = "reel_analyses"

    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    normalized_source: Mapped[str] = mapped_column(Text)
    analysis_payload: Mapped[dict] = mapped_column(JSON)
    backend: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class RateLimitCounter(Base):
    """Fixed-window request counter per caller identity."""

    __tablename__ = "rate_limit_counters"

    identity: Mapped[str] = mapped_column(String(128), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    count: Mapped[int] = mapped_column(Integer, default=0)


class DatasetEntry(Base):
    """Training record written once per completed job.

    ``input_features`` holds what went into generation (reel, idea, hints,
    analysis), ``output_features`` the script and its structure, and
    ``generation`` the models, timings and attempt count.
    """

    __tablename__ = "dataset_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    job_id: Mapped[str] = mapped_column(String(36), unique=True)
    fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    source_key: Mapped[str] = mapped_column(String(64), index=True)

    input_features: Mapped[dict] = mapped_column(JSON)
    output_features: Mapped[dict] = mapped_column(JSON)
    generation: Mapped[dict] = mapped_column(JSON)

    dataset_version: Mapped[str] = mapped_column(String(16), default="2.0.0")
    is_validated: Mapped[bool] = mapped_column(Boolean, default=False)
    included_in_training: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

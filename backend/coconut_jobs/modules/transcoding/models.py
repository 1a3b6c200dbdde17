"""Database models for Coconut jobs and their outputs."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from coconut_jobs.core.database import Base


class JobStatus(str, Enum):
    """Status of a Coconut job."""
    STARTING = "starting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ERROR = "error"
    CANCELLED = "cancelled"


class OutputStatus(str, Enum):
    """Status of one job output."""
    PENDING = "pending"
    READY = "ready"
    ERRORED = "errored"


TERMINAL_JOB_STATUSES = frozenset((
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS,
    JobStatus.ERROR,
    JobStatus.CANCELLED,
))

# Allowed transitions; anything else is rejected
JOB_STATUS_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.STARTING: frozenset((
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_ERRORS,
        JobStatus.ERROR,
        JobStatus.CANCELLED,
    )),
    JobStatus.PROCESSING: frozenset((
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_ERRORS,
        JobStatus.ERROR,
        JobStatus.CANCELLED,
    )),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.COMPLETED_WITH_ERRORS: frozenset(),
    JobStatus.ERROR: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """Whether a job may move from ``current`` to ``target`` status.

    Staying in the same non-terminal status is allowed so progress updates
    can be applied.
    """
    current_status = JobStatus(current)
    target_status = JobStatus(target)
    if current_status == target_status:
        return current_status not in TERMINAL_JOB_STATUSES
    return target_status in JOB_STATUS_TRANSITIONS[current_status]


class Job(Base):
    """A transcoding job submitted (or about to be submitted) to Coconut."""

    __tablename__ = "coconut_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Assigned by Coconut on submission, never changed afterwards
    coconut_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True, index=True
    )

    # Input
    source: Mapped[str] = mapped_column(String(2048), nullable=False)
    input_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    input_url_hash: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    input_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    input_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Status tracking
    status: Mapped[str] = mapped_column(
        String(32), default=JobStatus.STARTING.value, nullable=False, index=True
    )
    progress: Mapped[str] = mapped_column(String(8), default="0%", nullable=False)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Job parameters, without credentials
    storage_params: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, coconut_id={self.coconut_id}, status={self.status})>"

    @property
    def is_submitted(self) -> bool:
        return self.coconut_id is not None

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_JOB_STATUSES


class Output(Base):
    """One requested output format of a source, and its resulting file."""

    __tablename__ = "coconut_outputs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("coconut_jobs.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    source: Mapped[str] = mapped_column(String(2048), nullable=False)
    format: Mapped[str] = mapped_column(String(255), nullable=False)
    # Output key reported by Coconut
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)

    # Credential-free storage descriptor: volume, path, public, adapter
    storage: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=OutputStatus.PENDING.value, nullable=False
    )
    progress: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("source", "format", name="uq_coconut_outputs_source_format"),
        Index("ix_coconut_outputs_job_key", "job_id", "key"),
    )

    def __repr__(self) -> str:
        return f"<Output(id={self.id}, format={self.format}, status={self.status})>"

    @property
    def volume(self) -> Optional[str]:
        return (self.storage or {}).get("volume")

    @property
    def is_ready(self) -> bool:
        return self.status == OutputStatus.READY.value

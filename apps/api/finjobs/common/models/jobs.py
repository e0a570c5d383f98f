"""Queue store models (jobs)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4, UUID

from sqlalchemy import (
    Boolean,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TIMESTAMP,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from finjobs.common.models.base import Base, BackoffKind, JobStateEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(Base):
    """A unit of deferred, retryable work tracked through explicit states.

    Every mutation after insert goes through the conditional updates in
    ``finjobs.jobs.store.QueueStore``.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(JobStateEnum, nullable=False, default="waiting")

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_kind: Mapped[str] = mapped_column(
        BackoffKind, nullable=False, default="exponential"
    )
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)
    timeout_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=60000)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    claimed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    ready_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index(
            "ix_jobs_claim_order",
            "queue_name",
            "state",
            "priority",
            "ready_at",
            "created_at",
        ),
        Index("ix_jobs_state_finished_at", "state", "finished_at"),
        Index("ix_jobs_state_lease", "state", "lease_expires_at"),
    )

from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, Text, JSON, Uuid, func, text, false
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from tee_jobs.db.session import Base
from tee_jobs.domain.models import PayloadRefs
from tee_jobs.domain.payload import decode_opaque
from tee_jobs.domain.states import JobStatus, JobType, JobEvent, QueueEntryState
from tee_jobs.utils.timeutils import utcnow

JsonType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    api_key: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="user")


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False)

    type: Mapped[JobType] = mapped_column(String(50), default=JobType.REFINEMENT)
    status: Mapped[JobStatus] = mapped_column(String(20), default=JobStatus.PENDING)
    priority: Mapped[int] = mapped_column(Integer, default=5)

    # External references, passed through to the processor unmodified
    blob_id: Mapped[str] = mapped_column(String(255), nullable=False)
    onchain_file_id: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Caller data and processor output, stored as versioned opaque blobs
    metadata_blob: Mapped[Optional[str]] = mapped_column("metadata", Text, nullable=True)
    result_blob: Mapped[Optional[str]] = mapped_column("result_data", Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    # Set when recovery has already counted the next attempt
    attempt_reserved: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    queue_job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="jobs")
    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_jobs_status_created_at", "status", "created_at"),
        Index("ix_jobs_user_status", "user_id", "status"),
        Index("ix_jobs_worker_id", "worker_id"),
    )

    @property
    def payload_refs(self) -> PayloadRefs:
        return PayloadRefs(
            blob_id=self.blob_id,
            onchain_file_id=self.onchain_file_id,
            policy_id=self.policy_id,
        )

    @property
    def job_metadata(self) -> Optional[dict[str, Any]]:
        return decode_opaque(self.metadata_blob)

    @property
    def result(self) -> Any:
        return decode_opaque(self.result_blob)


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Context (e.g. worker_id, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")


class QueueEntry(Base):
    """Storage of the SQL-backed durable queue engine."""

    __tablename__ = "queue_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    state: Mapped[QueueEntryState] = mapped_column(String(20), default=QueueEntryState.CREATED)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    retry_limit: Mapped[int] = mapped_column(Integer, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    retry_delay: Mapped[int] = mapped_column(Integer, default=0)
    retry_backoff: Mapped[bool] = mapped_column(Boolean, default=False)

    start_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_on: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expire_in_seconds: Mapped[int] = mapped_column(Integer, default=900)

    singleton_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    output: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    created_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_on: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    keep_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        # Fetch path: eligible entries of one queue
        Index("ix_queue_entries_fetch", "name", "state", "start_after"),
        Index("ix_queue_entries_expiry", "state", "expires_at"),
        # Singleton guarantee for in-flight entries
        Index(
            "ux_queue_entries_singleton",
            "name",
            "singleton_key",
            unique=True,
            postgresql_where=text("singleton_key IS NOT NULL AND state IN ('created', 'retry', 'active')"),
            sqlite_where=text("singleton_key IS NOT NULL AND state IN ('created', 'retry', 'active')"),
        ),
    )

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from tee_jobs.domain.states import QueueEntryState
from tee_jobs.utils.timeutils import utcnow


@dataclass(frozen=True)
class PayloadRefs:
    """External references handed to the processor untouched."""
    blob_id: str
    onchain_file_id: str
    policy_id: str


@dataclass
class EnqueueOptions:
    priority: int = 5
    singleton_key: Optional[str] = None
    retry_limit: int = 2
    retry_delay: int = 60
    retry_backoff: bool = False
    expire_in_seconds: int = 900
    keep_until_seconds: int = 24 * 3600


@dataclass
class QueueEntrySnapshot:
    id: UUID
    name: str
    data: dict[str, Any]
    state: QueueEntryState
    priority: int = 0
    retry_count: int = 0
    retry_limit: int = 0
    singleton_key: Optional[str] = None
    worker_id: Optional[str] = None
    created_on: Optional[datetime] = None
    started_on: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state == QueueEntryState.ACTIVE


@dataclass
class QueueDepth:
    pending: int = 0
    active: int = 0


@dataclass
class ProcessorResult:
    status: str
    data: Optional[dict[str, Any]] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class BatchItemResult:
    queue_job_id: UUID
    job_id: Optional[UUID]
    success: bool
    skipped: bool = False
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class RecoveryReport:
    recovered_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    total_stuck_jobs: int = 0


@dataclass
class QueueHealth:
    queue_size: int
    processing: int
    average_processing_time: float
    estimated_wait_time: float
    is_healthy: bool
    last_updated: datetime


@dataclass
class ThroughputReport:
    completed: int
    failed: int
    success_rate: float
    pending: int
    processing: int
    window_hours: int = 1
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def total_processed(self) -> int:
        return self.completed + self.failed

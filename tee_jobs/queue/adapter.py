import logging
from typing import Any, Optional
from uuid import UUID

from tee_jobs.domain.errors import DuplicateJobError, QueueError, ConfigurationError
from tee_jobs.domain.models import EnqueueOptions, QueueEntrySnapshot, QueueDepth
from tee_jobs.domain.payload import sanitize_payload
from tee_jobs.queue.engine import QueueEngine, BatchHandler
from tee_jobs.settings import settings, WorkerRole

logger = logging.getLogger(__name__)


class QueueAdapter:
    """
    Thin facade over a ``QueueEngine`` for one logical queue.

    Applies the configured defaults, sanitizes payloads, translates engine
    outcomes into domain errors and decides (by role) whether this instance
    consumes at all.
    """

    def __init__(
        self,
        engine: QueueEngine,
        queue_name: Optional[str] = None,
        role: Optional[WorkerRole] = None,
        queue_enabled: Optional[bool] = None,
    ):
        self.engine = engine
        self.queue_name = queue_name or settings.JOB_QUEUE_NAME
        self.role = WorkerRole(role or settings.WORKER_ROLE)
        self.queue_enabled = settings.JOB_QUEUE_ENABLED if queue_enabled is None else queue_enabled
        self._worker_registered = False

    async def start(self):
        await self.engine.start()

    async def stop(self):
        await self.engine.stop()

    @property
    def should_run_worker(self) -> bool:
        return self.queue_enabled and self.role in (WorkerRole.WORKER, WorkerRole.API_AND_WORKER)

    async def enqueue(
        self,
        data: dict[str, Any],
        *,
        dedup_key: Optional[str] = None,
        priority: Optional[int] = None,
        retry_limit: Optional[int] = None,
        retry_delay: Optional[int] = None,
        ttl_hours: Optional[int] = None,
    ) -> UUID:
        options = EnqueueOptions(
            priority=priority if priority is not None else settings.JOB_DEFAULT_PRIORITY,
            singleton_key=dedup_key,
            retry_limit=retry_limit if retry_limit is not None else max(settings.JOB_MAX_RETRIES - 1, 0),
            retry_delay=retry_delay if retry_delay is not None else settings.JOB_RETRY_DELAY_SECONDS,
            retry_backoff=settings.JOB_RETRY_BACKOFF,
            expire_in_seconds=settings.QUEUE_LEASE_TIMEOUT_SECONDS,
            keep_until_seconds=(ttl_hours if ttl_hours is not None else settings.QUEUE_RETENTION_HOURS) * 3600,
        )

        try:
            entry_id = await self.engine.send(self.queue_name, sanitize_payload(data), options)
        except Exception as e:
            logger.error(f"Failed to enqueue on {self.queue_name}: {e}", exc_info=True)
            raise QueueError(f"Failed to enqueue job: {e}") from e

        if entry_id is None:
            raise DuplicateJobError(dedup_key or "")

        logger.debug(f"Enqueued entry {entry_id} on {self.queue_name}")
        return entry_id

    async def status(self, queue_job_id: UUID) -> Optional[QueueEntrySnapshot]:
        try:
            return await self.engine.get_entry(self.queue_name, queue_job_id)
        except Exception as e:
            logger.error(f"Failed to read queue entry {queue_job_id}: {e}")
            raise QueueError(f"Failed to read queue entry {queue_job_id}") from e

    async def cancel(self, queue_job_id: UUID) -> bool:
        try:
            return await self.engine.cancel(self.queue_name, queue_job_id)
        except Exception as e:
            logger.error(f"Failed to cancel queue entry {queue_job_id}: {e}")
            return False

    async def register_worker(self, batch_size: int, handler: BatchHandler) -> bool:
        """
        Subscribes ``handler`` to the queue if this instance's role consumes.
        Returns whether a consumer was registered.
        """
        if not self.should_run_worker:
            logger.info(
                f"Worker disabled (role={self.role}, queue_enabled={self.queue_enabled}); "
                f"not consuming {self.queue_name}"
            )
            return False
        if self._worker_registered:
            raise ConfigurationError(f"A consumer is already registered for {self.queue_name}")

        await self.engine.work(self.queue_name, batch_size, handler)
        self._worker_registered = True
        logger.info(f"Registered consumer for {self.queue_name} (role={self.role}, batch size {batch_size})")
        return True

    async def queue_depth(self) -> QueueDepth:
        try:
            return await self.engine.queue_size(self.queue_name)
        except Exception as e:
            raise QueueError(f"Failed to read depth of {self.queue_name}") from e

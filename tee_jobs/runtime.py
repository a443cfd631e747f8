import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from tee_jobs.db.repository import JobRepository, UserDirectory
from tee_jobs.db.session import create_engine, create_session_factory
from tee_jobs.queue.adapter import QueueAdapter
from tee_jobs.queue.engine import SqlQueueEngine
from tee_jobs.scheduler.service import SchedulerService
from tee_jobs.services.consumer import JobConsumer
from tee_jobs.services.monitor import JobMonitor
from tee_jobs.services.processor import Processor, TeeProcessorClient
from tee_jobs.services.producer import JobProducer
from tee_jobs.services.recovery import JobRecovery
from tee_jobs.settings import settings

logger = logging.getLogger(__name__)


class JobsRuntime:
    """
    Owns every long-lived object of one instance: the database engine, the queue
    engine handle, the services and the scheduler. Created at startup and torn
    down at shutdown.
    """

    def __init__(self, db_engine: AsyncEngine, processor: Optional[Processor] = None):
        self.db_engine = db_engine
        self.session_factory = create_session_factory(db_engine)

        self.jobs = JobRepository(self.session_factory)
        self.users = UserDirectory(self.session_factory)

        self.queue_engine = SqlQueueEngine(
            self.session_factory,
            worker_id=settings.WORKER_INSTANCE_ID,
            poll_interval=settings.JOB_POLL_INTERVAL_SECONDS,
            drain_timeout=settings.SHUTDOWN_DRAIN_TIMEOUT_SECONDS,
        )
        self.queue = QueueAdapter(self.queue_engine)

        self.processor = processor or TeeProcessorClient()
        self.producer = JobProducer(self.jobs, self.users, self.queue)
        self.consumer = JobConsumer(self.jobs, self.processor)
        self.recovery = JobRecovery(self.jobs, self.queue)
        self.monitor = JobMonitor(self.jobs, self.queue, self.recovery)
        self.scheduler = SchedulerService(self.session_factory)

    @classmethod
    def build(cls, database_uri: Optional[str] = None, processor: Optional[Processor] = None) -> "JobsRuntime":
        return cls(create_engine(database_uri), processor=processor)

    async def start(self):
        await self.queue.start()
        await self.consumer.register(self.queue)

        if settings.MONITOR_ENABLED:
            self.monitor.schedule(self.scheduler)
            await self.scheduler.start()

        logger.info(
            f"Jobs runtime started: instance={settings.WORKER_INSTANCE_ID} role={settings.WORKER_ROLE} "
            f"queue={self.queue.queue_name}"
        )

    async def stop(self):
        await self.scheduler.stop()
        await self.queue.stop()
        if isinstance(self.processor, TeeProcessorClient):
            await self.processor.close()
        await self.db_engine.dispose()
        logger.info("Jobs runtime stopped.")

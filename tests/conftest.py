import inspect
from datetime import timedelta
from typing import Any, AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tee_jobs.db import models  # noqa: F401
from tee_jobs.db.models import User
from tee_jobs.db.repository import JobRepository, UserDirectory
from tee_jobs.db.session import Base, create_engine, create_session_factory
from tee_jobs.domain.models import PayloadRefs, ProcessorResult
from tee_jobs.domain.schemas import JobCreateRequest
from tee_jobs.queue.adapter import QueueAdapter
from tee_jobs.queue.engine import SqlQueueEngine
from tee_jobs.services.consumer import JobConsumer
from tee_jobs.services.producer import JobProducer
from tee_jobs.services.recovery import JobRecovery
from tee_jobs.settings import settings, WorkerRole
from tee_jobs.utils.timeutils import utcnow

QUEUE_NAME = "test-queue"
USER_ID = "user-1"
API_KEY = "test-key"


class FakeProcessor:
    """Stands in for the TEE service. ``outcome`` maps refs to a ProcessorResult (sync or async)."""

    def __init__(self, outcome: Optional[Callable[[PayloadRefs], Any]] = None):
        self.calls: list[PayloadRefs] = []
        self.outcome = outcome or self.succeed

    @staticmethod
    def succeed(refs: PayloadRefs) -> ProcessorResult:
        return ProcessorResult(status="success", data={"processed": True, "blobId": refs.blob_id})

    async def process(self, refs: PayloadRefs, timeout_seconds: int) -> ProcessorResult:
        self.calls.append(refs)
        result = self.outcome(refs)
        if inspect.isawaitable(result):
            result = await result
        return result


def make_request(blob_id: str = "b1", **overrides: Any) -> JobCreateRequest:
    data = {
        "blobId": blob_id,
        "onchainFileId": "f1",
        "policyId": "p1",
        "jobType": "refinement",
    }
    data.update(overrides)
    return JobCreateRequest.model_validate(data)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    # Retries become immediately eligible so tests can drive them with poll_once
    monkeypatch.setattr(settings, "JOB_RETRY_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "JOB_MAX_RETRIES", 3)
    monkeypatch.setattr(settings, "JOB_RETRY_BACKOFF", False)


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def jobs(session_factory) -> JobRepository:
    return JobRepository(session_factory)


@pytest.fixture
def users(session_factory) -> UserDirectory:
    return UserDirectory(session_factory)


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    async with session_factory() as session:
        user = User(id=USER_ID, name="Test User", api_key=API_KEY)
        session.add(user)
        await session.commit()
    return user


@pytest.fixture
def queue_engine(session_factory) -> SqlQueueEngine:
    return SqlQueueEngine(session_factory, worker_id="test-worker", poll_interval=0.01, drain_timeout=1.0)


@pytest.fixture
def queue(queue_engine) -> QueueAdapter:
    return QueueAdapter(queue_engine, queue_name=QUEUE_NAME, role=WorkerRole.API_AND_WORKER, queue_enabled=True)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def producer(jobs, users, queue) -> JobProducer:
    return JobProducer(jobs, users, queue)


@pytest.fixture
def consumer(jobs, processor) -> JobConsumer:
    return JobConsumer(jobs, processor, worker_id="test-worker", timeout_seconds=5)


@pytest.fixture
def recovery(jobs, queue) -> JobRecovery:
    return JobRecovery(jobs, queue, stuck_timeout_minutes=10)


@pytest.fixture
def poll(queue_engine, consumer):
    """One engine delivery of up to ``batch_size`` entries to the consumer."""

    async def _poll(batch_size: int = 1) -> int:
        return await queue_engine.poll_once(QUEUE_NAME, batch_size, consumer.process_batch)

    return _poll


async def backdate_start(jobs: JobRepository, job_id, minutes: int = 30):
    await jobs.update(job_id, started_at=utcnow() - timedelta(minutes=minutes))

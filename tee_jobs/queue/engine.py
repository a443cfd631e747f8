"""
Durable queue engine contract and its SQL-backed implementation.

``QueueEngine`` is everything the rest of the package needs from a queue:
at-least-once delivery with lease expiry, bounded retries, a best-effort
singleton key, cancellation, depth and batch consumption. ``SqlQueueEngine``
implements it on the ``queue_entries`` table so it shares the job store's
database and needs no extra infrastructure.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tee_jobs.commands.cancel_entry import cancel_entry
from tee_jobs.commands.complete_entries import complete_entries
from tee_jobs.commands.fail_entries import fail_entries
from tee_jobs.commands.lease_entries import lease_entries
from tee_jobs.commands.purge_entries import purge_entries
from tee_jobs.commands.requeue_expired import requeue_expired_entries
from tee_jobs.commands.send_entry import send_entry
from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.models import EnqueueOptions, QueueEntrySnapshot, QueueDepth
from tee_jobs.domain.payload import sanitize_payload
from tee_jobs.domain.states import QueueEntryState, PENDING_ENTRY_STATES

logger = logging.getLogger(__name__)

BatchHandler = Callable[[list[QueueEntrySnapshot]], Awaitable[Any]]


class QueueEngine(ABC):
    """Abstract durable queue."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def send(self, name: str, data: dict[str, Any], options: EnqueueOptions) -> Optional[UUID]:
        """Enqueue ``data``. Returns None when the singleton key is already in flight."""
        ...

    @abstractmethod
    async def get_entry(self, name: str, entry_id: UUID) -> Optional[QueueEntrySnapshot]:
        ...

    @abstractmethod
    async def cancel(self, name: str, entry_id: UUID) -> bool:
        ...

    @abstractmethod
    async def work(self, name: str, batch_size: int, handler: BatchHandler) -> None:
        """Start consuming ``name`` in batches of at most ``batch_size``."""
        ...

    @abstractmethod
    async def queue_size(self, name: str) -> QueueDepth:
        ...


class SqlQueueEngine(QueueEngine):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_id: str,
        poll_interval: float = 2.0,
        maintenance_interval: Optional[float] = None,
        drain_timeout: float = 30.0,
    ):
        self.session_factory = session_factory
        self.worker_id = worker_id
        self.poll_interval = poll_interval
        self.maintenance_interval = maintenance_interval or poll_interval * 5
        self.drain_timeout = drain_timeout
        self.running = False
        self._queues: set[str] = set()
        self._workers: list[asyncio.Task] = []
        self._maintenance_task: Optional[asyncio.Task] = None

    async def start(self):
        self.running = True
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(f"SqlQueueEngine started (worker {self.worker_id}).")

    async def stop(self):
        self.running = False

        if self._workers:
            # Workers exit after their current batch; give them the drain window.
            _, pending = await asyncio.wait(self._workers, timeout=self.drain_timeout)
            for task in pending:
                logger.warning("Queue worker did not drain in time, cancelling.")
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._workers.clear()

        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        logger.info("SqlQueueEngine stopped.")

    async def send(self, name, data, options):
        self._queues.add(name)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    entry = await send_entry(session, name, sanitize_payload(data), options)
                    if entry is None:
                        return None
                    return entry.id
        except IntegrityError:
            # Lost the race on the singleton index
            logger.info(f"Singleton key {options.singleton_key} already in flight on {name}")
            return None

    async def get_entry(self, name, entry_id):
        async with self.session_factory() as session:
            entry = await session.scalar(
                select(QueueEntry).where(QueueEntry.id == entry_id, QueueEntry.name == name)
            )
            return _snapshot(entry) if entry else None

    async def cancel(self, name, entry_id):
        async with self.session_factory() as session:
            async with session.begin():
                return await cancel_entry(session, name, entry_id)

    async def queue_size(self, name):
        stmt = (
            select(QueueEntry.state, func.count())
            .where(QueueEntry.name == name)
            .group_by(QueueEntry.state)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        counts = {state: count for state, count in rows}
        return QueueDepth(
            pending=sum(counts.get(state, 0) for state in PENDING_ENTRY_STATES),
            active=counts.get(QueueEntryState.ACTIVE, 0),
        )

    async def work(self, name, batch_size, handler):
        self._queues.add(name)
        self._workers.append(asyncio.create_task(self._work_loop(name, batch_size, handler)))
        logger.info(f"Worker {self.worker_id} consuming {name} (batch size {batch_size})")

    async def _work_loop(self, name: str, batch_size: int, handler: BatchHandler):
        while self.running:
            try:
                processed = await self.poll_once(name, batch_size, handler)
                if processed == 0:
                    await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"Error in queue worker loop for {name}: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

    async def poll_once(
        self,
        name: str,
        batch_size: int,
        handler: BatchHandler,
        worker_id: Optional[str] = None,
    ) -> int:
        """
        Leases one batch and runs ``handler`` on it.
        Returning completes the whole batch; raising fails the whole batch.
        Returns the number of entries handled.
        """
        async with self.session_factory() as session:
            async with session.begin():
                entries = await lease_entries(session, name, worker_id or self.worker_id, batch_size)
                snapshots = [_snapshot(entry) for entry in entries]

        if not snapshots:
            return 0

        ids = [snapshot.id for snapshot in snapshots]
        try:
            output = await handler(snapshots)
        except Exception as e:
            logger.warning(f"Batch of {len(ids)} entries on {name} failed: {e}")
            async with self.session_factory() as session:
                async with session.begin():
                    await fail_entries(session, ids, str(e) or type(e).__name__)
        else:
            async with self.session_factory() as session:
                async with session.begin():
                    await complete_entries(session, ids, sanitize_payload(output))
        return len(snapshots)

    async def run_maintenance(self) -> tuple[int, int]:
        """Reaps expired leases and purges finished entries. Returns (reaped, purged)."""
        reaped = purged = 0
        for name in sorted(self._queues):
            async with self.session_factory() as session:
                async with session.begin():
                    reaped += await requeue_expired_entries(session, name)
                    purged += await purge_entries(session, name)
        if reaped or purged:
            logger.info(f"Queue maintenance: {reaped} expired leases reaped, {purged} entries purged")
        return reaped, purged

    async def _maintenance_loop(self):
        while self.running:
            await asyncio.sleep(self.maintenance_interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"Error in queue maintenance: {e}", exc_info=True)


def _snapshot(entry: QueueEntry) -> QueueEntrySnapshot:
    return QueueEntrySnapshot(
        id=entry.id,
        name=entry.name,
        data=dict(entry.data or {}),
        state=QueueEntryState(entry.state),
        priority=entry.priority,
        retry_count=entry.retry_count,
        retry_limit=entry.retry_limit,
        singleton_key=entry.singleton_key,
        worker_id=entry.worker_id,
        created_on=entry.created_on,
        started_on=entry.started_on,
        expires_at=entry.expires_at,
    )

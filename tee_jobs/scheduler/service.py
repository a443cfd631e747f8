import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tee_jobs.api.v1.metrics import LEADER_STATUS
from tee_jobs.utils.locking import try_advisory_lock, LEADER_LOCK_KEY

logger = logging.getLogger(__name__)


class LeaderElection:
    """
    Holds a dedicated session for the session-level advisory lock.
    The lock lives as long as the session, so the session is kept open between checks.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], key: int = LEADER_LOCK_KEY):
        self.session_factory = session_factory
        self.key = key
        self.is_leader = False
        self._session: Optional[AsyncSession] = None
        self._lock = asyncio.Lock()

    async def check(self) -> bool:
        async with self._lock:
            try:
                if self._session is None:
                    self._session = self.session_factory()

                # Re-entrant for the holder, so checking every tick is safe
                is_leader = await try_advisory_lock(self._session, self.key)
            except Exception as e:
                logger.error(f"Leader check failed: {e}", exc_info=True)
                is_leader = False
                # Reconnect on the next check
                await self._close_session()

            if is_leader and not self.is_leader:
                logger.info("Acquired leadership.")
            elif not is_leader and self.is_leader:
                logger.info("Lost leadership.")
            self.is_leader = is_leader
            LEADER_STATUS.set(1 if is_leader else 0)
            return is_leader

    async def release(self):
        async with self._lock:
            await self._close_session()
            self.is_leader = False
            LEADER_STATUS.set(0)

    async def _close_session(self):
        if self._session is not None:
            await self._session.close()
            self._session = None


class PeriodicTask:
    """One independent loop; an error in a run is logged and the loop carries on."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval: float,
        initial_delay: Optional[float] = None,
        leadership: Optional[LeaderElection] = None,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self.initial_delay = interval if initial_delay is None else initial_delay
        self.leadership = leadership
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop(), name=f"periodic-{self.name}")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_loop(self):
        await asyncio.sleep(self.initial_delay)
        while self.running:
            await self.run_once()
            await asyncio.sleep(self.interval)

    async def run_once(self) -> bool:
        """Runs the task if this instance may. Returns whether it ran without error."""
        try:
            if self.leadership is not None and not await self.leadership.check():
                logger.debug(f"Skipping {self.name}: not the leader")
                return False
            await self.func()
            return True
        except Exception as e:
            logger.error(f"Error in periodic task {self.name}: {e}", exc_info=True)
            return False


class SchedulerService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.leadership = LeaderElection(session_factory)
        self.tasks: list[PeriodicTask] = []

    def add_task(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval: float,
        initial_delay: Optional[float] = None,
        leader_only: bool = False,
    ) -> PeriodicTask:
        task = PeriodicTask(
            name,
            func,
            interval,
            initial_delay=initial_delay,
            leadership=self.leadership if leader_only else None,
        )
        self.tasks.append(task)
        return task

    async def start(self):
        for task in self.tasks:
            await task.start()
        logger.info(f"Scheduler service started ({', '.join(t.name for t in self.tasks)}).")

    async def stop(self):
        for task in self.tasks:
            await task.stop()
        await self.leadership.release()
        logger.info("Scheduler service stopped.")

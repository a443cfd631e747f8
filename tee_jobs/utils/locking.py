from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Fixed key for the monitor leader lock (Postgres advisory locks take a 64-bit key).
LEADER_LOCK_KEY = 84728472

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Session-level locks are released automatically when the session ends.
    Backends without advisory locks run a single instance, which is always leader.
    """
    if session.get_bind().dialect.name != "postgresql":
        return True
    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True

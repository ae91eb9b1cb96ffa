from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# A fixed key for the ticker leader lock (Postgres advisory locks take a 64-bit key).
LEADER_LOCK_KEY = 72031447

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired (or already held by this session), False otherwise.

    Other backends have no cross-process lock; a single instance is assumed
    and this always returns True.

    Note: Session-level locks are released automatically when the session ends.
    """
    if session.bind.dialect.name != "postgresql":
        return True

    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True

from typing import AsyncGenerator

from libs.db.config import AsyncSessionLocal
from sqlalchemy.ext.asyncio import AsyncSession


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session.

    Anything left uncommitted when the handler raises is rolled back before
    the connection goes back to the pool.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

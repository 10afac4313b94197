from loguru import logger
from sqlalchemy import text

from federator.database import AsyncSession
from federator.database import async_session
from federator.deliveries import FAILED_DELIVERIES_RETENTION_DAYS
from federator.deliveries import cleanup_old_deliveries


async def prune_old_data(
    db_session: AsyncSession,
    vacuum: bool = False,
) -> int:
    logger.info(f"Pruning old data with {FAILED_DELIVERIES_RETENTION_DAYS=}")
    deleted = await cleanup_old_deliveries(db_session)

    if vacuum:
        # Reclaim disk space
        await db_session.execute(text("VACUUM"))

    return deleted


async def run_prune_old_data() -> None:
    """CLI entrypoint."""
    async with async_session() as db_session:
        await prune_old_data(db_session, vacuum=True)

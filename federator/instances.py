from loguru import logger
from sqlalchemy import exists
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from federator import models
from federator.database import AsyncSession
from federator.utils.datetime import now
from federator.utils.url import get_host


async def get_instance(
    db_session: AsyncSession,
    domain: str,
) -> models.Instance | None:
    return (
        await db_session.execute(
            select(models.Instance).where(models.Instance.domain == domain)
        )
    ).scalar_one_or_none()


async def get_or_create_instance(
    db_session: AsyncSession,
    domain: str,
) -> models.Instance:
    instance = await get_instance(db_session, domain)
    if instance:
        return instance

    instance = models.Instance(domain=domain)
    db_session.add(instance)
    try:
        await db_session.commit()
    except IntegrityError:
        # Another request created the same instance concurrently
        await db_session.rollback()
        logger.info(f"Instance {domain} was created concurrently")
        instance = await get_instance(db_session, domain)
        if instance is None:
            raise

    return instance


async def is_instance_blocked(
    db_session: AsyncSession,
    domain: str,
) -> bool:
    instance = await get_instance(db_session, domain)
    return bool(instance and instance.blocked)


async def block_instance(
    db_session: AsyncSession,
    domain: str,
    reason: str | None,
    blocked_by_id: int | None,
) -> models.Instance:
    instance = await get_or_create_instance(db_session, domain)
    instance.blocked = True
    instance.reason = reason
    instance.blocked_by_id = blocked_by_id
    instance.blocked_at = now()
    await db_session.commit()

    logger.info(f"Blocked instance {domain} ({reason=})")
    return instance


async def block_for_user(
    db_session: AsyncSession,
    user_id: int,
    blocked_uri: str,
    block_type: models.BlockType = models.BlockType.USER,
) -> models.UserBlock:
    user_block = models.UserBlock(
        user_id=user_id,
        blocked_uri=blocked_uri,
        block_type=block_type,
    )
    db_session.add(user_block)
    await db_session.commit()
    return user_block


async def is_blocked_by_user(
    db_session: AsyncSession,
    user_id: int,
    uri: str,
) -> bool:
    """Returns True if the user blocked either the URI or its domain."""
    domain = get_host(uri)
    conditions = [models.UserBlock.blocked_uri == uri]
    if domain:
        conditions.append(
            (models.UserBlock.block_type == models.BlockType.DOMAIN)
            & (models.UserBlock.blocked_uri == domain)
        )

    return bool(
        await db_session.scalar(
            select(
                exists().where(
                    models.UserBlock.user_id == user_id,
                    or_(*conditions),
                )
            )
        )
    )

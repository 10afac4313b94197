import re
from dataclasses import dataclass
from datetime import datetime

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from federator import models
from federator.config import BASE_URL
from federator.config import DOMAIN
from federator.database import AsyncSession
from federator.key import ensure_actor_has_keys
from federator.utils.datetime import now


@dataclass
class Community:
    """A local community, exposed as a Group actor."""

    id: int
    name: str
    description: str | None = None
    is_public: bool = True
    avatar_url: str | None = None
    created_at: datetime | None = None


def community_slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower())


async def create_group_follow(
    db_session: AsyncSession,
    remote_actor_id: int,
    group_actor_id: int,
    activitypub_id: str | None,
    pending: bool = False,
) -> models.GroupFollow:
    """Records a follow of a local group.

    Remote servers may send the same Follow again, the existing follow is
    returned in that case.
    """
    group_follow = models.GroupFollow(
        remote_actor_id=remote_actor_id,
        group_actor_id=group_actor_id,
        activitypub_id=activitypub_id,
        pending=pending,
    )
    db_session.add(group_follow)
    try:
        await db_session.commit()
    except IntegrityError:
        await db_session.rollback()
        existing_follow = await get_group_follow(
            db_session, remote_actor_id, group_actor_id
        )
        if existing_follow is None:
            raise

        logger.info(f"Actor {remote_actor_id} already follows group {group_actor_id}")
        return existing_follow

    logger.info(f"Actor {remote_actor_id} followed group {group_actor_id}")
    return group_follow


async def get_group_follow(
    db_session: AsyncSession,
    remote_actor_id: int,
    group_actor_id: int,
) -> models.GroupFollow | None:
    return (
        await db_session.execute(
            select(models.GroupFollow).where(
                models.GroupFollow.remote_actor_id == remote_actor_id,
                models.GroupFollow.group_actor_id == group_actor_id,
            )
        )
    ).scalar_one_or_none()


async def delete_group_follow(
    db_session: AsyncSession,
    remote_actor_id: int,
    group_actor_id: int,
) -> bool:
    """Returns False if there was no such follow."""
    result = await db_session.execute(
        delete(models.GroupFollow)
        .where(
            models.GroupFollow.remote_actor_id == remote_actor_id,
            models.GroupFollow.group_actor_id == group_actor_id,
        )
        .execution_options(synchronize_session="fetch")
    )
    await db_session.commit()
    return bool(result.rowcount)  # type: ignore


async def get_group_followers(
    db_session: AsyncSession,
    group_actor_id: int,
) -> list[models.Actor]:
    return list(
        (
            await db_session.scalars(
                select(models.Actor)
                .join(
                    models.GroupFollow,
                    models.GroupFollow.remote_actor_id == models.Actor.id,
                )
                .where(
                    models.GroupFollow.group_actor_id == group_actor_id,
                    models.GroupFollow.pending.is_(False),
                )
                .order_by(models.GroupFollow.created_at, models.GroupFollow.id)
            )
        ).all()
    )


async def get_group_follower_inboxes(
    db_session: AsyncSession,
    group_actor_id: int,
) -> list[str]:
    """Inboxes to deliver to, shared inboxes are used when available."""
    inboxes: list[str] = []
    for follower in await get_group_followers(db_session, group_actor_id):
        inbox = follower.shared_inbox_url or follower.inbox_url
        if isinstance(inbox, str) and inbox and inbox not in inboxes:
            inboxes.append(inbox)

    return inboxes


async def get_group_follower_count(
    db_session: AsyncSession,
    group_actor_id: int,
) -> int:
    return (
        await db_session.scalar(
            select(func.count(models.GroupFollow.id)).where(
                models.GroupFollow.group_actor_id == group_actor_id,
                models.GroupFollow.pending.is_(False),
            )
        )
    ) or 0


async def get_local_group_actor_by_uri(
    db_session: AsyncSession,
    uri: str,
) -> models.Actor | None:
    return (
        await db_session.execute(
            select(models.Actor).where(
                models.Actor.uri == uri,
                models.Actor.domain == DOMAIN,
                models.Actor.actor_type == "Group",
            )
        )
    ).scalar_one_or_none()


async def get_community_actor_by_name(
    db_session: AsyncSession,
    name: str,
) -> models.Actor | None:
    return (
        await db_session.execute(
            select(models.Actor).where(
                models.Actor.username == community_slug(name),
                models.Actor.domain == DOMAIN,
                models.Actor.actor_type == "Group",
            )
        )
    ).scalar_one_or_none()


async def _get_community_actor(
    db_session: AsyncSession,
    community_id: int,
) -> models.Actor | None:
    return (
        await db_session.execute(
            select(models.Actor).where(models.Actor.community_id == community_id)
        )
    ).scalar_one_or_none()


async def _ensure_keys(
    db_session: AsyncSession,
    actor: models.Actor,
) -> models.Actor:
    actor_id = actor.id
    try:
        return await ensure_actor_has_keys(db_session, actor)
    except Exception:
        logger.exception(f"Failed to generate keys for {actor.uri}")
        await db_session.rollback()

    # Keep the actor without keys, deliveries will use the instance key
    return (
        await db_session.execute(
            select(models.Actor).where(models.Actor.id == actor_id)
        )
    ).scalar_one()


async def get_or_create_community_actor(
    db_session: AsyncSession,
    community: Community,
) -> models.Actor:
    if actor := await _get_community_actor(db_session, community.id):
        return await _ensure_keys(db_session, actor)

    slug = community_slug(community.name)
    actor_url = f"{BASE_URL}/c/{slug}"
    actor = models.Actor(
        uri=actor_url,
        username=slug,
        domain=DOMAIN,
        display_name=community.name,
        summary=community.description,
        avatar_url=community.avatar_url,
        inbox_url=f"{actor_url}/inbox",
        outbox_url=f"{actor_url}/outbox",
        followers_url=f"{actor_url}/followers",
        public_key=None,
        manually_approves_followers=not community.is_public,
        actor_type="Group",
        community_id=community.id,
        published_at=community.created_at,
        last_fetched_at=now(),
        ap_metadata={},
    )
    db_session.add(actor)
    try:
        await db_session.commit()
    except IntegrityError:
        await db_session.rollback()
        existing_actor = await _get_community_actor(db_session, community.id)
        if existing_actor is None:
            raise
        actor = existing_actor
    else:
        logger.info(f"Created Group actor {actor_url} for {community.id=}")

    return await _ensure_keys(db_session, actor)

import asyncio
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from federator import activitypub as ap
from federator import models
from federator.config import ACTOR_CACHE_TTL_SECONDS
from federator.config import ACTOR_REFRESH_HOURS
from federator.database import AsyncSession
from federator.database import async_session
from federator.instances import get_or_create_instance
from federator.utils.datetime import as_utc
from federator.utils.datetime import maybe_parse_isoformat
from federator.utils.datetime import now
from federator.utils.emoji import process_ap_tags
from federator.utils.single_flight import SingleFlight

_IDENTITY_FIELDS = ["uri", "username", "domain"]

# Only IDs are cached, rows are bound to the session that loaded them
_ACTOR_IDS: SingleFlight[int] = SingleFlight("actors", ttl=ACTOR_CACHE_TTL_SECONDS)

# Keep a reference to the detached tasks so they don't get garbage collected
_BACKGROUND_TASKS: set[asyncio.Task[None]] = set()


async def get_actor_by_uri(
    db_session: AsyncSession,
    uri: str,
) -> models.Actor | None:
    return (
        await db_session.execute(select(models.Actor).where(models.Actor.uri == uri))
    ).scalar_one_or_none()


async def get_actor_by_id(
    db_session: AsyncSession,
    actor_id: int,
) -> models.Actor | None:
    return (
        await db_session.execute(
            select(models.Actor).where(models.Actor.id == actor_id)
        )
    ).scalar_one_or_none()


async def get_actor_by_username_and_domain(
    db_session: AsyncSession,
    username: str,
    domain: str,
) -> models.Actor | None:
    """Returns the oldest actor if there are duplicates."""
    return (
        (
            await db_session.execute(
                select(models.Actor)
                .where(
                    models.Actor.username == username,
                    models.Actor.domain == domain,
                )
                .order_by(models.Actor.created_at.asc(), models.Actor.id.asc())
                .limit(1)
            )
        )
        .scalars()
        .one_or_none()
    )


async def resolve(db_session: AsyncSession, uri: str) -> models.Actor:
    """Returns the local copy of a remote actor, fetching it when needed.

    Concurrent calls for the same URI share a single fetch, and successful
    results are cached in memory for a short while.

    Raises `ap.FetchError` if the actor has to be fetched and cannot be.
    """
    actor_id = await _ACTOR_IDS.get_or_run(
        uri, lambda: _get_or_fetch_id(db_session, uri)
    )
    actor = await _load_actor(db_session, actor_id)
    if actor is None:
        logger.info(f"Cached actor {actor_id} for {uri} is gone")
        _ACTOR_IDS.invalidate(uri)
        actor = await _get_or_fetch(db_session, uri)

    return actor


def clear_actor_cache() -> None:
    _ACTOR_IDS.clear()


async def _load_actor(
    db_session: AsyncSession,
    actor_id: int,
) -> models.Actor | None:
    return (
        await db_session.execute(
            select(models.Actor)
            .where(models.Actor.id == actor_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _get_or_fetch_id(db_session: AsyncSession, uri: str) -> int:
    actor = await _get_or_fetch(db_session, uri)
    return actor.id


async def _get_or_fetch(db_session: AsyncSession, uri: str) -> models.Actor:
    actor = await get_actor_by_uri(db_session, uri)
    if actor is None:
        return await fetch_and_cache_actor(db_session, uri)

    if actor.last_fetched_at is None:
        logger.info(f"{uri} was never fetched")
        return await fetch_and_cache_actor(db_session, uri, actor)

    if now() - as_utc(actor.last_fetched_at) > timedelta(hours=ACTOR_REFRESH_HOURS):
        logger.info(f"Refreshing {uri} last fetched at {actor.last_fetched_at}")
        return await fetch_and_cache_actor(db_session, uri, actor)

    return actor


async def fetch_and_cache_actor(
    db_session: AsyncSession,
    uri: str,
    existing_actor: models.Actor | None = None,
) -> models.Actor:
    raw_actor = await ap.fetch_actor(uri)
    attrs = actor_attributes(raw_actor)
    if not attrs["domain"]:
        raise ap.NotAnObjectError(uri)

    await get_or_create_instance(db_session, attrs["domain"])

    actor = await _upsert_actor(db_session, existing_actor, attrs)

    _spawn_emoji_processing(raw_actor.get("tag"), attrs["domain"])
    return actor


def actor_attributes(raw_actor: ap.RawObject) -> dict[str, Any]:
    ap_id = ap.get_id(raw_actor["id"])
    username = raw_actor.get("preferredUsername")
    if not isinstance(username, str) or not username:
        username = _username_from_uri(ap_id)

    actor_type = raw_actor.get("type")
    if not isinstance(actor_type, str):
        actor_type = "Person"

    return {
        "uri": ap_id,
        "username": username,
        "domain": urlparse(ap_id).hostname,
        "display_name": raw_actor.get("name"),
        "summary": raw_actor.get("summary"),
        "avatar_url": _get_image_url(raw_actor.get("icon")),
        "header_url": _get_image_url(raw_actor.get("image")),
        "inbox_url": raw_actor.get("inbox"),
        "outbox_url": raw_actor.get("outbox"),
        "followers_url": raw_actor.get("followers"),
        "following_url": raw_actor.get("following"),
        "public_key": _get_public_key(raw_actor),
        "manually_approves_followers": bool(
            raw_actor.get("manuallyApprovesFollowers") or False
        ),
        "actor_type": actor_type,
        "last_fetched_at": now(),
        "published_at": maybe_parse_isoformat(raw_actor.get("published")),
        "moderators_url": raw_actor.get("moderators"),
        "ap_metadata": raw_actor,
    }


def _username_from_uri(uri: str) -> str:
    return urlparse(uri).path.rstrip("/").split("/")[-1]


def _get_image_url(val: Any) -> str | None:
    # Can be an URL, an Image/Link object, or a list of them
    if isinstance(val, list):
        for item in val:
            if url := _get_image_url(item):
                return url
        return None

    if isinstance(val, str) and val:
        return val

    if isinstance(val, dict):
        url = val.get("url")
        if isinstance(url, (str, list, dict)):
            return _get_image_url(url)
        href = val.get("href")
        if isinstance(href, str) and href:
            return href

    return None


def _get_public_key(raw_actor: ap.RawObject) -> str | None:
    public_key = raw_actor.get("publicKey")
    if isinstance(public_key, list) and public_key:
        public_key = public_key[0]

    if isinstance(public_key, dict):
        pem = public_key.get("publicKeyPem")
        if isinstance(pem, str):
            return pem

    return None


def _update_actor(actor: models.Actor, attrs: dict[str, Any]) -> None:
    for name, value in attrs.items():
        setattr(actor, name, value)


async def _upsert_actor(
    db_session: AsyncSession,
    existing_actor: models.Actor | None,
    attrs: dict[str, Any],
) -> models.Actor:
    if existing_actor is not None:
        actor = existing_actor
        _update_actor(actor, attrs)
    else:
        actor = models.Actor(**attrs)
        db_session.add(actor)

    try:
        await db_session.commit()
    except IntegrityError as integrity_error:
        # Concurrent resolutions may race to insert the same actor, or a
        # variant of its URI (like with a trailing slash)
        await db_session.rollback()
        logger.info(f"Conflict while caching {attrs['uri']}, recovering")
        return await _recover_actor_conflict(db_session, attrs, integrity_error)

    return actor


async def _recover_actor_conflict(
    db_session: AsyncSession,
    attrs: dict[str, Any],
    integrity_error: IntegrityError,
) -> models.Actor:
    actor = await get_actor_by_uri(
        db_session, attrs["uri"]
    ) or await get_actor_by_username_and_domain(
        db_session, attrs["username"], attrs["domain"]
    )
    if actor is None:
        raise integrity_error

    actor_id = actor.id
    _update_actor(actor, attrs)
    try:
        await db_session.commit()
        return actor
    except IntegrityError:
        await db_session.rollback()

    # The identity of the row conflicts with another one, only refresh the
    # rest of the attributes
    actor = await get_actor_by_id(db_session, actor_id)
    if actor is None:
        raise integrity_error

    _update_actor(
        actor, {k: v for k, v in attrs.items() if k not in _IDENTITY_FIELDS}
    )
    try:
        await db_session.commit()
        return actor
    except IntegrityError:
        await db_session.rollback()
        logger.warning(f"Failed to refresh actor {actor_id}, returning stale row")

    stale_actor = await get_actor_by_id(db_session, actor_id)
    if stale_actor is None:
        raise integrity_error

    return stale_actor


def _spawn_emoji_processing(tags: Any, domain: str) -> None:
    if not isinstance(tags, list) or not tags:
        return None

    task = asyncio.create_task(_process_emojis(tags, domain))
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)


async def _process_emojis(tags: list[Any], domain: str) -> None:
    try:
        async with async_session() as db_session:
            emojis = await process_ap_tags(db_session, tags, domain)
            logger.debug(f"Cached {len(emojis)} emojis from {domain}")
    except Exception:
        logger.exception(f"Failed to process emojis from {domain}")


async def wait_for_background_tasks() -> None:
    if _BACKGROUND_TASKS:
        await asyncio.gather(*_BACKGROUND_TASKS, return_exceptions=True)

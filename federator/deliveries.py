import typing
from datetime import timedelta

from loguru import logger
from sqlalchemy import delete
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy.orm import joinedload

from federator import activitypub as ap
from federator import models
from federator.database import AsyncSession
from federator.utils.datetime import now

if typing.TYPE_CHECKING:
    from federator.outgoing_deliveries import DeliveryQueue

MAX_ATTEMPTS = 10
FAILED_DELIVERIES_RETENTION_DAYS = 7

# Minutes to wait before the next attempt, indexed by the number of attempts
_RETRY_BACKOFF_MINUTES = {
    1: 5,
    2: 15,
    3: 60,
    4: 180,
    5: 720,
    6: 1440,
}


def next_retry_delay(attempts: int) -> timedelta | None:
    """Returns `None` once the backoff table is exhausted, the row is then
    retried at the sweep cadence until it reaches `MAX_ATTEMPTS`."""
    minutes = _RETRY_BACKOFF_MINUTES.get(attempts)
    if minutes is None:
        return None

    return timedelta(minutes=minutes)


async def create_activity(
    db_session: AsyncSession,
    ap_object: ap.RawObject,
    is_local: bool = True,
) -> models.Activity:
    object_id = None
    if (raw_object := ap_object.get("object")) is not None:
        try:
            object_id = ap.get_id(raw_object)
        except (KeyError, ValueError):
            object_id = None

    activity = models.Activity(
        ap_id=ap.get_id(ap_object),
        activity_type=ap.as_list(ap_object["type"])[0],
        actor_uri=ap.get_id(ap_object["actor"]),
        object_id=object_id,
        data=ap_object,
        is_local=is_local,
    )
    db_session.add(activity)
    await db_session.commit()
    return activity


async def get_activity_by_ap_id(
    db_session: AsyncSession,
    ap_id: str,
) -> models.Activity | None:
    return (
        await db_session.execute(
            select(models.Activity).where(models.Activity.ap_id == ap_id)
        )
    ).scalar_one_or_none()


async def create_deliveries(
    db_session: AsyncSession,
    activity_id: int,
    inbox_urls: typing.Iterable[str | None],
    queue: typing.Optional["DeliveryQueue"] = None,
) -> tuple[int, list[models.Delivery]]:
    """Creates one pending delivery per inbox and enqueues them.

    Inboxes already targeted for the activity are skipped.

    The queue only lives in the delivery worker process. Callers in other
    processes pass no queue, the rows are then picked up by the periodic
    sweep of the worker (`DELIVERY_SWEEP_INTERVAL_SECONDS`).
    """
    unique_inbox_urls: list[str] = []
    for inbox_url in inbox_urls:
        if isinstance(inbox_url, str) and inbox_url and (
            inbox_url not in unique_inbox_urls
        ):
            unique_inbox_urls.append(inbox_url)

    if not unique_inbox_urls:
        return 0, []

    already_targeted = set(
        (
            await db_session.scalars(
                select(models.Delivery.inbox_url).where(
                    models.Delivery.activity_id == activity_id,
                    models.Delivery.inbox_url.in_(unique_inbox_urls),
                )
            )
        ).all()
    )

    deliveries = [
        models.Delivery(
            activity_id=activity_id,
            inbox_url=inbox_url,
            status=models.DeliveryStatus.PENDING,
            attempts=0,
        )
        for inbox_url in unique_inbox_urls
        if inbox_url not in already_targeted
    ]
    if not deliveries:
        return 0, []

    db_session.add_all(deliveries)
    await db_session.flush()
    await db_session.commit()

    delivery_ids = [delivery.id for delivery in deliveries]
    logger.info(f"Created {len(deliveries)} deliveries for {activity_id=}")

    if queue is not None:
        try:
            queue.enqueue_many(delivery_ids)
        except Exception:
            # The retry sweep will pick them up
            logger.exception(f"Failed to enqueue deliveries {delivery_ids}")

    return len(deliveries), deliveries


async def get_delivery(
    db_session: AsyncSession,
    delivery_id: int,
) -> models.Delivery | None:
    return (
        await db_session.execute(
            select(models.Delivery)
            .where(models.Delivery.id == delivery_id)
            .options(joinedload(models.Delivery.activity))
        )
    ).scalar_one_or_none()


def _retryable_conditions() -> list[typing.Any]:
    return [
        models.Delivery.status == models.DeliveryStatus.PENDING,
        or_(
            models.Delivery.next_retry_at.is_(None),
            models.Delivery.next_retry_at <= now(),
        ),
        models.Delivery.attempts < MAX_ATTEMPTS,
    ]


async def get_pending_deliveries(
    db_session: AsyncSession,
    limit: int = 100,
) -> list[models.Delivery]:
    return list(
        (
            await db_session.scalars(
                select(models.Delivery)
                .where(*_retryable_conditions())
                .options(joinedload(models.Delivery.activity))
                .limit(limit)
            )
        )
        .unique()
        .all()
    )


async def get_retryable_delivery_ids(
    db_session: AsyncSession,
    limit: int = 500,
) -> list[int]:
    return list(
        (
            await db_session.scalars(
                select(models.Delivery.id)
                .where(*_retryable_conditions())
                .order_by(models.Delivery.updated_at.asc(), models.Delivery.id.asc())
                .limit(limit)
            )
        ).all()
    )


async def _get_pending_delivery_for_update(
    db_session: AsyncSession,
    delivery_id: int,
    next_status: models.DeliveryStatus,
) -> models.Delivery | None:
    delivery = (
        await db_session.execute(
            select(models.Delivery)
            .where(models.Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if delivery is None:
        logger.warning(f"Delivery {delivery_id} does not exist")
        return None

    if delivery.status != models.DeliveryStatus.PENDING:
        logger.info(
            f"Not marking delivery {delivery_id} as {next_status.value}, "
            f"already {delivery.status.value}"
        )
        return None

    return delivery


async def mark_delivery_delivered(
    db_session: AsyncSession,
    delivery_id: int,
) -> models.Delivery | None:
    delivery = await _get_pending_delivery_for_update(
        db_session, delivery_id, models.DeliveryStatus.DELIVERED
    )
    if delivery is None:
        return None

    delivery.status = models.DeliveryStatus.DELIVERED
    delivery.last_attempt_at = now()
    await db_session.commit()

    logger.info(f"Delivered {delivery_id} to {delivery.inbox_url}")
    return delivery


async def mark_delivery_failed(
    db_session: AsyncSession,
    delivery_id: int,
    error_message: str,
) -> models.Delivery | None:
    delivery = await _get_pending_delivery_for_update(
        db_session, delivery_id, models.DeliveryStatus.FAILED
    )
    if delivery is None:
        return None

    attempts = delivery.attempts + 1
    current_time = now()
    if delay := next_retry_delay(attempts):
        next_retry_at = current_time + delay
    else:
        next_retry_at = None

    delivery.attempts = attempts
    delivery.last_attempt_at = current_time
    delivery.next_retry_at = next_retry_at
    delivery.error_message = error_message
    if attempts >= MAX_ATTEMPTS:
        delivery.status = models.DeliveryStatus.FAILED
        logger.warning(
            f"Giving up on delivery {delivery_id} to {delivery.inbox_url} "
            f"after {attempts} attempts"
        )
    else:
        delivery.status = models.DeliveryStatus.PENDING
        logger.info(
            f"Delivery {delivery_id} to {delivery.inbox_url} failed "
            f"({attempts=}, {next_retry_at=}): {error_message}"
        )

    await db_session.commit()
    return delivery


async def cleanup_old_deliveries(db_session: AsyncSession) -> int:
    result = await db_session.execute(
        delete(models.Delivery)
        .where(
            models.Delivery.status == models.DeliveryStatus.FAILED,
            models.Delivery.created_at
            < now() - timedelta(days=FAILED_DELIVERIES_RETENTION_DAYS),
        )
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    count = result.rowcount  # type: ignore
    logger.info(f"Deleted {count} old failed deliveries")
    return count

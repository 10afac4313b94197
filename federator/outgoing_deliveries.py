import asyncio
from datetime import timedelta
from typing import Iterable

import httpx
from loguru import logger

from federator import activitypub as ap
from federator import deliveries
from federator import models
from federator.actor import get_actor_by_uri
from federator.config import DELIVERY_SWEEP_INTERVAL_SECONDS
from federator.config import DELIVERY_SWEEP_LIMIT
from federator.config import DELIVERY_WORKERS
from federator.database import AsyncSession
from federator.database import async_session
from federator.domain_throttler import DomainThrottledError
from federator.domain_throttler import DomainThrottler
from federator.httpsig import HTTPXSigAuth
from federator.key import get_actor_key
from federator.prune import prune_old_data
from federator.utils.datetime import now
from federator.utils.url import InvalidURLError
from federator.utils.url import get_host
from federator.utils.workers import Worker

DELIVERY_TIMEOUT = 30.0
_PRUNE_INTERVAL = timedelta(days=1)
_MAX_ERROR_MESSAGE_LENGTH = 1000


class DeliveryQueue:
    """In-process queue of delivery IDs.

    A delivery already waiting in the queue is not enqueued twice, the row
    in DB stays the source of truth so jobs are processed at least once.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._queued: set[int] = set()

    def enqueue(self, delivery_id: int) -> bool:
        if delivery_id in self._queued:
            return False

        self._queued.add(delivery_id)
        self._queue.put_nowait(delivery_id)
        return True

    def enqueue_many(self, delivery_ids: Iterable[int]) -> int:
        return sum(1 for delivery_id in delivery_ids if self.enqueue(delivery_id))

    async def get(self, timeout: float | None = None) -> int | None:
        try:
            delivery_id = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        self._queued.discard(delivery_id)
        return delivery_id

    def qsize(self) -> int:
        return self._queue.qsize()


async def _get_sig_auth(db_session: AsyncSession, actor_uri: str) -> HTTPXSigAuth:
    """Sign with the key of the local actor that emitted the activity, or
    fallback to the instance key."""
    actor = await get_actor_by_uri(db_session, actor_uri)
    if actor and (key := get_actor_key(actor)):
        return HTTPXSigAuth(key)

    return HTTPXSigAuth()


def _format_error(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        error_message = f"HTTP {exc.response.status_code}: {exc.response.text}"
    else:
        error_message = f"{type(exc).__name__}: {exc}"

    return error_message[:_MAX_ERROR_MESSAGE_LENGTH]


async def process_delivery(
    db_session: AsyncSession,
    delivery_id: int,
    throttler: DomainThrottler | None = None,
) -> bool:
    """Makes a single delivery attempt, returns True if it was delivered.

    Raises `DomainThrottledError` without attempting anything if the domain
    of the inbox is throttled.
    """
    delivery = await deliveries.get_delivery(db_session, delivery_id)
    if delivery is None:
        logger.warning(f"Delivery {delivery_id} not found")
        return False

    if delivery.status != models.DeliveryStatus.PENDING:
        logger.debug(f"Delivery {delivery_id} already processed ({delivery.status})")
        return False

    domain = get_host(delivery.inbox_url) or delivery.inbox_url
    if throttler:
        throttler.acquire(domain)

    is_delivered = False
    try:
        is_delivered = await _post_delivery(db_session, delivery)
    finally:
        if throttler:
            throttler.release(domain, is_delivered)

    return is_delivered


async def _post_delivery(
    db_session: AsyncSession,
    delivery: models.Delivery,
) -> bool:
    delivery_id = delivery.id
    activity = delivery.activity
    logger.info(f"Delivering {activity.ap_id} to {delivery.inbox_url}")
    try:
        sig_auth = await _get_sig_auth(db_session, activity.actor_uri)
        await ap.post(
            delivery.inbox_url,
            activity.data,
            sig_auth=sig_auth,
            timeout=DELIVERY_TIMEOUT,
        )
    except (httpx.HTTPError, InvalidURLError, OSError) as exc:
        logger.warning(f"Failed to deliver {delivery_id}: {exc!r}")
        await deliveries.mark_delivery_failed(
            db_session, delivery_id, _format_error(exc)
        )
        return False
    except Exception as exc:
        logger.exception(f"Unexpected error while delivering {delivery_id}")
        await deliveries.mark_delivery_failed(
            db_session, delivery_id, _format_error(exc)
        )
        return False

    await deliveries.mark_delivery_delivered(db_session, delivery_id)
    return True


async def sweep_retryable_deliveries(
    db_session: AsyncSession,
    queue: DeliveryQueue,
    limit: int = DELIVERY_SWEEP_LIMIT,
) -> int:
    delivery_ids = await deliveries.get_retryable_delivery_ids(db_session, limit)
    enqueued = queue.enqueue_many(delivery_ids)
    if enqueued:
        logger.info(f"Enqueued {enqueued} retryable deliveries")
    return enqueued


class DeliveryWorker(Worker[int]):
    idle_sleep = 0.0

    def __init__(
        self,
        queue: DeliveryQueue,
        concurrency: int = DELIVERY_WORKERS,
        sweep_interval: float = DELIVERY_SWEEP_INTERVAL_SECONDS,
        throttler: DomainThrottler | None = None,
    ) -> None:
        super().__init__(concurrency)
        self.queue = queue
        self.throttler = throttler or DomainThrottler()
        self.sweep_interval = sweep_interval
        self._last_pruned_at = now()

    async def process_message(
        self,
        db_session: AsyncSession,
        delivery_id: int,
    ) -> None:
        try:
            await process_delivery(db_session, delivery_id, self.throttler)
        except DomainThrottledError as exc:
            logger.debug(f"Delaying delivery {delivery_id}: {exc}")
            asyncio.get_running_loop().call_later(
                exc.retry_in, self.queue.enqueue, delivery_id
            )

    async def get_next_message(
        self,
        db_session: AsyncSession,
    ) -> int | None:
        return await self.queue.get(timeout=1)

    async def startup(self, db_session: AsyncSession) -> None:
        # Pickup deliveries left over by a previous run
        await sweep_retryable_deliveries(db_session, self.queue)

    async def background_task(self) -> None:
        while not self.is_stopped:
            await asyncio.sleep(self.sweep_interval)
            try:
                async with async_session() as db_session:
                    await sweep_retryable_deliveries(db_session, self.queue)
                    if now() - self._last_pruned_at > _PRUNE_INTERVAL:
                        await prune_old_data(db_session)
                        self._last_pruned_at = now()
            except Exception:
                logger.exception("Failed to sweep deliveries")


async def loop() -> None:
    await DeliveryWorker(DeliveryQueue()).run_forever()


if __name__ == "__main__":
    asyncio.run(loop())

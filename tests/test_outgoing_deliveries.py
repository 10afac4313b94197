import asyncio
import json

import httpx
import pytest
import respx
from sqlalchemy import select

from federator import models
from federator.database import AsyncSession
from federator.deliveries import create_deliveries
from federator.domain_throttler import BUSY_RETRY_SECONDS
from federator.domain_throttler import DomainThrottledError
from federator.domain_throttler import DomainThrottler
from federator.outgoing_deliveries import DeliveryQueue
from federator.outgoing_deliveries import DeliveryWorker
from federator.outgoing_deliveries import process_delivery
from federator.outgoing_deliveries import sweep_retryable_deliveries
from tests import factories
from tests.utils import setup_activity
from tests.utils import setup_actor
from tests.utils import setup_delivery


async def _get_delivery(db_session: AsyncSession, delivery_id: int) -> models.Delivery:
    return (
        await db_session.execute(
            select(models.Delivery)
            .where(models.Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def test_process_delivery__server_202(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a pending delivery
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/inbox"
    )
    route = respx_mock.post("https://remote.example/inbox").mock(
        return_value=httpx.Response(202)
    )

    # When processing it
    assert await process_delivery(async_db_session, delivery.id) is True

    # Then the activity was posted with a signature
    assert route.call_count == 1
    request = route.calls.last.request
    assert json.loads(request.content) == activity.data
    assert request.headers["Content-Type"] == "application/activity+json"
    assert "Digest" in request.headers
    assert 'keyId="https://federator.test/actor#main-key"' in (
        request.headers["Signature"]
    )

    # And the delivery is done
    saved = await _get_delivery(async_db_session, delivery.id)
    assert saved.status == models.DeliveryStatus.DELIVERED
    assert saved.attempts == 0
    assert saved.last_attempt_at is not None


async def test_process_delivery__signed_by_local_actor(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a local group actor with its own keys
    private_key, public_key = factories.generate_key()
    group = await setup_actor(
        async_db_session,
        username="python",
        domain="federator.test",
        actor_type="Group",
        private_key=private_key,
        public_key=public_key,
        community_id=1,
    )
    # And an activity emitted by that group
    activity = await setup_activity(async_db_session, actor_uri=group.uri)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/inbox"
    )
    route = respx_mock.post("https://remote.example/inbox").mock(
        return_value=httpx.Response(200)
    )

    # When processing the delivery
    assert await process_delivery(async_db_session, delivery.id) is True

    # Then the request was signed with the group key
    signature = route.calls.last.request.headers["Signature"]
    assert f'keyId="{group.uri}#main-key"' in signature


async def test_process_delivery__server_500(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a pending delivery to a failing server
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/inbox"
    )
    respx_mock.post("https://remote.example/inbox").mock(
        return_value=httpx.Response(500, text="oops")
    )

    # When processing it
    assert await process_delivery(async_db_session, delivery.id) is False

    # Then the failure is recorded for a retry
    saved = await _get_delivery(async_db_session, delivery.id)
    assert saved.status == models.DeliveryStatus.PENDING
    assert saved.attempts == 1
    assert saved.next_retry_at is not None
    assert saved.error_message == "HTTP 500: oops"


async def test_process_delivery__connection_error(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a pending delivery to an unreachable server
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/inbox"
    )
    respx_mock.post("https://remote.example/inbox").mock(
        side_effect=httpx.ConnectError("connection refused")
    )

    # When processing it
    assert await process_delivery(async_db_session, delivery.id) is False

    # Then the failure is recorded
    saved = await _get_delivery(async_db_session, delivery.id)
    assert saved.attempts == 1
    assert saved.error_message is not None
    assert saved.error_message.startswith("ConnectError")


async def test_process_delivery__blocked_server(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a delivery to a blocked server
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://blocked.example/inbox"
    )

    # When processing it
    assert await process_delivery(async_db_session, delivery.id) is False

    # Then no request was made and the attempt is counted
    assert respx_mock.calls.call_count == 0
    saved = await _get_delivery(async_db_session, delivery.id)
    assert saved.attempts == 1
    assert saved.error_message is not None
    assert saved.error_message.startswith("InvalidURLError")


async def test_process_delivery__already_delivered(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a delivery already done
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, status=models.DeliveryStatus.DELIVERED
    )

    # When processing it again
    assert await process_delivery(async_db_session, delivery.id) is False

    # Then nothing happened
    assert respx_mock.calls.call_count == 0


async def test_process_delivery__unknown_delivery(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    assert await process_delivery(async_db_session, 1234) is False
    assert respx_mock.calls.call_count == 0


async def test_sweep_retryable_deliveries(async_db_session: AsyncSession) -> None:
    # Given two pending deliveries and a delivered one
    activity = await setup_activity(async_db_session)
    first = await setup_delivery(async_db_session, activity)
    second = await setup_delivery(async_db_session, activity)
    await setup_delivery(
        async_db_session, activity, status=models.DeliveryStatus.DELIVERED
    )
    queue = DeliveryQueue()

    # When sweeping
    enqueued = await sweep_retryable_deliveries(async_db_session, queue)

    # Then the pending ones were enqueued
    assert enqueued == 2
    assert queue.qsize() == 2

    # And sweeping again does not enqueue them twice
    assert await sweep_retryable_deliveries(async_db_session, queue) == 0
    assert {await queue.get(), await queue.get()} == {first.id, second.id}


async def test_sweep_retryable_deliveries__created_without_queue(
    async_db_session: AsyncSession,
) -> None:
    # Given deliveries created outside of the worker process
    activity = await setup_activity(async_db_session)
    _, created = await create_deliveries(
        async_db_session,
        activity.id,
        ["https://a.example/inbox", "https://b.example/inbox"],
    )
    queue = DeliveryQueue()
    assert queue.qsize() == 0

    # When the worker sweeps
    enqueued = await sweep_retryable_deliveries(async_db_session, queue)

    # Then they are enqueued
    assert enqueued == 2
    assert {await queue.get(), await queue.get()} == {d.id for d in created}


async def test_delivery_queue() -> None:
    queue = DeliveryQueue()

    assert queue.enqueue(1) is True
    assert queue.enqueue(1) is False
    assert queue.enqueue_many([1, 2, 3]) == 2
    assert queue.qsize() == 3

    assert await queue.get() == 1
    # Can be enqueued again once taken out
    assert queue.enqueue(1) is True

    assert await queue.get() == 2
    assert await queue.get() == 3
    assert await queue.get() == 1
    assert await queue.get(timeout=0.01) is None


async def test_delivery_worker(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a pending delivery left over by a previous run
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/inbox"
    )
    route = respx_mock.post("https://remote.example/inbox").mock(
        return_value=httpx.Response(202)
    )

    # When running the worker
    worker = DeliveryWorker(DeliveryQueue(), concurrency=2, sweep_interval=60)
    worker_task = asyncio.create_task(worker.run_forever())
    for _ in range(50):
        saved = await _get_delivery(async_db_session, delivery.id)
        if saved.status == models.DeliveryStatus.DELIVERED:
            break
        await asyncio.sleep(0.1)
    worker.stop()
    await asyncio.wait_for(worker_task, timeout=15)

    # Then the delivery was processed exactly once
    assert route.call_count == 1
    saved = await _get_delivery(async_db_session, delivery.id)
    assert saved.status == models.DeliveryStatus.DELIVERED


async def test_process_delivery__throttled_domain(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a pending delivery to a domain with all its slots taken
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://slow.example/inbox"
    )
    throttler = DomainThrottler(max_concurrent=1)
    throttler.acquire("slow.example")

    # When processing it
    with pytest.raises(DomainThrottledError):
        await process_delivery(async_db_session, delivery.id, throttler)

    # Then no request was made and no attempt was counted
    assert respx_mock.calls.call_count == 0
    saved = await _get_delivery(async_db_session, delivery.id)
    assert saved.status == models.DeliveryStatus.PENDING
    assert saved.attempts == 0


async def test_process_delivery__releases_domain_slot(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given two deliveries to the same domain, one of them failing
    activity = await setup_activity(async_db_session)
    ok_delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/inbox"
    )
    failing_delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://remote.example/users/a/inbox"
    )
    respx_mock.post("https://remote.example/inbox").mock(
        return_value=httpx.Response(202)
    )
    respx_mock.post("https://remote.example/users/a/inbox").mock(
        return_value=httpx.Response(500)
    )
    throttler = DomainThrottler(max_concurrent=1)

    # When processing them one after the other
    assert await process_delivery(async_db_session, ok_delivery.id, throttler)
    assert not await process_delivery(
        async_db_session, failing_delivery.id, throttler
    )

    # Then the slot was released each time
    assert throttler.in_flight("remote.example") == 0


async def test_delivery_worker__requeues_throttled_delivery(
    async_db_session: AsyncSession,
    respx_mock: respx.MockRouter,
) -> None:
    # Given a delivery to a domain with all its slots taken
    activity = await setup_activity(async_db_session)
    delivery = await setup_delivery(
        async_db_session, activity, inbox_url="https://slow.example/inbox"
    )
    throttler = DomainThrottler(max_concurrent=1)
    throttler.acquire("slow.example")
    queue = DeliveryQueue()
    worker = DeliveryWorker(queue, sweep_interval=60, throttler=throttler)

    # When the worker processes it
    await worker.process_message(async_db_session, delivery.id)

    # Then nothing was sent
    assert respx_mock.calls.call_count == 0

    # And the delivery is enqueued again after a short delay
    assert queue.qsize() == 0
    assert await queue.get(timeout=BUSY_RETRY_SECONDS + 2) == delivery.id

import httpx
import respx

from federator import activitypub as ap
from federator import models
from federator.database import AsyncSession
from tests import factories


def setup_remote_actor(
    respx_mock: respx.MockRouter,
    base_url: str = "https://example.social/users/alice",
    **kwargs,
) -> tuple[ap.RawObject, respx.Route]:
    raw_actor = factories.RemoteActorFactory(base_url=base_url, **kwargs)
    route = respx_mock.get(base_url).mock(
        return_value=httpx.Response(200, json=raw_actor)
    )
    return raw_actor, route


async def setup_actor(
    db_session: AsyncSession,
    **kwargs,
) -> models.Actor:
    actor = factories.ActorFactory(**kwargs)
    db_session.add(actor)
    await db_session.commit()
    return actor


async def setup_activity(
    db_session: AsyncSession,
    **kwargs,
) -> models.Activity:
    activity = factories.ActivityFactory(**kwargs)
    db_session.add(activity)
    await db_session.commit()
    return activity


async def setup_delivery(
    db_session: AsyncSession,
    activity: models.Activity,
    **kwargs,
) -> models.Delivery:
    delivery = factories.DeliveryFactory(activity_id=activity.id, **kwargs)
    db_session.add(delivery)
    await db_session.commit()
    return delivery

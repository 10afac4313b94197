from sqlalchemy import func
from sqlalchemy import select

from federator import models
from federator.database import AsyncSession
from federator.instances import block_for_user
from federator.instances import block_instance
from federator.instances import get_or_create_instance
from federator.instances import is_blocked_by_user
from federator.instances import is_instance_blocked


async def test_get_or_create_instance(async_db_session: AsyncSession) -> None:
    # When getting the same instance twice
    first = await get_or_create_instance(async_db_session, "example.social")
    second = await get_or_create_instance(async_db_session, "example.social")

    # Then a single row exists
    assert first.id == second.id
    count = await async_db_session.scalar(select(func.count(models.Instance.id)))
    assert count == 1
    assert first.blocked is False
    assert set(models.Instance.__table__.columns.keys()) == {
        "id",
        "created_at",
        "updated_at",
        "domain",
        "blocked",
        "reason",
        "blocked_by_id",
        "blocked_at",
    }


async def test_block_instance(async_db_session: AsyncSession) -> None:
    # Given an unknown instance
    assert await is_instance_blocked(async_db_session, "spam.example") is False

    # When blocking it
    instance = await block_instance(async_db_session, "spam.example", "spam", 1)

    # Then it is blocked
    assert await is_instance_blocked(async_db_session, "spam.example") is True
    assert instance.reason == "spam"
    assert instance.blocked_by_id == 1
    assert instance.blocked_at is not None
    assert await is_instance_blocked(async_db_session, "example.social") is False


async def test_is_blocked_by_user(async_db_session: AsyncSession) -> None:
    # Given a user blocking an actor and a domain
    await block_for_user(async_db_session, 1, "https://example.social/users/alice")
    await block_for_user(
        async_db_session, 1, "spam.example", block_type=models.BlockType.DOMAIN
    )

    # Then the blocked actor and any actor of the blocked domain are matched
    assert await is_blocked_by_user(
        async_db_session, 1, "https://example.social/users/alice"
    )
    assert await is_blocked_by_user(
        async_db_session, 1, "https://spam.example/users/bob"
    )
    assert not await is_blocked_by_user(
        async_db_session, 1, "https://example.social/users/bob"
    )

    # And blocks are per user
    assert not await is_blocked_by_user(
        async_db_session, 2, "https://example.social/users/alice"
    )


async def test_is_blocked_by_user__user_block_on_a_domain_string(
    async_db_session: AsyncSession,
) -> None:
    # Given a user block whose URI happens to be a bare domain
    await block_for_user(async_db_session, 1, "spam.example")

    # Then it does not block the whole domain
    assert not await is_blocked_by_user(
        async_db_session, 1, "https://spam.example/users/bob"
    )

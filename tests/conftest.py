import os

os.environ.setdefault("FEDERATOR_CONFIG_FILE", "tests.toml")

import pytest  # noqa: E402

from federator import models  # noqa: E402, F401
from federator.actor import clear_actor_cache  # noqa: E402
from federator.actor import wait_for_background_tasks  # noqa: E402
from federator.database import Base  # noqa: E402
from federator.database import async_engine  # noqa: E402
from federator.database import async_session  # noqa: E402


@pytest.fixture
async def async_db_session():
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with async_session() as session:
        yield session
    await wait_for_background_tasks()
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await async_engine.dispose()


@pytest.fixture(autouse=True)
def clear_caches():
    clear_actor_cache()
    yield
    clear_actor_cache()

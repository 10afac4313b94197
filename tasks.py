import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Generator
from typing import Optional

from invoke import Context  # type: ignore
from invoke import run  # type: ignore
from invoke import task  # type: ignore


@task
def init_db(ctx):
    # type: (Context) -> None
    from federator.database import Base
    from federator.database import async_engine
    from federator import models  # noqa: F401

    async def _create_all() -> None:
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await async_engine.dispose()

    asyncio.run(_create_all())
    print("Database initialized")


@task
def autoformat(ctx):
    # type: (Context) -> None
    run("black .", echo=True)
    run("isort -sl .", echo=True)


@task
def lint(ctx):
    # type: (Context) -> None
    run("black --check .", echo=True)
    run("isort -sl --check-only .", echo=True)
    run("flake8 .", echo=True)
    run("mypy .", echo=True)


@task
def tests(ctx, k=None):
    # type: (Context, Optional[str]) -> None
    pytest_args = " -vvv"
    if k:
        pytest_args += f" -k {k}"
    run(
        f"FEDERATOR_CONFIG_FILE=tests.toml pytest tests{pytest_args}",
        pty=True,
        echo=True,
    )


@task
def process_deliveries(ctx):
    # type: (Context) -> None
    from federator.outgoing_deliveries import loop

    asyncio.run(loop())


@task
def prune_old_data(ctx):
    # type: (Context) -> None
    from federator.prune import run_prune_old_data

    asyncio.run(run_prune_old_data())


@contextmanager
def embed_version() -> Generator[None, None, None]:
    from federator.utils.version import get_version_commit

    version_file = Path("federator/_version.py")
    version_file.unlink(missing_ok=True)
    version_commit = get_version_commit()
    version_file.write_text(f'VERSION_COMMIT = "{version_commit}"')
    try:
        yield
    finally:
        version_file.unlink()


@task
def build(ctx):
    # type: (Context) -> None
    with embed_version():
        run("python -m build", echo=True)


@task
def resolve_actor(ctx, uri):
    # type: (Context, str) -> None
    import traceback

    from loguru import logger

    from federator.actor import resolve
    from federator.actor import wait_for_background_tasks
    from federator.database import async_session

    logger.disable("federator")

    async def _resolve() -> None:
        async with async_session() as db_session:
            actor = await resolve(db_session, uri)
            print(f"SUCCESS: {actor.handle} ({actor.actor_type})")
            print(f"inbox={actor.inbox_url}")
        await wait_for_background_tasks()

    print(f"Resolving {uri}")
    try:
        asyncio.run(_resolve())
    except Exception as exc:
        print(f"ERROR: Failed to resolve {uri}")
        print("".join(traceback.format_exception(exc)))


@task
def resolve_replies(ctx, url, limit=10):
    # type: (Context, str, int) -> None
    from loguru import logger

    from federator import activitypub as ap
    from federator.replies import resolve_replies as _resolve_replies

    logger.disable("federator")

    async def _resolve() -> None:
        post_object = await ap.fetch_object(url)
        replies = await _resolve_replies(post_object, limit=int(limit))
        print(f"Found {len(replies)} replies for {url}")
        for reply in replies:
            print(f"- {reply.get('id')} (in reply to {reply.get('inReplyTo')})")

    asyncio.run(_resolve())


@task
def check_config(ctx):
    # type: (Context) -> None
    import sys
    import traceback

    from loguru import logger

    logger.disable("federator")

    try:
        from federator import config  # noqa: F401
    except Exception as exc:
        print("Config error, please fix data/federator.toml:\n")
        print("".join(traceback.format_exception(exc)))
        sys.exit(1)
    else:
        print("Config is OK")

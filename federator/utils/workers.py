import asyncio
import signal
from typing import Generic
from typing import TypeVar

from loguru import logger

from federator.database import AsyncSession
from federator.database import async_session

T = TypeVar("T")


class Worker(Generic[T]):
    """Runs `concurrency` consumer loops, each with its own DB session."""

    idle_sleep: float = 2.0

    def __init__(self, concurrency: int = 1) -> None:
        self.concurrency = max(concurrency, 1)
        self._stop_event = asyncio.Event()

    async def process_message(self, db_session: AsyncSession, message: T) -> None:
        raise NotImplementedError

    async def get_next_message(self, db_session: AsyncSession) -> T | None:
        raise NotImplementedError

    async def startup(self, db_session: AsyncSession) -> None:
        return None

    async def background_task(self) -> None:
        """Runs alongside the consumer loops until the worker is stopped."""
        await self._stop_event.wait()

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    async def _main_loop(self, worker_id: int) -> None:
        async with async_session() as db_session:
            while not self._stop_event.is_set():
                next_message = await self.get_next_message(db_session)
                if next_message is not None:
                    try:
                        await self.process_message(db_session, next_message)
                    except Exception:
                        logger.exception(f"worker {worker_id} failed to process")
                        await db_session.rollback()
                else:
                    await asyncio.sleep(self.idle_sleep)

    async def _until_stopped(self) -> None:
        await self._stop_event.wait()

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        signals = (signal.SIGHUP, signal.SIGTERM, signal.SIGINT)
        for s in signals:
            loop.add_signal_handler(
                s,
                lambda s=s: asyncio.create_task(self._shutdown(s)),
            )

        async with async_session() as db_session:
            await self.startup(db_session)

        tasks = {
            loop.create_task(self._main_loop(worker_id))
            for worker_id in range(self.concurrency)
        }
        tasks.add(loop.create_task(self.background_task()))
        stop_task = loop.create_task(self._until_stopped())

        done, pending = await asyncio.wait(
            tasks | {stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        logger.info(f"Waiting for tasks to finish {done=}/{pending=}")
        for task in pending:
            task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*pending, return_exceptions=True),
                timeout=15,
            )
        except asyncio.TimeoutError:
            logger.info("Tasks failed to cancel")

        logger.info("stopping loop")

    async def _shutdown(self, sig: signal.Signals) -> None:
        logger.info(f"Caught {sig=}")
        self._stop_event.set()

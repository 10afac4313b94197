import asyncio
from typing import Awaitable
from typing import Callable
from typing import Generic
from typing import Hashable
from typing import TypeVar

from cachetools import TTLCache
from loguru import logger

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Coalesce concurrent calls for the same key into a single call.

    Successful results are kept for `ttl` seconds, failures are never cached
    and are raised to every caller waiting on the same key.
    """

    def __init__(self, name: str, ttl: float, maxsize: int = 1024) -> None:
        self.name = name
        self._cache: TTLCache[Hashable, T] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._in_flight: dict[Hashable, asyncio.Task[T]] = {}
        self._lock = asyncio.Lock()

    async def get_or_run(
        self,
        key: Hashable,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        async with self._lock:
            try:
                return self._cache[key]
            except KeyError:
                pass

            task = self._in_flight.get(key)
            if task is None:
                logger.debug(f"{self.name}: starting call for {key}")
                task = asyncio.ensure_future(self._run(key, func))
                self._in_flight[key] = task
            else:
                logger.debug(f"{self.name}: joining in-flight call for {key}")

        # Shielded so a cancelled caller does not cancel the other waiters
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await func()
        except BaseException:
            async with self._lock:
                self._in_flight.pop(key, None)
            raise

        async with self._lock:
            self._cache[key] = result
            self._in_flight.pop(key, None)

        return result

    def invalidate(self, key: Hashable) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()
        self._in_flight.clear()
        self._lock = asyncio.Lock()

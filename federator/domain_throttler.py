import time
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from federator.config import DELIVERY_MAX_CONCURRENT_PER_DOMAIN

# Consecutive failures before a domain is put in backoff
FAILURE_THRESHOLD = 5
BASE_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 120.0

# Delay before retrying when all the slots of a domain are taken
BUSY_RETRY_SECONDS = 1.0


class DomainThrottledError(Exception):
    def __init__(self, domain: str, retry_in: float) -> None:
        super().__init__(f"{domain} is throttled, retry in {retry_in:.1f}s")
        self.domain = domain
        self.retry_in = retry_in


@dataclass
class _DomainState:
    in_flight: int = 0
    failures: int = 0
    last_failure_at: float = 0.0


def backoff_seconds(failures: int) -> float:
    if failures < FAILURE_THRESHOLD:
        return 0.0

    return min(
        BASE_BACKOFF_SECONDS * 2 ** (failures - FAILURE_THRESHOLD),
        MAX_BACKOFF_SECONDS,
    )


class DomainThrottler:
    """Limits the concurrent deliveries per domain, and backs off from
    domains that keep failing so a dead server cannot hold every worker.

    `acquire` never waits, it raises `DomainThrottledError` with the delay
    after which the caller should try again.
    """

    def __init__(
        self,
        max_concurrent: int = DELIVERY_MAX_CONCURRENT_PER_DOMAIN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_concurrent = max(max_concurrent, 1)
        self._clock = clock
        self._domains: dict[str, _DomainState] = {}

    def acquire(self, domain: str) -> None:
        state = self._domains.setdefault(domain, _DomainState())

        remaining_backoff = self.backoff_remaining(domain)
        if remaining_backoff > 0:
            raise DomainThrottledError(domain, remaining_backoff)

        if state.in_flight >= self.max_concurrent:
            raise DomainThrottledError(domain, BUSY_RETRY_SECONDS)

        state.in_flight += 1

    def release(self, domain: str, success: bool) -> None:
        state = self._domains.get(domain)
        if state is None:
            return None

        state.in_flight = max(state.in_flight - 1, 0)
        if success:
            state.failures = max(state.failures - 1, 0)
        else:
            state.failures += 1
            state.last_failure_at = self._clock()
            if state.failures == FAILURE_THRESHOLD:
                logger.warning(f"Backing off from {domain} after repeated failures")

        if state.in_flight == 0 and state.failures == 0:
            del self._domains[domain]

    def backoff_remaining(self, domain: str) -> float:
        state = self._domains.get(domain)
        if state is None:
            return 0.0

        backoff = backoff_seconds(state.failures)
        if not backoff:
            return 0.0

        return max(backoff - (self._clock() - state.last_failure_at), 0.0)

    def in_flight(self, domain: str) -> int:
        state = self._domains.get(domain)
        return state.in_flight if state else 0

import asyncio
from unittest import mock

import pytest

from federator.utils.datetime import maybe_parse_isoformat
from federator.utils.emoji import extract_image_url
from federator.utils.emoji import extract_shortcode
from federator.utils.single_flight import SingleFlight
from federator.utils.url import is_hostname_blocked


@pytest.mark.parametrize(
    "hostname,should_be_blocked",
    [
        ("example.com", True),
        ("subdomain.example.com", True),
        ("example.xyz", False),
    ],
)
def test_is_hostname_blocked(hostname: str, should_be_blocked: bool) -> None:
    with mock.patch("federator.utils.url.BLOCKED_SERVERS", ["example.com"]):
        is_hostname_blocked.cache_clear()
        assert is_hostname_blocked(hostname) is should_be_blocked
    is_hostname_blocked.cache_clear()


@pytest.mark.parametrize(
    "name,expected",
    [
        (":blobcat:", "blobcat"),
        ("blobcat", "blobcat"),
        (" :blob_cat_2: ", "blob_cat_2"),
        ("::", None),
        (":not valid:", None),
        (None, None),
    ],
)
def test_extract_shortcode(name: str | None, expected: str | None) -> None:
    assert extract_shortcode(name) == expected


def test_extract_image_url() -> None:
    assert (
        extract_image_url({"icon": {"type": "Image", "url": "https://a.example/e"}})
        == "https://a.example/e"
    )
    assert extract_image_url({"icon": "https://a.example/e"}) == "https://a.example/e"
    assert extract_image_url({"icon": {"type": "Image"}}) is None
    assert extract_image_url({}) is None


def test_maybe_parse_isoformat() -> None:
    dt = maybe_parse_isoformat("2022-03-04T06:06:07.5+01:00")
    assert dt is not None
    assert dt.isoformat() == "2022-03-04T05:06:07+00:00"
    assert maybe_parse_isoformat("yesterday") is None
    assert maybe_parse_isoformat(None) is None


async def test_single_flight__coalesces_concurrent_calls() -> None:
    # Given a slow call
    calls = 0

    async def slow_call() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.05)
        return "result"

    single_flight: SingleFlight[str] = SingleFlight("test", ttl=60)

    # When it is requested concurrently
    results = await asyncio.gather(
        *[single_flight.get_or_run("key", slow_call) for _ in range(5)]
    )

    # Then it ran once
    assert results == ["result"] * 5
    assert calls == 1

    # And the result is cached
    assert await single_flight.get_or_run("key", slow_call) == "result"
    assert calls == 1

    # Until it is invalidated
    single_flight.invalidate("key")
    assert await single_flight.get_or_run("key", slow_call) == "result"
    assert calls == 2


async def test_single_flight__failures_are_not_cached() -> None:
    # Given a call failing once
    calls = 0

    async def flaky_call() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        if calls == 1:
            raise ValueError("boom")
        return "result"

    single_flight: SingleFlight[str] = SingleFlight("test", ttl=60)

    # When the concurrent callers share the failure
    results = await asyncio.gather(
        single_flight.get_or_run("key", flaky_call),
        single_flight.get_or_run("key", flaky_call),
        return_exceptions=True,
    )
    assert all(isinstance(result, ValueError) for result in results)
    assert calls == 1

    # Then the next call runs again
    assert await single_flight.get_or_run("key", flaky_call) == "result"
    assert calls == 2


async def test_single_flight__keys_are_independent() -> None:
    single_flight: SingleFlight[str] = SingleFlight("test", ttl=60)

    async def call(val: str) -> str:
        return val

    assert await single_flight.get_or_run("a", lambda: call("a")) == "a"
    assert await single_flight.get_or_run("b", lambda: call("b")) == "b"
    assert await single_flight.get_or_run("a", lambda: call("other")) == "a"

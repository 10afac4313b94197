import json
from typing import Any

import httpx
from loguru import logger

from federator import config
from federator.utils.url import InvalidURLError
from federator.utils.url import check_url

DEFAULT_TIMEOUT = 10.0


class RemoteApiError(Exception):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Request to {url} failed: {reason}")
        self.url = url
        self.reason = reason


async def get_json(
    url: str,
    params: dict[str, Any] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """GET a JSON document from a (non-ActivityPub) REST API."""
    logger.info(f"GET {url} ({params=})")
    try:
        check_url(url)
    except (InvalidURLError, OSError) as exc:
        raise RemoteApiError(url, "invalid URL") from exc

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(
                url,
                headers={
                    "User-Agent": config.USER_AGENT,
                    "Accept": "application/json",
                },
                params=params,
                follow_redirects=True,
            )
        resp.raise_for_status()
    except httpx.HTTPStatusError as http_error:
        raise RemoteApiError(
            url, f"HTTP {http_error.response.status_code}"
        ) from http_error
    except httpx.HTTPError as http_error:
        raise RemoteApiError(url, type(http_error).__name__) from http_error

    try:
        return resp.json()
    except json.JSONDecodeError as exc:
        raise RemoteApiError(url, "invalid JSON") from exc


async def maybe_get_json(
    url: str,
    params: dict[str, Any] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any | None:
    """Like `get_json` but returns `None` on failure."""
    try:
        return await get_json(url, params=params, timeout=timeout)
    except RemoteApiError as exc:
        logger.warning(str(exc))
        return None

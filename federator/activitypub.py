import json
from typing import Any

import httpx
from loguru import logger

from federator import config
from federator.httpsig import HTTPXSigAuth
from federator.httpsig import auth
from federator.utils.url import InvalidURLError
from federator.utils.url import check_url

RawObject = dict[str, Any]
AS_CTX = "https://www.w3.org/ns/activitystreams"
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"

ACTOR_TYPES = ["Application", "Group", "Organization", "Person", "Service"]
REPLY_TYPES = ["Note", "Article", "Page"]

FETCH_TIMEOUT = 10.0
POST_TIMEOUT = 30.0


class FetchError(Exception):
    def __init__(self, url: str, resp: httpx.Response | None = None) -> None:
        resp_part = ""
        if resp is not None:
            resp_part = f", got HTTP {resp.status_code}: {resp.text}"
        message = f"Failed to fetch {url}{resp_part}"
        super().__init__(message)
        self.resp = resp
        self.url = url


class ObjectIsGoneError(FetchError):
    pass


class ObjectNotFoundError(FetchError):
    pass


class ObjectUnavailableError(FetchError):
    pass


class NotAnObjectError(FetchError):
    def __init__(self, url: str, resp: httpx.Response | None = None) -> None:
        super().__init__(url, resp)
        self.args = (f"{url} is not an AP object",)


async def fetch(
    url: str,
    params: dict[str, Any] | None = None,
    sign: bool = False,
) -> RawObject:
    logger.info(f"Fetching {url} ({params=}, {sign=})")
    try:
        check_url(url)
    except (InvalidURLError, OSError) as exc:
        raise FetchError(url) from exc

    try:
        async with httpx.AsyncClient(timeout=FETCH_TIMEOUT) as client:
            resp = await client.get(
                url,
                headers={
                    "User-Agent": config.USER_AGENT,
                    "Accept": config.AP_CONTENT_TYPE,
                },
                params=params,
                follow_redirects=True,
                auth=auth if sign else None,
            )
    except httpx.HTTPError as http_error:
        raise FetchError(url) from http_error

    # Special handling for deleted object
    if resp.status_code == 410:
        raise ObjectIsGoneError(url, resp)
    elif resp.status_code in [401, 403]:
        raise ObjectUnavailableError(url, resp)
    elif resp.status_code == 404:
        raise ObjectNotFoundError(url, resp)

    try:
        resp.raise_for_status()
    except httpx.HTTPError as http_error:
        raise FetchError(url, resp) from http_error

    try:
        payload = resp.json()
    except json.JSONDecodeError:
        raise NotAnObjectError(url, resp)

    if not isinstance(payload, dict):
        raise NotAnObjectError(url, resp)

    return payload


async def fetch_object(url: str) -> RawObject:
    """Fetch an AP object, retrying with a signed request when the remote
    server requires authorized fetches."""
    try:
        return await fetch(url, sign=config.SIGN_FETCHES)
    except ObjectUnavailableError:
        if config.SIGN_FETCHES:
            raise

        logger.info(f"Retrying {url} with a signed request")
        return await fetch(url, sign=True)


async def fetch_actor(url: str) -> RawObject:
    raw_actor = await fetch_object(url)
    if not isinstance(raw_actor.get("id"), str):
        raise NotAnObjectError(url)

    if raw_actor.get("type", "Person") not in ACTOR_TYPES:
        raise NotAnObjectError(url)

    return raw_actor


def as_list(val: Any | list[Any]) -> list[Any]:
    if val is None:
        return []

    if isinstance(val, list):
        return val

    return [val]


def get_id(val: str | dict[str, Any]) -> str:
    if isinstance(val, dict):
        val = val["id"]

    if not isinstance(val, str):
        raise ValueError(f"Invalid ID type: {val}")

    return val


def remove_context(raw_object: RawObject) -> RawObject:
    if "@context" not in raw_object:
        return raw_object
    a = dict(raw_object)
    del a["@context"]
    return a


async def post(
    url: str,
    payload: dict[str, Any],
    sig_auth: HTTPXSigAuth | None = None,
    timeout: float = POST_TIMEOUT,
) -> httpx.Response:
    logger.info(f"Posting {url} ({payload.get('id')=})")
    check_url(url)

    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(
            url,
            headers={
                "User-Agent": config.USER_AGENT,
                "Content-Type": config.AP_CONTENT_TYPE,
            },
            json=payload,
            auth=sig_auth or auth,
        )
    resp.raise_for_status()
    return resp

"""Client for the Mastodon-compatible REST API (Mastodon, Pleroma, Akkoma,
GoToSocial, Pixelfed...)."""
import re
from typing import Any

import pydantic
from loguru import logger

from federator.utils.remote import RemoteApiError
from federator.utils.remote import get_json

MASTODON_API_TIMEOUT = 10.0

_STATUS_URL_PATTERNS = [
    # Mastodon/Pleroma/Akkoma/GoToSocial
    re.compile(r"https?://([^/]+)/users/[^/]+/statuses/([a-zA-Z0-9_-]+)"),
    # Mastodon web URL
    re.compile(r"https?://([^/]+)/@[^/]+/([a-zA-Z0-9_-]+)"),
    # Misskey/Calckey
    re.compile(r"https?://([^/]+)/notes/([a-zA-Z0-9]+)$"),
    # Pixelfed
    re.compile(r"https?://([^/]+)/p/[^/]+/(\d+)$"),
]


class MastodonApiError(Exception):
    pass


class NormalizedAccount(pydantic.BaseModel):
    id: str | None = None
    username: str | None = None
    acct: str | None = None
    display_name: str | None = None
    url: str | None = None
    uri: str | None = None
    avatar: str | None = None


class NormalizedStatus(pydantic.BaseModel):
    id: str | None = None
    uri: str | None = None
    url: str | None = None
    content: str | None = None
    account: NormalizedAccount | None = None
    created_at: str | None = None
    in_reply_to_id: str | None = None
    in_reply_to_uri: str | None = None
    favourites_count: int = 0
    reblogs_count: int = 0
    replies_count: int = 0


def extract_status_info(url: str) -> tuple[str, str] | None:
    """Returns the `(domain, status_id)` of a status URL."""
    for pattern in _STATUS_URL_PATTERNS:
        if m := pattern.search(url):
            return m.group(1), m.group(2)

    return None


def normalize_status_id(status_id: Any) -> str | None:
    if isinstance(status_id, bool):
        return None
    if isinstance(status_id, int):
        return str(status_id)
    if isinstance(status_id, str) and status_id:
        return status_id
    return None


def _str_or_none(val: Any) -> str | None:
    return val if isinstance(val, str) else None


def _count(val: Any) -> int:
    if isinstance(val, int) and not isinstance(val, bool):
        return max(val, 0)
    return 0


def build_status_id_to_uri_map(
    statuses: list[Any],
) -> dict[str, str]:
    id_to_uri: dict[str, str] = {}
    for status in statuses:
        if not isinstance(status, dict):
            continue

        status_id = normalize_status_id(status.get("id"))
        uri = status.get("uri") or status.get("url")
        if status_id and isinstance(uri, str) and uri:
            id_to_uri[status_id] = uri

    return id_to_uri


def normalize_account(account: Any) -> NormalizedAccount | None:
    if not isinstance(account, dict):
        return None

    return NormalizedAccount(
        id=normalize_status_id(account.get("id")),
        username=_str_or_none(account.get("username")),
        acct=_str_or_none(account.get("acct")),
        display_name=_str_or_none(account.get("display_name")),
        url=_str_or_none(account.get("url")),
        uri=_str_or_none(account.get("uri")),
        avatar=_str_or_none(account.get("avatar")),
    )


async def fetch_status_context(post_url: str) -> list[NormalizedStatus]:
    """Fetch the replies of a status through the context API.

    `in_reply_to_uri` is resolved from the local IDs returned by the API,
    unknown parents fallback to the post URL.
    """
    if not isinstance(post_url, str) or not (
        status_info := extract_status_info(post_url)
    ):
        raise MastodonApiError(f"Invalid status URL {post_url}")

    domain, status_id = status_info
    try:
        context = await get_json(
            f"https://{domain}/api/v1/statuses/{status_id}/context",
            timeout=MASTODON_API_TIMEOUT,
        )
    except RemoteApiError as exc:
        raise MastodonApiError(str(exc)) from exc

    if not isinstance(context, dict) or not isinstance(
        descendants := context.get("descendants"), list
    ):
        raise MastodonApiError(f"Unexpected context for {post_url}")

    ancestors = context.get("ancestors")
    if not isinstance(ancestors, list):
        ancestors = []

    id_to_uri = build_status_id_to_uri_map(
        [{"id": status_id, "uri": post_url}] + ancestors + descendants
    )

    statuses = []
    for status in descendants:
        if not isinstance(status, dict):
            continue

        parent_id = normalize_status_id(status.get("in_reply_to_id"))
        statuses.append(
            NormalizedStatus(
                id=normalize_status_id(status.get("id")),
                uri=_str_or_none(status.get("uri")),
                url=_str_or_none(status.get("url")),
                content=_str_or_none(status.get("content")),
                account=normalize_account(status.get("account")),
                created_at=_str_or_none(status.get("created_at")),
                in_reply_to_id=parent_id,
                in_reply_to_uri=id_to_uri.get(parent_id, post_url)
                if parent_id
                else None,
                favourites_count=_count(status.get("favourites_count")),
                reblogs_count=_count(status.get("reblogs_count")),
                replies_count=_count(status.get("replies_count")),
            )
        )

    logger.info(f"Fetched {len(statuses)} statuses from the context of {post_url}")
    return statuses

"""Best-effort resolution of the replies of a remote post.

Software expose replies in different ways, so we try in order:

1. the standard `replies` (or `comments`) collection
2. the Lemmy API for posts in communities (Lemmy, PieFed, Mbin)
3. the Mastodon context API
4. the Pleroma/Akkoma search and context API
"""
from typing import Any
from urllib.parse import urlparse

from loguru import logger

from federator import activitypub as ap
from federator import lemmy_api
from federator import mastodon_api
from federator.utils.remote import maybe_get_json

PLEROMA_API_TIMEOUT = 15.0


def normalize_reply_count(val: Any) -> int:
    if isinstance(val, bool):
        return 0

    if isinstance(val, int):
        return max(val, 0)

    if isinstance(val, str):
        try:
            return max(int(val.strip()), 0)
        except ValueError:
            return 0

    return 0


def _total_items(collection: Any) -> Any:
    if isinstance(collection, dict):
        return collection.get("totalItems")
    return None


def expected_replies(post_object: ap.RawObject) -> int:
    return max(
        normalize_reply_count(post_object.get("repliesCount")),
        normalize_reply_count(_total_items(post_object.get("replies"))),
        normalize_reply_count(_total_items(post_object.get("comments"))),
    )


def collection_url(collection: Any) -> str | None:
    if isinstance(collection, str) and collection:
        return collection

    if not isinstance(collection, dict):
        return None

    first = collection.get("first")
    if isinstance(first, dict) and isinstance(first.get("id"), str):
        return first["id"]
    if isinstance(first, str) and first:
        return first

    if isinstance(collection.get("id"), str):
        return collection["id"]

    return None


def replies_url(post_object: ap.RawObject) -> str | None:
    return collection_url(post_object.get("replies")) or collection_url(
        post_object.get("comments")
    )


def post_url(post_object: ap.RawObject) -> str | None:
    url = post_object.get("url")
    if isinstance(url, list):
        for link in url:
            if isinstance(link, str) and link:
                return link
            if isinstance(link, dict) and isinstance(link.get("href"), str):
                return link["href"]
    elif isinstance(url, dict) and isinstance(url.get("href"), str):
        return url["href"]
    elif isinstance(url, str) and url:
        return url

    post_id = post_object.get("id")
    return post_id if isinstance(post_id, str) else None


async def resolve_replies(
    post_object: ap.RawObject,
    limit: int = 10,
) -> list[ap.RawObject]:
    """Never raises, returns an empty list if the replies can't be resolved."""
    try:
        return await _resolve_replies(post_object, limit)
    except Exception:
        logger.exception(f"Failed to resolve replies for {post_object.get('id')}")
        return []


async def _resolve_replies(
    post_object: ap.RawObject,
    limit: int,
) -> list[ap.RawObject]:
    url = post_url(post_object)
    post_id = post_object.get("id") or url
    has_replies = expected_replies(post_object) > 0
    is_community_post = post_object.get(
        "type"
    ) == "Page" and lemmy_api.is_community_post_url(url)

    if collection := replies_url(post_object):
        replies = await fetch_replies_from_collection(collection, limit)
        if replies:
            return replies

        if has_replies and is_community_post and url:
            return await lemmy_api.fetch_post_comments(url, limit)
        elif has_replies and url:
            return await fetch_mastodon_context_replies(url, limit)

        return replies

    if is_community_post and url:
        return await lemmy_api.fetch_post_comments(url, limit)

    if has_replies and url:
        if replies := await fetch_mastodon_context_replies(url, limit):
            return replies
        if isinstance(post_id, str):
            return await fetch_pleroma_replies(post_id, limit)

    return []


def _collection_items(collection: ap.RawObject) -> tuple[list[Any], str | None]:
    """Returns the items and the URL of the next page."""
    for key in ["orderedItems", "items"]:
        if isinstance(items := collection.get(key), list):
            next_page = collection.get("next")
            if items or next_page:
                return items, next_page if isinstance(next_page, str) else None

    first = collection.get("first")
    if isinstance(first, dict):
        for key in ["orderedItems", "items"]:
            if isinstance(items := first.get(key), list):
                next_page = first.get("next")
                return items, next_page if isinstance(next_page, str) else None
        if isinstance(first.get("id"), str):
            return [], first["id"]
    elif isinstance(first, str):
        return [], first

    next_page = collection.get("next")
    return [], next_page if isinstance(next_page, str) else None


async def _resolve_item(item: Any) -> ap.RawObject | None:
    if isinstance(item, dict):
        if "type" in item and item["type"] not in ["Create", "Update"]:
            return item
        wrapped_object = item.get("object")
        if isinstance(wrapped_object, dict):
            return wrapped_object
        if isinstance(wrapped_object, str):
            return await _fetch_reply(wrapped_object)
        return None

    if isinstance(item, str):
        return await _fetch_reply(item)

    return None


async def _fetch_reply(url: str) -> ap.RawObject | None:
    try:
        return await ap.fetch_object(url)
    except ap.FetchError:
        logger.info(f"Failed to fetch reply {url}")
        return None


async def fetch_replies_from_collection(
    url: str,
    limit: int,
) -> list[ap.RawObject]:
    try:
        collection = await ap.fetch_object(url)
    except ap.FetchError:
        logger.info(f"Failed to fetch replies collection {url}")
        return []

    items, next_page = _collection_items(collection)
    if not items and next_page and next_page != url:
        try:
            page = await ap.fetch_object(next_page)
        except ap.FetchError:
            logger.info(f"Failed to fetch replies page {next_page}")
            return []
        items, _ = _collection_items(page)

    replies = []
    for item in items[:limit]:
        reply = await _resolve_item(item)
        if reply and reply.get("type") in ap.REPLY_TYPES:
            replies.append(reply)

    return replies


def mastodon_status_to_reply(
    status: mastodon_api.NormalizedStatus,
    post_url: str,
) -> ap.RawObject:
    if status.in_reply_to_uri:
        in_reply_to: str | None = status.in_reply_to_uri
    elif status.in_reply_to_id:
        in_reply_to = post_url
    else:
        in_reply_to = None

    account = status.account
    return {
        "id": status.uri or status.url or f"{post_url}#status-{status.id}",
        "url": status.url or status.uri,
        "type": "Note",
        "content": status.content,
        "attributedTo": (account.url or account.uri) if account else None,
        "published": status.created_at,
        "inReplyTo": in_reply_to,
        "likes": {"totalItems": status.favourites_count},
        "shares": {"totalItems": status.reblogs_count},
        "replies": {"totalItems": status.replies_count},
        "_mastodon_account": account.model_dump() if account else None,
    }


async def fetch_mastodon_context_replies(
    post_url: str,
    limit: int,
) -> list[ap.RawObject]:
    try:
        statuses = await mastodon_api.fetch_status_context(post_url)
    except mastodon_api.MastodonApiError as exc:
        logger.info(f"No Mastodon context for {post_url}: {exc}")
        return []

    return [mastodon_status_to_reply(status, post_url) for status in statuses[:limit]]


def pleroma_status_to_reply(
    status: ap.RawObject,
    id_to_uri: dict[str, str],
    root_post_uri: str,
) -> ap.RawObject:
    parent_id = mastodon_api.normalize_status_id(status.get("in_reply_to_id"))

    akkoma = status.get("akkoma")
    in_reply_to = None
    if isinstance(akkoma, dict) and isinstance(akkoma.get("in_reply_to_apid"), str):
        in_reply_to = akkoma["in_reply_to_apid"]
    elif parent_id:
        in_reply_to = id_to_uri.get(parent_id)

    if in_reply_to is None and parent_id:
        in_reply_to = root_post_uri

    account = status.get("account")
    if not isinstance(account, dict):
        account = {}

    return {
        "id": status.get("uri") or status.get("url"),
        "type": "Note",
        "content": status.get("content"),
        "published": status.get("created_at"),
        "attributedTo": account.get("url") or account.get("uri"),
        "inReplyTo": in_reply_to,
        "to": [ap.AS_PUBLIC],
        "cc": [],
        "sensitive": status.get("sensitive") or False,
        "summary": status.get("spoiler_text"),
        "_mastodon": {
            "id": status.get("id"),
            "in_reply_to_id": status.get("in_reply_to_id"),
            "account": status.get("account"),
            "favourites_count": status.get("favourites_count"),
            "reblogs_count": status.get("reblogs_count"),
            "replies_count": status.get("replies_count"),
        },
    }


async def fetch_pleroma_replies(post_id: str, limit: int) -> list[ap.RawObject]:
    domain = urlparse(post_id).hostname
    if not domain:
        return []

    search = await maybe_get_json(
        f"https://{domain}/api/v2/search",
        params={"q": post_id, "type": "statuses", "resolve": "true", "limit": 1},
        timeout=PLEROMA_API_TIMEOUT,
    )
    if not isinstance(search, dict) or not isinstance(
        statuses := search.get("statuses"), list
    ):
        return []

    if not statuses or not isinstance(root_status := statuses[0], dict):
        logger.debug(f"{post_id} not found via search")
        return []

    status_id = mastodon_api.normalize_status_id(root_status.get("id"))
    if not status_id:
        return []

    context = await maybe_get_json(
        f"https://{domain}/api/v1/statuses/{status_id}/context",
        timeout=PLEROMA_API_TIMEOUT,
    )
    if not isinstance(context, dict) or not isinstance(
        descendants := context.get("descendants"), list
    ):
        return []

    ancestors = context.get("ancestors")
    if isinstance(ancestors, list):
        id_to_uri = mastodon_api.build_status_id_to_uri_map(
            [root_status] + ancestors + descendants
        )
    else:
        id_to_uri = mastodon_api.build_status_id_to_uri_map([root_status])

    replies = [
        pleroma_status_to_reply(status, id_to_uri, post_id)
        for status in descendants[:limit]
        if isinstance(status, dict)
    ]
    logger.debug(f"Fetched {len(replies)} replies from context API for {post_id}")
    return replies

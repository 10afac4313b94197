"""Comments from community software (Lemmy, PieFed, Mbin) via the Lemmy API."""
import re
from typing import Any
from urllib.parse import urlparse

from loguru import logger

from federator import activitypub as ap
from federator.utils.remote import maybe_get_json

LEMMY_API_TIMEOUT = 10.0

_POST_URL_PATTERNS = [
    re.compile(r"https?://([^/]+)/post/(\d+)"),
    re.compile(r"https?://([^/]+)/c/[^/]+/p/(\d+)"),
    re.compile(r"https?://([^/]+)/m/[^/]+/[pt]/(\d+)"),
]


def is_community_post_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False

    return (
        "/post/" in url
        or re.search(r"/c/[^/]+/p/\d+", url) is not None
        or re.search(r"/m/[^/]+/[pt]/\d+", url) is not None
    )


def post_reference_from_url(post_url: str) -> tuple[str, str] | None:
    for pattern in _POST_URL_PATTERNS:
        if m := pattern.search(post_url):
            return m.group(1), m.group(2)

    return None


async def resolve_post_id(domain: str, post_url: str) -> str | None:
    """Returns the ID of the post local to the given instance."""
    resp = await maybe_get_json(
        f"https://{domain}/api/v3/resolve_object",
        params={"q": post_url},
        timeout=LEMMY_API_TIMEOUT,
    )
    if not isinstance(resp, dict):
        return None

    post_view = resp.get("post")
    post = post_view.get("post") if isinstance(post_view, dict) else None
    if not isinstance(post, dict):
        return None

    post_id = post.get("id")
    if isinstance(post_id, int) and not isinstance(post_id, bool):
        return str(post_id)
    if isinstance(post_id, str) and post_id:
        return post_id

    return None


async def resolve_post_reference(post_url: str) -> tuple[str, str] | None:
    if ref := post_reference_from_url(post_url):
        return ref

    domain = urlparse(post_url).hostname
    if not domain:
        return None

    if post_id := await resolve_post_id(domain, post_url):
        return domain, post_id

    return None


def reply_path_to_in_reply_to(path: Any, post_url: str) -> str:
    """Comment paths look like `0.<comment_id>` for top-level comments and
    `0.<parent_id>.<comment_id>` for nested ones.

    Nested comments are linked to the post as only local IDs are known for
    the parents.
    """
    return post_url


def _as_dict(val: Any) -> dict[str, Any]:
    return val if isinstance(val, dict) else {}


def comment_to_reply(comment_view: ap.RawObject, post_url: str) -> ap.RawObject:
    comment = _as_dict(comment_view.get("comment"))
    creator = _as_dict(comment_view.get("creator"))
    counts = _as_dict(comment_view.get("counts"))

    return {
        "id": comment.get("ap_id"),
        "type": "Note",
        "content": comment.get("content"),
        "attributedTo": creator.get("actor_id"),
        "published": comment.get("published"),
        "inReplyTo": reply_path_to_in_reply_to(comment.get("path"), post_url),
        "_lemmy": {
            "creator_name": creator.get("name"),
            "creator_avatar": creator.get("avatar"),
            "path": comment.get("path"),
            "score": counts.get("score") or 0,
            "upvotes": counts.get("upvotes") or 0,
            "downvotes": counts.get("downvotes") or 0,
            "child_count": counts.get("child_count") or 0,
        },
    }


async def fetch_comments(
    domain: str,
    post_id: str,
    post_url: str,
    limit: int,
) -> list[ap.RawObject]:
    resp = await maybe_get_json(
        f"https://{domain}/api/v3/comment/list",
        params={"post_id": post_id, "limit": limit, "sort": "Top"},
        timeout=LEMMY_API_TIMEOUT,
    )
    if not isinstance(resp, dict) or not isinstance(
        comments := resp.get("comments"), list
    ):
        return []

    return [
        comment_to_reply(comment_view, post_url)
        for comment_view in comments
        if isinstance(comment_view, dict)
    ]


async def fetch_comments_from_community_instance(
    post_url: str,
    limit: int,
) -> list[ap.RawObject]:
    """Posts are often federated from another instance than the one hosting
    the community, which may know about more comments."""
    try:
        post_object = await ap.fetch_object(post_url)
    except ap.FetchError:
        logger.info(f"Failed to fetch {post_url}")
        return []

    community_url = post_object.get("audience")
    if not isinstance(community_url, str):
        return []

    community_domain = urlparse(community_url).hostname
    if not community_domain:
        return []

    post_id = await resolve_post_id(community_domain, post_url)
    if not post_id:
        return []

    return await fetch_comments(community_domain, post_id, post_url, limit)


async def fetch_post_comments(post_url: str, limit: int) -> list[ap.RawObject]:
    ref = await resolve_post_reference(post_url)
    if not ref:
        logger.info(f"Failed to resolve the post ID for {post_url}")
        return []

    domain, post_id = ref
    if comments := await fetch_comments(domain, post_id, post_url, limit):
        return comments

    return await fetch_comments_from_community_instance(post_url, limit)

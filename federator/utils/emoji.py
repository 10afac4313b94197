import re
import typing

from loguru import logger
from sqlalchemy import select

from federator import models
from federator.database import AsyncSession

if typing.TYPE_CHECKING:
    from federator.activitypub import RawObject

EMOJI_REGEX = re.compile(r"(:[\d\w]+:)")


def extract_shortcode(name: typing.Any) -> str | None:
    if not isinstance(name, str):
        return None

    shortcode = name.strip().strip(":")
    if not shortcode or not re.match(EMOJI_REGEX, f":{shortcode}:"):
        return None

    return shortcode


def extract_image_url(ap_emoji: "RawObject") -> str | None:
    icon = ap_emoji.get("icon")
    if isinstance(icon, dict):
        url = icon.get("url")
    else:
        url = icon

    if isinstance(url, str) and url:
        return url

    return None


async def get_custom_emoji(
    db_session: AsyncSession,
    shortcode: str,
    domain: str,
) -> models.CustomEmoji | None:
    return (
        await db_session.execute(
            select(models.CustomEmoji).where(
                models.CustomEmoji.shortcode == shortcode,
                models.CustomEmoji.domain == domain,
            )
        )
    ).scalar_one_or_none()


async def get_or_create_emoji(
    db_session: AsyncSession,
    ap_emoji: "RawObject",
    domain: str,
) -> models.CustomEmoji | None:
    shortcode = extract_shortcode(ap_emoji.get("name"))
    image_url = extract_image_url(ap_emoji)
    if not shortcode or not image_url:
        logger.debug(f"Skipping invalid emoji {ap_emoji}")
        return None

    emoji = await get_custom_emoji(db_session, shortcode, domain)
    if emoji is None:
        emoji = models.CustomEmoji(
            shortcode=shortcode,
            domain=domain,
            image_url=image_url,
            ap_id=ap_emoji.get("id") if isinstance(ap_emoji.get("id"), str) else None,
        )
        db_session.add(emoji)
    elif emoji.image_url != image_url:
        emoji.image_url = image_url

    await db_session.commit()
    return emoji


async def process_ap_tags(
    db_session: AsyncSession,
    tags: typing.Any,
    domain: str,
) -> list[models.CustomEmoji]:
    """Cache the custom emojis found in the `tag` field of an AP object."""
    if not isinstance(tags, list):
        return []

    emojis = []
    for tag in tags:
        if not isinstance(tag, dict) or tag.get("type") != "Emoji":
            continue

        emoji = await get_or_create_emoji(db_session, tag, domain)
        if emoji:
            emojis.append(emoji)

    return emojis

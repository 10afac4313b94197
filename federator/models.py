import enum

from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import relationship

from federator.database import Base
from federator.utils.datetime import now


class Actor(Base):
    __tablename__ = "actor"
    __table_args__ = (
        UniqueConstraint("username", "domain", name="uix_actor_username_domain"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=now, onupdate=now
    )

    uri = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, nullable=False)
    domain = Column(String, nullable=False, index=True)

    display_name = Column(String, nullable=True)
    summary = Column(Text, nullable=True)
    avatar_url = Column(String, nullable=True)
    header_url = Column(String, nullable=True)

    inbox_url = Column(String, nullable=True)
    outbox_url = Column(String, nullable=True)
    followers_url = Column(String, nullable=True)
    following_url = Column(String, nullable=True)
    moderators_url = Column(String, nullable=True)

    public_key = Column(Text, nullable=True)
    # Only set for local Group actors
    private_key = Column(Text, nullable=True)

    manually_approves_followers = Column(Boolean, nullable=False, default=False)
    actor_type = Column(String, nullable=False, default="Person")

    # NULL means the actor was never confirmed remotely
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)

    community_id = Column(Integer, nullable=True, unique=True)

    # `metadata` is reserved by the declarative base
    ap_metadata = Column("metadata", JSON, nullable=False, default=dict)

    @property
    def shared_inbox_url(self) -> str | None:
        endpoints = (self.ap_metadata or {}).get("endpoints")
        if isinstance(endpoints, dict):
            shared_inbox = endpoints.get("sharedInbox")
            if isinstance(shared_inbox, str) and shared_inbox:
                return shared_inbox
        return None

    @property
    def is_local_group(self) -> bool:
        return self.actor_type == "Group" and self.community_id is not None

    @property
    def handle(self) -> str:
        return f"@{self.username}@{self.domain}"


class Instance(Base):
    __tablename__ = "instance"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=now, onupdate=now
    )

    domain = Column(String, nullable=False, unique=True, index=True)

    blocked = Column(Boolean, nullable=False, default=False, index=True)
    reason = Column(Text, nullable=True)
    blocked_by_id = Column(Integer, nullable=True)
    blocked_at = Column(DateTime(timezone=True), nullable=True)


class Activity(Base):
    __tablename__ = "activity"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=now, onupdate=now
    )

    ap_id = Column(String, nullable=False, unique=True, index=True)
    activity_type = Column(String, nullable=False, index=True)
    actor_uri = Column(String, nullable=False, index=True)
    object_id = Column(String, nullable=True, index=True)
    data = Column(JSON, nullable=False)

    is_local = Column(Boolean, nullable=False, default=True)


@enum.unique
class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Delivery(Base):
    __tablename__ = "delivery"
    __table_args__ = (
        UniqueConstraint("activity_id", "inbox_url", name="uix_delivery_inbox"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=now, onupdate=now
    )

    activity_id = Column(
        Integer,
        ForeignKey("activity.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    activity = relationship(Activity, uselist=False)

    inbox_url = Column(String, nullable=False)

    status = Column(
        Enum(DeliveryStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    error_message = Column(Text, nullable=True)


class GroupFollow(Base):
    __tablename__ = "group_follow"
    __table_args__ = (
        UniqueConstraint(
            "remote_actor_id", "group_actor_id", name="uix_group_follow_actors"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=now, onupdate=now
    )

    remote_actor_id = Column(
        Integer, ForeignKey("actor.id", ondelete="CASCADE"), nullable=False
    )
    remote_actor = relationship(Actor, foreign_keys=[remote_actor_id], uselist=False)

    group_actor_id = Column(
        Integer, ForeignKey("actor.id", ondelete="CASCADE"), nullable=False, index=True
    )
    group_actor = relationship(Actor, foreign_keys=[group_actor_id], uselist=False)

    # The remote Follow activity ID
    activitypub_id = Column(String, nullable=True)
    pending = Column(Boolean, nullable=False, default=False, index=True)


@enum.unique
class BlockType(str, enum.Enum):
    USER = "user"
    DOMAIN = "domain"


class UserBlock(Base):
    __tablename__ = "user_block"
    __table_args__ = (
        UniqueConstraint("user_id", "blocked_uri", name="uix_user_block"),
        Index("ix_user_block_blocked_uri", "blocked_uri"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)

    user_id = Column(Integer, nullable=False, index=True)
    blocked_uri = Column(String, nullable=False)
    block_type = Column(
        Enum(BlockType, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=BlockType.USER,
    )


class CustomEmoji(Base):
    __tablename__ = "custom_emoji"
    __table_args__ = (
        UniqueConstraint("shortcode", "domain", name="uix_custom_emoji_shortcode"),
    )

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=now, onupdate=now
    )

    shortcode = Column(String, nullable=False)
    domain = Column(String, nullable=False, index=True)
    image_url = Column(String, nullable=False)
    ap_id = Column(String, nullable=True)

"""Channels, their venue assignments, members and posts."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from staffhub.database import Base
from staffhub.models.base import UUIDPrimaryKeyMixin, utcnow

CHANNEL_TYPES = ("ALL_STAFF", "MANAGERS", "CUSTOM")

CREATOR = "CREATOR"
MODERATOR = "MODERATOR"
MEMBER = "MEMBER"
MEMBER_ROLES = (CREATOR, MODERATOR, MEMBER)


class Channel(UUIDPrimaryKeyMixin, Base):
    """A posting container visible to the venues it is assigned to."""
    __tablename__ = "channels"

    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    channel_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="ALL_STAFF", server_default="ALL_STAFF"
    )
    archived: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    archived_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Channel {self.name!r} archived={self.archived}>"


class ChannelVenue(UUIDPrimaryKeyMixin, Base):
    """Assignment of a channel to a venue."""
    __tablename__ = "channel_venues"
    __table_args__ = (
        UniqueConstraint("channel_id", "venue_id", name="uq_channel_venue"),
    )

    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("venues.id", ondelete="CASCADE"), nullable=False, index=True
    )


class ChannelMember(UUIDPrimaryKeyMixin, Base):
    """A user's membership (and role) in one channel."""
    __tablename__ = "channel_members"
    __table_args__ = (
        UniqueConstraint("channel_id", "user_id", name="uq_channel_member"),
    )

    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MEMBER, server_default=MEMBER
    )
    added_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    added_via: Mapped[str] = mapped_column(
        String(30), nullable=False, default="manual", server_default="manual"
    )
    added_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ChannelMember {self.user_id} {self.role} in {self.channel_id}>"


class Post(UUIDPrimaryKeyMixin, Base):
    """A post inside a channel."""
    __tablename__ = "posts"

    channel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

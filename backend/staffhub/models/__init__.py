from staffhub.models.channel import Channel, ChannelMember, ChannelVenue, Post
from staffhub.models.messaging import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageRead,
)
from staffhub.models.permission import AuditLog, Permission, VenuePermission
from staffhub.models.scheduling import AvailabilitySlot, Roster, TimeOffRequest
from staffhub.models.user import User
from staffhub.models.venue import UserVenue, Venue

__all__ = [
    # Identity & venues
    "User",
    "Venue",
    "UserVenue",
    # Permissions & audit
    "Permission",
    "VenuePermission",
    "AuditLog",
    # Channels
    "Channel",
    "ChannelVenue",
    "ChannelMember",
    "Post",
    # Messaging
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageRead",
    # Scheduling
    "Roster",
    "TimeOffRequest",
    "AvailabilitySlot",
]

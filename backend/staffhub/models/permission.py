"""SQLAlchemy models for RBAC: permission catalog, venue grants, audit logging."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from staffhub.database import Base
from staffhub.models.base import UUIDPrimaryKeyMixin, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Permission(UUIDPrimaryKeyMixin, Base):
    """Catalog row for one ``resource:action`` pair.

    Rows are synced from ``staffhub.rbac.RESOURCE_ACTIONS``; venue grants
    reference them by id.
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("resource", "action", name="uq_permission_resource_action"),
    )

    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    @property
    def key(self) -> str:
        return f"{self.resource}:{self.action}"

    def __repr__(self) -> str:
        return f"<Permission {self.key!r}>"


class VenuePermission(UUIDPrimaryKeyMixin, Base):
    """Additional grant for one user at one venue, on top of the role."""
    __tablename__ = "venue_permissions"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "venue_id", "permission_id", name="uq_venue_permission"
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("venues.id", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    granted_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    granted_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<VenuePermission {self.permission_id} for user {self.user_id} "
            f"at venue {self.venue_id}>"
        )


class AuditLog(UUIDPrimaryKeyMixin, Base):
    """Immutable audit trail of permission and membership mutations."""
    __tablename__ = "audit_log"

    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    user_email: Mapped[str | None] = mapped_column(String(200))
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(100))
    resource_id: Mapped[str | None] = mapped_column(String(200))
    old_value: Mapped[dict | None] = mapped_column(JSONType)
    new_value: Mapped[dict | None] = mapped_column(JSONType)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    event_category: Mapped[str] = mapped_column(
        String(20), nullable=False, default="mutation", server_default="mutation"
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action_type!r} by {self.user_email!r}>"

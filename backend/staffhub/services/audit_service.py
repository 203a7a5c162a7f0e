"""Audit logging service.

Permission-set and channel-membership mutations are recorded in the
``audit_log`` table and mirrored, fire-and-forget, to daily JSONL files and a
local SQLite store.  Each event is categorised for tiered retention:

* **MUTATION** -- kept forever (grants, membership changes, logins)
* **READ_ACCESS** -- purged after 90 days (sensitive GETs)
* **SYSTEM** -- purged after 30 days (scheduler runs, startup, failed logins)

Audit writes never fail the operation being audited: the database row is
written in its own commit after the audited change, and file-sink errors are
logged only.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from staffhub.config import settings

if TYPE_CHECKING:
    from staffhub.identity import Actor

logger = logging.getLogger(__name__)

SYSTEM_NAME = "staffhub"

# Strong references to in-flight fire-and-forget writes; the loop keeps only
# weak ones.
_pending_writes: set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Event category enum (drives retention policy)
# ---------------------------------------------------------------------------


class AuditEventCategory(str, enum.Enum):
    MUTATION = "mutation"  # Never deleted
    READ_ACCESS = "read_access"  # 90-day retention
    SYSTEM = "system"  # 30-day retention


# ---------------------------------------------------------------------------
# Canonical audit event
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AuditEvent:
    id: UUID
    timestamp: datetime
    category: AuditEventCategory
    user_id: str | None
    user_email: str | None
    action_type: str
    resource_type: str | None
    resource_id: str | None
    old_value: dict | None
    new_value: dict | None
    ip_address: str | None
    system_name: str = SYSTEM_NAME

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "action_type": self.action_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "ip_address": self.ip_address,
            "system_name": self.system_name,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


def system_event(action_type: str, details: dict | None = None) -> AuditEvent:
    """Build a SYSTEM-category event (startup, scheduler runs, failed logins)."""
    return AuditEvent(
        id=uuid4(),
        timestamp=datetime.now(timezone.utc),
        category=AuditEventCategory.SYSTEM,
        user_id=None,
        user_email="system",
        action_type=action_type,
        resource_type="system",
        resource_id=None,
        old_value=None,
        new_value=details,
        ip_address=None,
    )


# ---------------------------------------------------------------------------
# Action → category classifier
# ---------------------------------------------------------------------------

_MUTATION_STEMS = (
    "create",
    "update",
    "delete",
    "add",
    "remove",
    "grant",
    "revoke",
    "archive",
    "unarchive",
    "assign",
    "activate",
    "deactivate",
    "login",
)

_SYSTEM_PREFIXES = (
    "system.",
    "scheduler.",
    "auth.failed",
)


def classify_action(action_type: str) -> AuditEventCategory:
    """Map an action type to a retention category."""
    action_lower = action_type.lower()

    for prefix in _SYSTEM_PREFIXES:
        if action_lower.startswith(prefix):
            return AuditEventCategory.SYSTEM

    parts = action_lower.replace(".", "_").split("_")
    for part in parts:
        if part.startswith(_MUTATION_STEMS):
            return AuditEventCategory.MUTATION

    read_keywords = ("view", "read", "list", "search", "export")
    if any(kw in action_lower for kw in read_keywords):
        return AuditEventCategory.READ_ACCESS

    # Unknown actions are kept forever
    return AuditEventCategory.MUTATION


# ---------------------------------------------------------------------------
# File sink (JSONL + SQLite)
# ---------------------------------------------------------------------------


class AuditFileWriter:
    """Appends events to daily JSONL files and a local SQLite table.

    The ``audit_log`` database table is written separately by
    ``write_audit_log``; this class handles the two file-based stores.
    """

    def __init__(self, base_path: str, system_name: str = SYSTEM_NAME) -> None:
        self.base_path = Path(base_path)
        self.jsonl_dir = self.base_path / "jsonl"
        self.sqlite_path = self.base_path / "audit.db"
        self.system_name = system_name

        self.jsonl_dir.mkdir(parents=True, exist_ok=True)
        self._init_sqlite()

    # ---- SQLite setup ----

    def _init_sqlite(self) -> None:
        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id            TEXT PRIMARY KEY,
                    timestamp     TEXT NOT NULL,
                    category      TEXT NOT NULL,
                    user_id       TEXT,
                    user_email    TEXT,
                    action_type   TEXT NOT NULL,
                    resource_type TEXT,
                    resource_id   TEXT,
                    old_value     TEXT,
                    new_value     TEXT,
                    ip_address    TEXT,
                    system_name   TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ae_cat_ts "
                "ON audit_events(category, timestamp)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ae_action "
                "ON audit_events(action_type)"
            )
            conn.commit()
        finally:
            conn.close()

    def _get_jsonl_path(self, dt: datetime) -> Path:
        return self.jsonl_dir / f"{dt.strftime('%Y-%m-%d')}.jsonl"

    # ---- Sync write (runs in thread) ----

    def write_sync(self, event: AuditEvent) -> None:
        """Append to the daily JSONL file and insert into SQLite."""
        with open(self._get_jsonl_path(event.timestamp), "a", encoding="utf-8") as f:
            f.write(event.to_json_line() + "\n")

        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            conn.execute(
                """INSERT OR IGNORE INTO audit_events
                   (id, timestamp, category, user_id, user_email, action_type,
                    resource_type, resource_id, old_value, new_value,
                    ip_address, system_name)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(event.id),
                    event.timestamp.isoformat(),
                    event.category.value,
                    event.user_id,
                    event.user_email,
                    event.action_type,
                    event.resource_type,
                    event.resource_id,
                    json.dumps(event.old_value, default=str) if event.old_value else None,
                    json.dumps(event.new_value, default=str) if event.new_value else None,
                    event.ip_address,
                    event.system_name,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    # ---- Async / fire-and-forget ----

    async def write_async(self, event: AuditEvent) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.write_sync, event)

    def fire_and_forget(self, event: AuditEvent) -> None:
        """Schedule the write without awaiting.  Failures are logged only."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop (e.g. during shutdown)
            try:
                self.write_sync(event)
            except OSError:
                logger.exception("Audit file write failed (sync fallback)")
            return
        task = loop.create_task(self._safe_write(event))
        _pending_writes.add(task)
        task.add_done_callback(_pending_writes.discard)

    async def _safe_write(self, event: AuditEvent) -> None:
        try:
            await self.write_async(event)
        except (OSError, sqlite3.Error):
            logger.exception("Audit file write failed for event %s", event.id)


# ---------------------------------------------------------------------------
# Writer singleton
# ---------------------------------------------------------------------------

_file_writer: AuditFileWriter | None = None


def get_audit_writer() -> AuditFileWriter:
    """Lazy-initialise the singleton file writer."""
    global _file_writer
    if _file_writer is None:
        _file_writer = AuditFileWriter(base_path=settings.AUDIT_STORAGE_PATH)
    return _file_writer


def emit_to_file_sink(event: AuditEvent) -> None:
    if not settings.AUDIT_SINK_ENABLED:
        return
    get_audit_writer().fire_and_forget(event)


# ---------------------------------------------------------------------------
# Audit-log helper
# ---------------------------------------------------------------------------


async def write_audit_log(
    db: AsyncSession,
    actor: Actor | None,
    action_type: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    old_value: dict | None = None,
    new_value: dict | None = None,
    ip_address: str | None = None,
) -> None:
    """Record an audit event after the audited change has been committed.

    Writes the ``audit_log`` row in its own commit, then mirrors the event to
    the file sink.  Never raises: a failed audit write is logged and rolled
    back so the caller's already-committed change stands.
    """
    from staffhub.models.permission import AuditLog

    category = classify_action(action_type)
    user_id = actor.id if actor else None
    user_email = actor.email if actor else None

    entry = AuditLog(
        user_id=user_id,
        user_email=user_email,
        action_type=action_type,
        resource_type=resource_type,
        resource_id=resource_id,
        old_value=old_value,
        new_value=new_value,
        ip_address=ip_address,
        event_category=category.value,
    )
    try:
        db.add(entry)
        await db.commit()
    except SQLAlchemyError:
        logger.exception("Failed to write audit log entry %s", action_type)
        await db.rollback()
        return

    emit_to_file_sink(AuditEvent(
        id=entry.id,
        timestamp=datetime.now(timezone.utc),
        category=category,
        user_id=str(user_id) if user_id else None,
        user_email=user_email,
        action_type=action_type,
        resource_type=resource_type,
        resource_id=resource_id,
        old_value=old_value,
        new_value=new_value,
        ip_address=ip_address,
    ))

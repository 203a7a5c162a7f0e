"""Retention purge for the audit stores.

Deletes expired events from the SQLite store, the JSONL files and the
``audit_log`` table based on the event category:

* MUTATION  -- never deleted
* READ_ACCESS -- deleted after 90 days
* SYSTEM -- deleted after 30 days
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from staffhub.services.audit_service import AuditEventCategory

logger = logging.getLogger(__name__)

# Retention windows (days).  None = never purge.
RETENTION_DAYS: dict[AuditEventCategory, int | None] = {
    AuditEventCategory.MUTATION: None,
    AuditEventCategory.READ_ACCESS: 90,
    AuditEventCategory.SYSTEM: 30,
}

_MIN_RETENTION_DAYS = min(d for d in RETENTION_DAYS.values() if d is not None)


def _purge_sqlite(sqlite_path: Path, now: datetime) -> int:
    deleted = 0
    conn = sqlite3.connect(str(sqlite_path))
    try:
        for category, days in RETENTION_DAYS.items():
            if days is None:
                continue
            cutoff = (now - timedelta(days=days)).isoformat()
            cursor = conn.execute(
                "DELETE FROM audit_events WHERE category = ? AND timestamp < ?",
                (category.value, cutoff),
            )
            deleted += cursor.rowcount
        conn.commit()
    finally:
        conn.close()
    return deleted


def _purge_jsonl_file(jsonl_file: Path, age_days: int) -> int:
    lines_to_keep: list[str] = []
    lines_removed = 0

    with open(jsonl_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                category = AuditEventCategory(json.loads(line).get("category", "mutation"))
            except (json.JSONDecodeError, ValueError):
                # Malformed lines are kept
                lines_to_keep.append(line)
                continue
            retention = RETENTION_DAYS.get(category)
            if retention is not None and age_days >= retention:
                lines_removed += 1
            else:
                lines_to_keep.append(line)

    if lines_removed:
        if lines_to_keep:
            tmp = jsonl_file.with_suffix(".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.write("\n".join(lines_to_keep) + "\n")
            tmp.replace(jsonl_file)
        else:
            jsonl_file.unlink()
    return lines_removed


async def purge_audit_retention(
    audit_base_path: str,
    session_factory: Any | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Purge expired audit events from every store.

    Parameters
    ----------
    audit_base_path:
        Root directory of the JSONL + SQLite file sink.
    session_factory:
        An ``async_sessionmaker`` for the ``audit_log`` table, or ``None`` to
        purge only the file sink.

    Returns a summary dict of rows/lines removed.
    """
    from staffhub.models.permission import AuditLog

    base = Path(audit_base_path)
    now = now or datetime.now(timezone.utc)
    summary: dict[str, int] = {
        "sqlite_deleted": 0,
        "jsonl_lines_removed": 0,
        "db_deleted": 0,
    }

    sqlite_path = base / "audit.db"
    if sqlite_path.exists():
        summary["sqlite_deleted"] = _purge_sqlite(sqlite_path, now)

    jsonl_dir = base / "jsonl"
    if jsonl_dir.exists():
        for jsonl_file in sorted(jsonl_dir.glob("*.jsonl")):
            try:
                file_date = datetime.strptime(jsonl_file.stem, "%Y-%m-%d").replace(
                    tzinfo=timezone.utc
                )
            except ValueError:
                continue
            age_days = (now - file_date).days
            if age_days < _MIN_RETENTION_DAYS:
                continue
            summary["jsonl_lines_removed"] += _purge_jsonl_file(jsonl_file, age_days)

    if session_factory is not None:
        try:
            async with session_factory() as db:
                for category, days in RETENTION_DAYS.items():
                    if days is None:
                        continue
                    result = await db.execute(
                        delete(AuditLog).where(
                            AuditLog.event_category == category.value,
                            AuditLog.created_at < now - timedelta(days=days),
                        )
                    )
                    summary["db_deleted"] += result.rowcount
                await db.commit()
        except SQLAlchemyError:
            logger.exception("audit_log retention purge failed")

    return summary

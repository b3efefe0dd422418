import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from shareaudit.errors import InvalidAuditEntry
from shareaudit.eventlog import AppendOnlyLog, LogSchema
from shareaudit.models import (
    AdminAction,
    AdminDetails,
    AdminLogEntry,
    AdminLogInput,
    AuditFilter,
    LegacyDetails,
)
from shareaudit.repository import Database, from_db_time, utc_now

logger = logging.getLogger(__name__)

_details_adapter = TypeAdapter(AdminDetails)


def parse_details(raw: str) -> AdminDetails:
    """Load stored details, keeping unrecognised payloads as opaque legacy text."""
    try:
        return _details_adapter.validate_json(raw)
    except ValidationError:
        return LegacyDetails(raw=raw)


def _encode(entry: AdminLogInput) -> dict[str, Any]:
    return {
        "admin_id": entry.admin_id,
        "admin_username": entry.admin_username,
        "target_user_id": entry.target_user_id,
        "target_username": entry.target_username,
        "action": entry.action.value,
        "details": entry.details.model_dump_json(),
        "ip_address": entry.ip_address,
    }


def _decode(row: sqlite3.Row) -> AdminLogEntry:
    return AdminLogEntry(
        id=row["id"],
        admin_id=row["admin_id"],
        admin_username=row["admin_username"],
        target_user_id=row["target_user_id"],
        target_username=row["target_username"],
        action=AdminAction(row["action"]),
        details=parse_details(row["details"]),
        ip_address=row["ip_address"],
        created_at=from_db_time(row["created_at"]),
    )


ADMIN_LOGS = LogSchema(
    table="admin_logs",
    time_column="created_at",
    encode=_encode,
    decode=_decode,
    filter_columns=frozenset({"admin_id", "target_user_id", "action"}),
)


class AuditLog:
    """Write-once trail of administrative actions. Nothing here edits or deletes."""

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utc_now, retries: int = 1):
        self._log = AppendOnlyLog(database, ADMIN_LOGS, clock=clock, retries=retries)

    def append(self, entry: AdminLogInput) -> AdminLogEntry:
        kind = entry.details.kind
        if kind != "legacy" and kind != entry.action.value:
            raise InvalidAuditEntry(f"details of kind {kind!r} do not match action {entry.action.value!r}")
        stored = self._log.append(entry)
        logger.info(
            "admin %s performed %s on %s (entry %s)",
            entry.admin_id,
            entry.action.value,
            entry.target_user_id or "-",
            stored.id,
        )
        return stored

    def list(self, query: AuditFilter | None = None) -> list[AdminLogEntry]:
        query = query or AuditFilter()
        return self._log.list(
            filters={
                "admin_id": query.admin_id,
                "target_user_id": query.target_user_id,
                "action": query.action.value if query.action else None,
            },
            since=query.since,
            until=query.until,
            descending=True,
            limit=query.limit,
            offset=query.offset,
        )

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from shareaudit.errors import LinkNotFound
from shareaudit.eventlog import AppendOnlyLog, LogSchema
from shareaudit.models import AccessEvent, AccessEventInput, AccessStatus, GeoLocation
from shareaudit.repository import Database, from_db_time, utc_now

logger = logging.getLogger(__name__)


def _encode(event: AccessEventInput) -> dict[str, Any]:
    return {
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "referrer": event.referrer,
        "country": event.geo.country,
        "city": event.geo.city,
        "is_download": int(event.is_download),
        "status": event.status.value,
    }


def _decode(row: sqlite3.Row) -> AccessEvent:
    return AccessEvent(
        id=row["id"],
        resource_key=row["resource_key"],
        occurred_at=from_db_time(row["occurred_at"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        referrer=row["referrer"],
        geo=GeoLocation(country=row["country"], city=row["city"]),
        is_download=bool(row["is_download"]),
        status=AccessStatus(row["status"]),
    )


def _missing_link(link_id: Any) -> Exception:
    return LinkNotFound(f"shared link {link_id} not found")


ACCESS_EVENTS = LogSchema(
    table="access_events",
    time_column="occurred_at",
    encode=_encode,
    decode=_decode,
    scope_column="resource_key",
    scope_table="shared_links",
    missing_scope=_missing_link,
)


class AccessRecorder:
    """Append-only record of every access attempt against a shared link."""

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utc_now, retries: int = 1):
        self._log = AppendOnlyLog(database, ACCESS_EVENTS, clock=clock, retries=retries)

    def record(self, resource_key: int, event: AccessEventInput) -> AccessEvent:
        recorded = self._log.append(event, scope=resource_key)
        logger.debug(
            "recorded %s access on link %s (event %s, %s)",
            "download" if recorded.is_download else "view",
            resource_key,
            recorded.id,
            recorded.status.value,
        )
        return recorded

    def list_by_resource(self, resource_key: int, *, limit: int | None = None, offset: int = 0) -> list[AccessEvent]:
        return self._log.list(scope=resource_key, limit=limit, offset=offset)

    def count_by_resource(self, resource_key: int) -> int:
        return self._log.count(scope=resource_key)

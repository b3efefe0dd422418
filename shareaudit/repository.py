import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

from shareaudit.errors import StorageUnavailable, TokenCollision
from shareaudit.models import ResourceRef, SharedLink

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS shared_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    token TEXT NOT NULL UNIQUE,
    owner_account_id TEXT NOT NULL,
    bucket TEXT NOT NULL,
    path TEXT NOT NULL,
    filename TEXT NOT NULL,
    content_type TEXT,
    size INTEGER NOT NULL,
    allow_download INTEGER NOT NULL DEFAULT 1,
    issued_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    revoked_at TEXT,
    password_hash TEXT
);
CREATE INDEX IF NOT EXISTS ix_shared_links_owner ON shared_links(owner_account_id, issued_at);

CREATE TABLE IF NOT EXISTS access_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    resource_key INTEGER NOT NULL REFERENCES shared_links(id),
    occurred_at TEXT NOT NULL,
    ip_address TEXT NOT NULL,
    user_agent TEXT NOT NULL,
    referrer TEXT NOT NULL,
    country TEXT,
    city TEXT,
    is_download INTEGER NOT NULL,
    status TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_access_events_resource ON access_events(resource_key, occurred_at, id);

CREATE TABLE IF NOT EXISTS admin_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    admin_id TEXT NOT NULL,
    admin_username TEXT NOT NULL,
    target_user_id TEXT,
    target_username TEXT,
    action TEXT NOT NULL,
    details TEXT NOT NULL,
    ip_address TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_admin_logs_created ON admin_logs(created_at, id);

CREATE TRIGGER IF NOT EXISTS shared_links_no_delete BEFORE DELETE ON shared_links
BEGIN
    SELECT RAISE(ABORT, 'shared_links rows are never deleted');
END;

CREATE TRIGGER IF NOT EXISTS shared_links_revoke_only BEFORE UPDATE ON shared_links
WHEN OLD.revoked_at IS NOT NULL
    OR NEW.revoked_at IS NULL
    OR NEW.token IS NOT OLD.token
    OR NEW.issued_at IS NOT OLD.issued_at
    OR NEW.expires_at IS NOT OLD.expires_at
    OR NEW.owner_account_id IS NOT OLD.owner_account_id
    OR NEW.bucket IS NOT OLD.bucket
    OR NEW.path IS NOT OLD.path
    OR NEW.filename IS NOT OLD.filename
    OR NEW.content_type IS NOT OLD.content_type
    OR NEW.size IS NOT OLD.size
    OR NEW.allow_download IS NOT OLD.allow_download
    OR NEW.password_hash IS NOT OLD.password_hash
BEGIN
    SELECT RAISE(ABORT, 'shared_links only accept a single revocation');
END;

CREATE TRIGGER IF NOT EXISTS access_events_no_update BEFORE UPDATE ON access_events
BEGIN
    SELECT RAISE(ABORT, 'access_events is append-only');
END;

CREATE TRIGGER IF NOT EXISTS access_events_no_delete BEFORE DELETE ON access_events
BEGIN
    SELECT RAISE(ABORT, 'access_events is append-only');
END;

CREATE TRIGGER IF NOT EXISTS admin_logs_no_update BEFORE UPDATE ON admin_logs
BEGIN
    SELECT RAISE(ABORT, 'admin_logs is append-only');
END;

CREATE TRIGGER IF NOT EXISTS admin_logs_no_delete BEFORE DELETE ON admin_logs
BEGIN
    SELECT RAISE(ABORT, 'admin_logs is append-only');
END;
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    def __init__(self, db_path: str, *, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def connect(self):
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(shared_links)")}
            if columns and "password_hash" not in columns:
                logger.info("adding password_hash column to shared_links")
                conn.execute("ALTER TABLE shared_links ADD COLUMN password_hash TEXT")
                # recreated below against the new column
                conn.execute("DROP TRIGGER IF EXISTS shared_links_revoke_only")
            conn.executescript(SCHEMA)


def run_with_retry(operation: Callable[[], T], *, retries: int, what: str) -> T:
    """Run ``operation``, retrying transient SQLite errors ``retries`` times."""
    attempt = 0
    while True:
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            if attempt >= retries:
                logger.error("%s failed after %d attempt(s): %s", what, attempt + 1, exc)
                raise StorageUnavailable() from exc
            attempt += 1
            logger.warning("%s hit a transient storage error, retrying: %s", what, exc)


def _row_to_link(row: sqlite3.Row) -> SharedLink:
    return SharedLink(
        id=row["id"],
        token=row["token"],
        owner_account_id=row["owner_account_id"],
        bucket=row["bucket"],
        path=row["path"],
        filename=row["filename"],
        content_type=row["content_type"],
        size=row["size"],
        allow_download=bool(row["allow_download"]),
        issued_at=from_db_time(row["issued_at"]),
        expires_at=from_db_time(row["expires_at"]),
        revoked_at=from_db_time(row["revoked_at"]),
        password_hash=row["password_hash"],
    )


class LinkRepository:
    def __init__(self, database: Database):
        self.database = database

    def token_exists(self, token: str) -> bool:
        with self.database.connect() as conn:
            row = conn.execute("SELECT 1 FROM shared_links WHERE token = ?", (token,)).fetchone()
        return row is not None

    def insert(
        self,
        *,
        token: str,
        ref: ResourceRef,
        content_type: str | None,
        size: int,
        allow_download: bool,
        issued_at: datetime,
        expires_at: datetime,
        password_hash: str | None = None,
    ) -> SharedLink:
        with self.database.connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO shared_links(
                        token, owner_account_id, bucket, path, filename,
                        content_type, size, allow_download, issued_at, expires_at, password_hash
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        token,
                        ref.account_id,
                        ref.bucket,
                        ref.path,
                        ref.filename,
                        content_type,
                        size,
                        int(allow_download),
                        to_db_time(issued_at),
                        to_db_time(expires_at),
                        password_hash,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "shared_links.token" in str(exc):
                    raise TokenCollision() from exc
                raise
            row = conn.execute("SELECT * FROM shared_links WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _row_to_link(row)

    def get(self, link_id: int) -> SharedLink | None:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM shared_links WHERE id = ?", (link_id,)).fetchone()
        return _row_to_link(row) if row else None

    def get_by_token(self, token: str) -> SharedLink | None:
        with self.database.connect() as conn:
            row = conn.execute("SELECT * FROM shared_links WHERE token = ?", (token,)).fetchone()
        return _row_to_link(row) if row else None

    def list_for_owner(self, owner_account_id: str) -> list[SharedLink]:
        with self.database.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM shared_links
                WHERE owner_account_id = ?
                ORDER BY issued_at DESC, id DESC
                """,
                (owner_account_id,),
            ).fetchall()
        return [_row_to_link(row) for row in rows]

    def mark_revoked(self, token: str, revoked_at: datetime) -> SharedLink | None:
        """Set revoked_at once; later calls leave the first timestamp in place."""
        with self.database.connect() as conn:
            conn.execute(
                "UPDATE shared_links SET revoked_at = ? WHERE token = ? AND revoked_at IS NULL",
                (to_db_time(revoked_at), token),
            )
            row = conn.execute("SELECT * FROM shared_links WHERE token = ?", (token,)).fetchone()
        return _row_to_link(row) if row else None

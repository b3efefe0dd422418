"""Append-only event storage shared by access events and admin audit entries.

A log only ever inserts rows and reads them back in time order. Ids and
timestamps are assigned by the server inside a single write transaction, so
the order of ``id`` always agrees with the order of the time column within a
scope, even when the wall clock steps backwards.
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Mapping, TypeVar

from shareaudit.repository import Database, from_db_time, run_with_retry, to_db_time, utc_now

InputT = TypeVar("InputT")
EventT = TypeVar("EventT")


@dataclass(frozen=True)
class LogSchema(Generic[InputT, EventT]):
    table: str
    time_column: str
    encode: Callable[[InputT], dict[str, Any]]
    decode: Callable[[sqlite3.Row], EventT]
    scope_column: str | None = None
    scope_table: str | None = None
    missing_scope: Callable[[Any], Exception] | None = None
    filter_columns: frozenset[str] = field(default_factory=frozenset)


class AppendOnlyLog(Generic[InputT, EventT]):
    def __init__(
        self,
        database: Database,
        schema: LogSchema[InputT, EventT],
        *,
        clock: Callable[[], datetime] = utc_now,
        retries: int = 1,
    ):
        self.database = database
        self.schema = schema
        self._clock = clock
        self.retries = retries

    def append(self, payload: InputT, *, scope: Any = None) -> EventT:
        return run_with_retry(
            lambda: self._append_once(payload, scope),
            retries=self.retries,
            what=f"append to {self.schema.table}",
        )

    def _append_once(self, payload: InputT, scope: Any) -> EventT:
        schema = self.schema
        values = schema.encode(payload)

        with self.database.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")

            if schema.scope_column is not None:
                if scope is None:
                    raise ValueError(f"{schema.table} entries need a {schema.scope_column}")
                if schema.scope_table is not None:
                    found = conn.execute(
                        f"SELECT 1 FROM {schema.scope_table} WHERE id = ?", (scope,)
                    ).fetchone()
                    if found is None:
                        raise self._missing_scope(scope)
                last = conn.execute(
                    f"SELECT MAX({schema.time_column}) FROM {schema.table} WHERE {schema.scope_column} = ?",
                    (scope,),
                ).fetchone()[0]
                values[schema.scope_column] = scope
            else:
                last = conn.execute(f"SELECT MAX({schema.time_column}) FROM {schema.table}").fetchone()[0]

            recorded_at = self._clock()
            previous = from_db_time(last)
            if previous is not None and previous > recorded_at:
                recorded_at = previous
            values[schema.time_column] = to_db_time(recorded_at)

            columns = list(values)
            placeholders = ", ".join("?" for _ in columns)
            cursor = conn.execute(
                f"INSERT INTO {schema.table}({', '.join(columns)}) VALUES({placeholders})",
                [values[name] for name in columns],
            )
            row = conn.execute(f"SELECT * FROM {schema.table} WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return schema.decode(row)

    def _missing_scope(self, scope: Any) -> Exception:
        if self.schema.missing_scope is not None:
            return self.schema.missing_scope(scope)
        return LookupError(f"{self.schema.scope_table} {scope!r} does not exist")

    def _where(
        self,
        scope: Any,
        filters: Mapping[str, Any] | None,
        since: datetime | None,
        until: datetime | None,
    ) -> tuple[str, list[Any]]:
        schema = self.schema
        clauses: list[str] = []
        params: list[Any] = []

        if scope is not None:
            if schema.scope_column is None:
                raise ValueError(f"{schema.table} is not scoped")
            clauses.append(f"{schema.scope_column} = ?")
            params.append(scope)
        for name, value in (filters or {}).items():
            if value is None:
                continue
            if name not in schema.filter_columns:
                raise ValueError(f"cannot filter {schema.table} by {name}")
            clauses.append(f"{name} = ?")
            params.append(value)
        if since is not None:
            clauses.append(f"{schema.time_column} >= ?")
            params.append(to_db_time(since))
        if until is not None:
            clauses.append(f"{schema.time_column} < ?")
            params.append(to_db_time(until))

        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def list(
        self,
        *,
        scope: Any = None,
        filters: Mapping[str, Any] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[EventT]:
        schema = self.schema
        where, params = self._where(scope, filters, since, until)

        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {schema.table}{where}"
        sql += f" ORDER BY {schema.time_column} {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)

        def fetch() -> list[EventT]:
            with self.database.connect() as conn:
                rows = conn.execute(sql, params).fetchall()
            return [schema.decode(row) for row in rows]

        return run_with_retry(fetch, retries=self.retries, what=f"read from {schema.table}")

    def count(
        self,
        *,
        scope: Any = None,
        filters: Mapping[str, Any] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        where, params = self._where(scope, filters, since, until)
        sql = f"SELECT COUNT(*) FROM {self.schema.table}{where}"

        def fetch() -> int:
            with self.database.connect() as conn:
                return conn.execute(sql, params).fetchone()[0]

        return run_with_retry(fetch, retries=self.retries, what=f"count {self.schema.table}")

"""Record store for the business objects behaviors read and mutate.

The engine treats records as opaque documents grouped by collection. Cross-run
consistency (one contact per email, for example) is the behavior's job,
enforced with :meth:`RecordStore.upsert` on a natural key.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

from layerflow.core.state import Database, _utc_now, from_db_time, safe_json_dumps, to_db_time


class Record(BaseModel):
    """A stored business object."""

    id: str
    collection: str
    key: str | None = None  # Natural key for upserts (e.g. a contact's email)
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class RecordStore(Protocol):
    """Document store interface consumed by behaviors."""

    def get(self, collection: str, record_id: str) -> Record | None: ...

    def find(self, collection: str, key: str) -> Record | None: ...

    def create(self, collection: str, data: dict[str, Any], key: str | None = None) -> Record: ...

    def upsert(self, collection: str, key: str, data: dict[str, Any]) -> tuple[Record, bool]: ...

    def update(self, collection: str, record_id: str, data: dict[str, Any]) -> Record | None: ...

    def query(self, collection: str, **equals: Any) -> list[Record]: ...


class SqliteRecordStore:
    """RecordStore backed by the engine database's ``records`` table."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, collection: str, record_id: str) -> Record | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE collection = ? AND id = ?", (collection, record_id)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def find(self, collection: str, key: str) -> Record | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE collection = ? AND key = ?", (collection, key)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def create(self, collection: str, data: dict[str, Any], key: str | None = None) -> Record:
        """Insert a new record. Raises sqlite3.IntegrityError on a duplicate key."""
        record_id = str(uuid.uuid4())
        now = to_db_time(_utc_now())
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO records (id, collection, key, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (record_id, collection, key, safe_json_dumps(data), now, now),
            )
            row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
            return self._row_to_record(row)

    def upsert(self, collection: str, key: str, data: dict[str, Any]) -> tuple[Record, bool]:
        """Create the record for ``key`` or merge ``data`` into the existing one.

        Returns ``(record, created)``. Runs under BEGIN IMMEDIATE so two runs
        upserting the same key never produce two records.
        """

        def apply(conn: sqlite3.Connection) -> tuple[Record, bool]:
            now = to_db_time(_utc_now())
            row = conn.execute(
                "SELECT * FROM records WHERE collection = ? AND key = ?", (collection, key)
            ).fetchone()
            if row is None:
                record_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO records (id, collection, key, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (record_id, collection, key, safe_json_dumps(data), now, now),
                )
                created = True
            else:
                record_id = row["id"]
                merged = {**json.loads(row["data"]), **data}
                conn.execute(
                    "UPDATE records SET data = ?, updated_at = ? WHERE id = ?",
                    (safe_json_dumps(merged), now, record_id),
                )
                created = False
            fresh = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
            return self._row_to_record(fresh), created

        return self.db.run_in_transaction(apply)

    def update(self, collection: str, record_id: str, data: dict[str, Any]) -> Record | None:
        """Merge ``data`` into an existing record. Returns None if it does not exist."""

        def apply(conn: sqlite3.Connection) -> Record | None:
            row = conn.execute(
                "SELECT * FROM records WHERE collection = ? AND id = ?", (collection, record_id)
            ).fetchone()
            if row is None:
                return None
            merged = {**json.loads(row["data"]), **data}
            conn.execute(
                "UPDATE records SET data = ?, updated_at = ? WHERE id = ?",
                (safe_json_dumps(merged), to_db_time(_utc_now()), record_id),
            )
            fresh = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
            return self._row_to_record(fresh)

        return self.db.run_in_transaction(apply)

    def query(self, collection: str, **equals: Any) -> list[Record]:
        """Records in ``collection`` whose top-level fields equal the given values."""
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for field_name, value in equals.items():
            if not field_name.isidentifier():
                raise ValueError(f"Invalid field name: {field_name}")
            clauses.append(f"json_extract(data, '$.{field_name}') = ?")
            params.append(value)
        with self.db._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM records WHERE {' AND '.join(clauses)} ORDER BY created_at, rowid",
                params,
            ).fetchall()
            return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            collection=row["collection"],
            key=row["key"],
            data=json.loads(row["data"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

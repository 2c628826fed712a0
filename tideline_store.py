#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Local occurrence store.

SQLite-backed keyed store of Occurrence records, independent of the template
repository. Every coroutine serializes on one asyncio.Lock and runs the
blocking SQLite call in a worker thread. Writes are upserts so retries are
idempotent.
"""
from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from datetime import date
from typing import Iterable

from tideline_core import (
    Occurrence,
    StoreError,
    default_db_path,
    diag,
    local_today,
    now_iso,
)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS occurrences (
    id TEXT PRIMARY KEY,
    template_id TEXT NOT NULL,
    occurrence_date TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    base_fields TEXT NOT NULL,
    overrides TEXT NOT NULL,
    completion_status INTEGER NOT NULL,
    is_clone INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    last_modified TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_occurrences_template_id ON occurrences(template_id);
CREATE INDEX IF NOT EXISTS idx_occurrences_date ON occurrences(occurrence_date);
CREATE INDEX IF NOT EXISTS idx_occurrences_completion ON occurrences(completion_status);
"""

_COLUMNS = (
    "id", "template_id", "occurrence_date", "sequence_number", "base_fields",
    "overrides", "completion_status", "is_clone", "created_at", "last_modified",
)


class OccurrenceStore:
    """
    Usage::

        async with OccurrenceStore(path) as store:
            await store.upsert(occ)
            occs = await store.get_by_template("T1")

    ``path`` may be ":memory:" for a throwaway store.
    """

    def __init__(self, db_path: str | os.PathLike | None = None) -> None:
        self._db_path = str(db_path) if db_path else default_db_path()
        self._lock = asyncio.Lock()
        self._conn: sqlite3.Connection | None = None

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------ lifecycle
    async def open(self) -> "OccurrenceStore":
        async with self._lock:
            if self._conn is None:
                self._conn = await asyncio.to_thread(self._open_sync)
        return self

    def _open_sync(self) -> sqlite3.Connection:
        if self._db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(self._db_path))
            os.makedirs(parent, exist_ok=True)
        try:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open occurrence store {self._db_path}: {e}") from e
        diag(f"occurrence store opened: {self._db_path}", "store")
        return conn

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                conn, self._conn = self._conn, None
                await asyncio.to_thread(conn.close)

    async def __aenter__(self) -> "OccurrenceStore":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------ plumbing
    async def _run(self, fn, *args):
        if self._conn is None:
            await self.open()
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, self._conn, *args)
            except sqlite3.Error as e:
                raise StoreError(f"{fn.__name__.strip('_')}: {e}") from e

    @staticmethod
    def _row_to_occurrence(row: sqlite3.Row) -> Occurrence:
        return Occurrence(
            id=row["id"],
            template_id=row["template_id"],
            occurrence_date=row["occurrence_date"],
            sequence_number=int(row["sequence_number"]),
            base_fields=json.loads(row["base_fields"] or "{}"),
            overrides=json.loads(row["overrides"] or "{}"),
            completion_status=bool(row["completion_status"]),
            is_clone=bool(row["is_clone"]),
            created_at=row["created_at"],
            last_modified=row["last_modified"],
        )

    @staticmethod
    def _occurrence_to_row(occ: Occurrence) -> tuple:
        stamp = now_iso()
        return (
            occ.id,
            occ.template_id,
            occ.occurrence_date,
            int(occ.sequence_number),
            json.dumps(occ.base_fields, ensure_ascii=False, sort_keys=True, default=str),
            json.dumps(occ.overrides, ensure_ascii=False, sort_keys=True, default=str),
            1 if occ.completion_status else 0,
            1 if occ.is_clone else 0,
            occ.created_at or stamp,
            occ.last_modified or stamp,
        )

    # ------------------------------------------------------------------ reads
    async def get_all(self) -> list[Occurrence]:
        return await self._run(self._get_all_sync)

    def _get_all_sync(self, conn: sqlite3.Connection) -> list[Occurrence]:
        rows = conn.execute(
            "SELECT * FROM occurrences ORDER BY template_id, occurrence_date, id"
        ).fetchall()
        return [self._row_to_occurrence(r) for r in rows]

    async def get(self, occurrence_id: str) -> Occurrence | None:
        return await self._run(self._get_sync, occurrence_id)

    def _get_sync(self, conn: sqlite3.Connection, occurrence_id: str) -> Occurrence | None:
        row = conn.execute("SELECT * FROM occurrences WHERE id = ?", (occurrence_id,)).fetchone()
        return self._row_to_occurrence(row) if row is not None else None

    async def get_by_template(self, template_id: str) -> list[Occurrence]:
        return await self._run(self._get_by_template_sync, template_id)

    def _get_by_template_sync(self, conn: sqlite3.Connection, template_id: str) -> list[Occurrence]:
        rows = conn.execute(
            "SELECT * FROM occurrences WHERE template_id = ? ORDER BY occurrence_date, id",
            (template_id,),
        ).fetchall()
        return [self._row_to_occurrence(r) for r in rows]

    async def template_ids(self) -> set[str]:
        return await self._run(self._template_ids_sync)

    def _template_ids_sync(self, conn: sqlite3.Connection) -> set[str]:
        return {r[0] for r in conn.execute("SELECT DISTINCT template_id FROM occurrences")}

    # ------------------------------------------------------------------ writes
    async def upsert(self, occ: Occurrence) -> Occurrence:
        await self._run(self._upsert_sync, occ)
        return occ

    def _upsert_sync(self, conn: sqlite3.Connection, occ: Occurrence) -> None:
        row = self._occurrence_to_row(occ)
        placeholders = ", ".join(["?"] * len(_COLUMNS))
        updates = ", ".join(f"{c} = excluded.{c}" for c in _COLUMNS if c not in ("id", "created_at"))
        with conn:
            conn.execute(
                f"INSERT INTO occurrences ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                row,
            )

    async def upsert_many(self, occs: Iterable[Occurrence]) -> None:
        for occ in occs:
            await self.upsert(occ)

    async def delete(self, occurrence_id: str) -> bool:
        return await self._run(self._delete_sync, occurrence_id)

    def _delete_sync(self, conn: sqlite3.Connection, occurrence_id: str) -> bool:
        with conn:
            cur = conn.execute("DELETE FROM occurrences WHERE id = ?", (occurrence_id,))
        return cur.rowcount > 0

    async def delete_by_template(self, template_id: str) -> int:
        return await self._run(self._delete_by_template_sync, template_id)

    def _delete_by_template_sync(self, conn: sqlite3.Connection, template_id: str) -> int:
        with conn:
            cur = conn.execute("DELETE FROM occurrences WHERE template_id = ?", (template_id,))
        return cur.rowcount

    async def clear(self) -> int:
        return await self._run(self._clear_sync)

    def _clear_sync(self, conn: sqlite3.Connection) -> int:
        with conn:
            cur = conn.execute("DELETE FROM occurrences")
        return cur.rowcount

    # ------------------------------------------------------------------ stats
    async def stats(self, today: date | None = None) -> dict:
        """Counts of total / completed / pending / overdue occurrences."""
        return await self._run(self._stats_sync, (today or local_today()).isoformat())

    def _stats_sync(self, conn: sqlite3.Connection, today_iso: str) -> dict:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(completion_status), 0) AS completed,
                COALESCE(SUM(CASE WHEN completion_status = 0 THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN completion_status = 0 AND occurrence_date < ? THEN 1 ELSE 0 END), 0) AS overdue
            FROM occurrences
            """,
            (today_iso,),
        ).fetchone()
        return {k: int(row[k]) for k in ("total", "completed", "pending", "overdue")}

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Template repository adapters.

The engine only needs ``get_all``, ``update``, ``delete`` and ``add``. Records
are kept in the external list layout (``Task``, ``Deadline``, ``Recurring``
as Yes/No, ``ResponsibleParty`` as a ";"-joined string, ...); this module is
the only place that layout is known.
"""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
import uuid
from contextlib import contextmanager, nullcontext
from typing import Any, Callable, Iterable, Mapping, Protocol

try:
    import fcntl  # POSIX advisory lock
except Exception:
    fcntl = None

from tideline_core import (
    TEMPLATE_FIELDS,
    TaskNotFoundError,
    Template,
    coerce_bool,
    diag,
    normalize_responsible,
)


class TemplateRepository(Protocol):
    async def get_all(self) -> list[Template]: ...

    async def update(self, template_id: str, fields: Mapping[str, Any]) -> None: ...

    async def delete(self, template_id: str) -> None: ...

    async def add(self, fields: Mapping[str, Any]) -> str: ...


# ==============================================================================
# SECTION: External field mapping
# ==============================================================================
EXTERNAL_FIELD_NAMES = {
    "title": "Task",
    "project": "Project",
    "deadline": "Deadline",
    "responsible": "ResponsibleParty",
    "recurring": "Recurring",
    "interval": "Interval",
    "final_date": "FinalDate",
    "priority": "Priority",
    "notes": "Notes",
    "link": "Link",
    "completed": "Completed_x003f_",
}
_CORE_FIELD_NAMES = {v: k for k, v in EXTERNAL_FIELD_NAMES.items()}
RESPONSIBLE_DELIMITER = ";"
_YES_NO_FIELDS = ("recurring", "completed")


def _to_external(name: str, value):
    if name in _YES_NO_FIELDS:
        return "Yes" if coerce_bool(value) else "No"
    if name == "responsible":
        return RESPONSIBLE_DELIMITER.join(normalize_responsible(value))
    return value


def _from_external(name: str, value):
    if name == "responsible":
        if isinstance(value, str):
            return [p.strip() for p in value.split(RESPONSIBLE_DELIMITER) if p.strip()]
        return value
    return value


def template_from_record(record: Mapping[str, Any]) -> Template:
    """External record -> Template. Unknown keys are ignored."""
    fields = {}
    for ext_name, value in record.items():
        name = _CORE_FIELD_NAMES.get(ext_name)
        if name is not None:
            fields[name] = _from_external(name, value)
    return Template.from_fields(record.get("id"), fields)


def record_from_fields(fields: Mapping[str, Any]) -> dict:
    """Core field names -> external record keys. Unknown keys are ignored."""
    out = {}
    for name, value in fields.items():
        if name in TEMPLATE_FIELDS:
            out[EXTERNAL_FIELD_NAMES[name]] = _to_external(name, value)
    return out


# ==============================================================================
# SECTION: Repositories
# ==============================================================================
class MemoryTemplateRepository:
    """Repository over an in-process dict of external records."""

    def __init__(self, records: Iterable[Mapping[str, Any]] = ()) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, dict] = {}
        for rec in records:
            self._records[str(rec["id"])] = dict(rec)

    def _exclusive(self):
        return nullcontext()

    def _load(self) -> dict[str, dict]:
        return self._records

    def _save(self, records: dict[str, dict]) -> None:
        self._records = records

    def _read(self) -> dict[str, dict]:
        with self._exclusive():
            return dict(self._load())

    def _mutate(self, change: Callable[[dict], Any]):
        """Load, change and save under one exclusive hold; nothing is saved if ``change`` raises."""
        with self._exclusive():
            records = dict(self._load())
            result = change(records)
            self._save(records)
            return result

    @property
    def records(self) -> list[dict]:
        return [dict(r) for r in self._read().values()]

    async def get_all(self) -> list[Template]:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
        return [template_from_record(r) for r in records.values()]

    async def update(self, template_id: str, fields: Mapping[str, Any]) -> None:
        def _apply(records: dict) -> None:
            if template_id not in records:
                raise TaskNotFoundError(f"no template {template_id!r}")
            merged = dict(records[template_id])
            merged.update(record_from_fields(fields))
            records[template_id] = merged

        async with self._lock:
            await asyncio.to_thread(self._mutate, _apply)

    async def delete(self, template_id: str) -> None:
        def _apply(records: dict) -> None:
            if records.pop(template_id, None) is None:
                raise TaskNotFoundError(f"no template {template_id!r}")

        async with self._lock:
            await asyncio.to_thread(self._mutate, _apply)

    async def add(self, fields: Mapping[str, Any]) -> str:
        template_id = str(fields.get("id") or uuid.uuid4().hex[:12])
        rec = record_from_fields(fields)
        rec["id"] = template_id

        def _apply(records: dict) -> None:
            records[template_id] = rec

        async with self._lock:
            await asyncio.to_thread(self._mutate, _apply)
        return template_id


class JsonTemplateRepository(MemoryTemplateRepository):
    """
    Repository persisted as ``{"templates": [record, ...]}`` in a JSON file.

    Every read-modify-write holds an fcntl lock on ``<path>.lock`` so other
    processes writing the same file cannot interleave.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        super().__init__()
        self.path = os.path.abspath(os.path.expanduser(str(path)))

    @contextmanager
    def _exclusive(self):
        if fcntl is None:
            yield
            return
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path + ".lock", "a", encoding="utf-8") as lf:
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    def _load(self) -> dict[str, dict]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        items = data.get("templates", []) if isinstance(data, dict) else data
        out = {}
        for rec in items or []:
            if isinstance(rec, dict) and rec.get("id") is not None:
                out[str(rec["id"])] = rec
            else:
                diag(f"skipping malformed template record in {self.path}", "repository")
        return out

    def _save(self, records: dict[str, dict]) -> None:
        base = os.path.dirname(self.path)
        os.makedirs(base, exist_ok=True)
        payload = json.dumps({"templates": list(records.values())}, ensure_ascii=False, indent=2)
        fd, tmpf = tempfile.mkstemp(dir=base, prefix=".templates.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmpf, self.path)
        finally:
            if os.path.exists(tmpf):
                os.unlink(tmpf)

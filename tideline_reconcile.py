#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Reconciliation & cascade controller.

Sole writer that crosses the template/occurrence boundary:

- ``reconcile_all`` diffs the incoming template set against the last snapshot
  and regenerates only templates that are new or whose schedule changed,
  cascades descriptive edits, and drops occurrences of vanished templates.
  A re-fetch of identical data does nothing.
- ``cascade`` rewrites base snapshots from the template. Completion never
  cascades, and overrides are never touched.
- ``apply_override`` records a per-occurrence deviation.

All writes for one template run under that template's asyncio.Lock.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

from tideline_core import (
    CHANGE_FIELDS,
    OVERRIDABLE_FIELDS,
    SCHEDULE_FIELDS,
    STATUS_FIELDS,
    TEMPLATE_FIELDS,
    InvalidFieldError,
    Occurrence,
    StoreError,
    TaskNotFoundError,
    Template,
    TidelineError,
    diag,
    normalize_field,
    now_iso,
    warn,
)
from tideline_generator import GenerationResult, InstanceGenerator


# ==============================================================================
# SECTION: Change detection (pure)
# ==============================================================================
@dataclass
class TemplateChanges:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: dict[str, frozenset] = field(default_factory=dict)
    unchanged: list[str] = field(default_factory=list)

    @property
    def any(self) -> bool:
        return bool(self.added or self.removed or self.changed)


# Not a regeneration trigger, but still copied into base snapshots by cascade.
BASE_ONLY_FIELDS = ("priority",)


def changed_fields(old: Template, new: Template, names: Iterable[str] = TEMPLATE_FIELDS) -> frozenset:
    return frozenset(n for n in names if getattr(old, n) != getattr(new, n))


def detect_changes(
    previous: Mapping[str, Template],
    incoming: Mapping[str, Template],
    names: Iterable[str] = CHANGE_FIELDS,
) -> TemplateChanges:
    """Compare two template sets field-by-field on ``names``."""
    names = tuple(names)
    out = TemplateChanges()
    for tid, tpl in incoming.items():
        old = previous.get(tid)
        if old is None:
            out.added.append(tid)
            continue
        diff = changed_fields(old, tpl, names)
        if diff:
            out.changed[tid] = diff
        else:
            out.unchanged.append(tid)
    out.removed = [tid for tid in previous if tid not in incoming]
    return out


@dataclass
class ReconcileReport:
    templates: int = 0
    regenerated: list[str] = field(default_factory=list)
    cascaded: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: int = 0
    instance_count: int = 0
    results: list[GenerationResult] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)


# ==============================================================================
# SECTION: Controller
# ==============================================================================
class ReconcileController:
    def __init__(self, store, generator: InstanceGenerator | None = None) -> None:
        self._store = store
        self._generator = generator or InstanceGenerator(store)
        self._snapshot: dict[str, Template] | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self.last_report: ReconcileReport | None = None

    @property
    def store(self):
        return self._store

    @property
    def generator(self) -> InstanceGenerator:
        return self._generator

    @property
    def snapshot(self) -> dict[str, Template]:
        return dict(self._snapshot or {})

    def template_lock(self, template_id: str) -> asyncio.Lock:
        lock = self._locks.get(template_id)
        if lock is None:
            lock = self._locks[template_id] = asyncio.Lock()
        return lock

    def remember(self, template: Template) -> None:
        if self._snapshot is None:
            self._snapshot = {}
        self._snapshot[template.id] = template

    def forget(self, template_id: str) -> None:
        if self._snapshot is not None:
            self._snapshot.pop(template_id, None)
        lock = self._locks.get(template_id)
        if lock is not None and not lock.locked():
            del self._locks[template_id]

    # ------------------------------------------------------------------ whole set
    async def reconcile_all(self, templates: Iterable[Template]) -> int:
        """Bring the occurrence store in line with ``templates``; returns occurrences touched."""
        incoming: dict[str, Template] = {}
        for tpl in templates:
            if tpl.id in incoming:
                diag(f"duplicate template id {tpl.id}; last one wins", "reconcile")
            incoming[tpl.id] = tpl

        first_pass = self._snapshot is None
        previous = self._snapshot or {}
        changes = detect_changes(previous, incoming)
        report = ReconcileReport(templates=len(incoming), unchanged=len(changes.unchanged))
        next_snapshot = dict(incoming)

        removed = list(changes.removed)
        if first_pass:
            try:
                stored = await self._store.template_ids()
            except StoreError as e:
                warn(f"cannot list stored templates: {e}", "reconcile")
                stored = set()
            removed.extend(sorted(tid for tid in stored if tid not in incoming))

        if not incoming:
            try:
                cleared = await self._store.clear()
                diag(f"no templates; cleared {cleared} occurrences", "reconcile")
                for tid in list(self._locks):
                    self.forget(tid)
            except StoreError as e:
                warn(f"failed to clear occurrences: {e}", "reconcile")
                report.errors.append(("*", str(e)))
            removed = []

        for tid in removed:
            try:
                await self.remove_template(tid)
                report.removed.append(tid)
            except StoreError as e:
                warn(f"failed to delete occurrences of removed template {tid}: {e}", "reconcile")
                report.errors.append((tid, str(e)))
                next_snapshot[tid] = previous[tid] if tid in previous else None

        to_regenerate = list(changes.added)
        to_cascade: list[str] = []
        for tid, names in changes.changed.items():
            if names & SCHEDULE_FIELDS:
                to_regenerate.append(tid)
            else:
                to_cascade.append(tid)
        for tid in changes.unchanged:
            if changed_fields(previous[tid], incoming[tid], BASE_ONLY_FIELDS):
                to_cascade.append(tid)
                report.unchanged -= 1

        for tid in to_regenerate:
            tpl = incoming[tid]
            try:
                result = await self.regenerate(tpl)
            except TidelineError as e:
                warn(f"regeneration failed for {tid}: {e}", "reconcile")
                report.errors.append((tid, str(e)))
                self._retry_later(next_snapshot, previous, tid)
                continue
            report.results.append(result)
            report.regenerated.append(tid)
            report.instance_count += len(result.written)
            if result.failures:
                report.errors.extend(result.failures)
                self._retry_later(next_snapshot, previous, tid)

        for tid in to_cascade:
            try:
                touched = await self.cascade(incoming[tid])
            except TidelineError as e:
                warn(f"cascade failed for {tid}: {e}", "reconcile")
                report.errors.append((tid, str(e)))
                self._retry_later(next_snapshot, previous, tid)
                continue
            report.cascaded.append(tid)
            report.instance_count += touched

        self._snapshot = {k: v for k, v in next_snapshot.items() if v is not None}
        self.last_report = report
        if changes.any or first_pass or to_cascade:
            diag(
                f"reconcile: {len(report.regenerated)} regenerated, {len(report.cascaded)} cascaded, "
                f"{len(report.removed)} removed, {report.unchanged} unchanged",
                "reconcile",
            )
        return report.instance_count

    @staticmethod
    def _retry_later(snapshot: dict, previous: Mapping[str, Template], tid: str) -> None:
        # an old (or absent) snapshot entry makes the next pass see the change again
        if tid in previous:
            snapshot[tid] = previous[tid]
        else:
            snapshot[tid] = None

    # ------------------------------------------------------------------ single template
    async def regenerate(self, template: Template) -> GenerationResult:
        async with self.template_lock(template.id):
            return await self._generator.generate(template)

    async def remove_template(self, template_id: str) -> int:
        async with self.template_lock(template_id):
            n = await self._store.delete_by_template(template_id)
        self.forget(template_id)
        diag(f"template {template_id} gone; deleted {n} occurrences", "reconcile")
        return n

    async def cascade(self, template: Template) -> int:
        """Rewrite base snapshots of every occurrence of ``template``; returns how many changed."""
        async with self.template_lock(template.id):
            occs = await self._store.get_by_template(template.id)
            touched = 0
            failures = []
            for occ in occs:
                base = template.to_fields()
                base["deadline"] = occ.occurrence_date
                for name in STATUS_FIELDS:
                    base[name] = occ.base_fields.get(name, False)
                if base == occ.base_fields:
                    continue
                try:
                    await self._store.upsert(replace(occ, base_fields=base, last_modified=now_iso()))
                    touched += 1
                except StoreError as e:
                    warn(f"cascade could not update {occ.id}: {e}", "reconcile")
                    failures.append(occ.id)
        if failures:
            raise StoreError(f"cascade of {template.id} failed for {len(failures)} occurrence(s)")
        diag(f"cascaded {template.id} onto {touched} of {len(occs)} occurrences", "reconcile")
        return touched

    async def template_changed(self, template: Template, names: Iterable[str]) -> str:
        """
        React to a direct edit of ``names`` on ``template``.

        Schedule fields regenerate, status fields do nothing, anything else cascades.
        """
        names = frozenset(names)
        if names & SCHEDULE_FIELDS:
            result = await self.regenerate(template)
            action = "regenerated"
            if result.failures:
                raise StoreError(f"regeneration of {template.id} failed for {len(result.failures)} occurrence(s)")
        elif names - STATUS_FIELDS:
            await self.cascade(template)
            action = "cascaded"
        else:
            action = "none"
        self.remember(template)
        return action

    # ------------------------------------------------------------------ occurrences
    async def _locked_occurrence(self, occurrence_id: str) -> Occurrence:
        occ = await self._store.get(occurrence_id)
        if occ is None:
            raise TaskNotFoundError(f"no occurrence {occurrence_id!r}")
        return occ

    async def apply_override(self, occurrence_id: str, name: str, value) -> Occurrence:
        """Record ``name = value`` as a deviation of one occurrence."""
        if name not in OVERRIDABLE_FIELDS:
            raise InvalidFieldError(f"field {name!r} cannot be changed on a single occurrence")
        value = normalize_field(name, value)
        if name == "responsible":
            value = list(value)
        occ = await self._locked_occurrence(occurrence_id)
        async with self.template_lock(occ.template_id):
            occ = await self._locked_occurrence(occurrence_id)
            overrides = dict(occ.overrides)
            overrides[name] = value
            updated = replace(occ, overrides=overrides, last_modified=now_iso())
            updated.completion_status = updated.derived_completion()
            await self._store.upsert(updated)
        diag(f"override {occurrence_id}.{name}", "reconcile", {name: value})
        return updated

    async def clear_override(self, occurrence_id: str, name: str) -> Occurrence:
        """Drop a deviation so the occurrence follows its base snapshot again."""
        occ = await self._locked_occurrence(occurrence_id)
        async with self.template_lock(occ.template_id):
            occ = await self._locked_occurrence(occurrence_id)
            if name not in occ.overrides:
                return occ
            overrides = {k: v for k, v in occ.overrides.items() if k != name}
            updated = replace(occ, overrides=overrides, last_modified=now_iso())
            updated.completion_status = updated.derived_completion()
            await self._store.upsert(updated)
        return updated

    async def delete_occurrence(self, occurrence_id: str) -> None:
        occ = await self._locked_occurrence(occurrence_id)
        async with self.template_lock(occ.template_id):
            await self._store.delete(occurrence_id)

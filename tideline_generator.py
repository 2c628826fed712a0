#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Instance generator.

Expands one template into its bounded, dated occurrence set and reconciles
that set against what the occurrence store already holds:

- non-recurring templates get a single "_clone" working copy at the deadline
- recurring templates step ``interval`` months from the deadline, computed
  from the anchor and clamped to the month's last day, up to the final date,
  ``open_ended_years`` past the start, and never past the horizon year
- an existing occurrence keeps its overrides, completion and created_at;
  only its base snapshot is refreshed
- occurrences whose date left the schedule are removed (orphan policy)

``plan`` is pure; ``generate`` persists the plan with per-occurrence
failure isolation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

import tideline_core as core
from tideline_core import (
    Occurrence,
    ScheduleError,
    StoreError,
    Template,
    add_months,
    check_template_id,
    clone_id,
    coerce_bool,
    diag,
    now_iso,
    occurrence_id,
    parse_deadline_date,
    warn,
)


@dataclass
class GenerationPlan:
    template_id: str
    occurrences: list[Occurrence] = field(default_factory=list)
    writes: list[Occurrence] = field(default_factory=list)
    stale: list[Occurrence] = field(default_factory=list)
    orphaned: list[Occurrence] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    schedule_ok: bool = True


@dataclass
class GenerationResult:
    template_id: str
    occurrences: list[Occurrence] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    orphaned: list[Occurrence] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    schedule_ok: bool = True

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def count(self) -> int:
        return len(self.occurrences)


def has_deviations(occ: Occurrence) -> bool:
    return any(v is not None for v in (occ.overrides or {}).values())


def schedule_dates(
    start: date,
    interval: int,
    final: date | None = None,
    *,
    horizon_year: int | None = None,
    open_ended_years: int | None = None,
    limit: int | None = None,
) -> list[date]:
    """Occurrence dates from ``start`` every ``interval`` months, inclusive of the end boundary."""
    if interval is None or int(interval) < 1:
        raise ScheduleError(f"interval must be a positive number of months, got {interval!r}")
    horizon = date(horizon_year or core.horizon_year(), 12, 31)
    years = open_ended_years or core.open_ended_years()
    cap = limit or core.max_occurrences()
    if start > horizon:
        return []

    if final is not None:
        end = final
    elif start.year + years > horizon.year:
        end = horizon
    else:
        end = add_months(start, years * 12)
    if end > horizon:
        end = horizon

    out: list[date] = []
    k = 0
    while True:
        months = k * interval
        # stop on the year alone; the date itself may not be representable
        if start.year + (start.month - 1 + months) // 12 > end.year:
            break
        d = add_months(start, months)
        if d > end:
            break
        out.append(d)
        if len(out) >= cap:
            diag(f"schedule from {start.isoformat()} capped at {cap} occurrences", "generator")
            break
        k += 1
    return out


class InstanceGenerator:
    def __init__(
        self,
        store,
        *,
        horizon_year: int | None = None,
        open_ended_years: int | None = None,
        max_occurrences: int | None = None,
        orphan_policy: str | None = None,
    ) -> None:
        self._store = store
        self.horizon_year = horizon_year or core.horizon_year()
        self.open_ended_years = open_ended_years or core.open_ended_years()
        self.max_occurrences = max_occurrences or core.max_occurrences()
        self.orphan_policy = (orphan_policy or core.orphan_policy()).lower()

    # ------------------------------------------------------------------ schedule
    def expand(self, template: Template) -> list[date]:
        """Dates for a recurring template; raises ScheduleError when it has no usable schedule."""
        start = parse_deadline_date(template.deadline)
        if start is None:
            raise ScheduleError(f"template {template.id}: start date {template.deadline!r} is not a date")
        interval = template.interval
        if interval is None or interval < 1:
            raise ScheduleError(f"template {template.id}: invalid interval {interval!r}")
        final = None
        if template.final_date:
            final = parse_deadline_date(template.final_date)
            if final is None:
                diag(f"template {template.id}: final date {template.final_date!r} unparseable; open-ended", "generator")
        try:
            return schedule_dates(
                start,
                interval,
                final,
                horizon_year=self.horizon_year,
                open_ended_years=self.open_ended_years,
                limit=self.max_occurrences,
            )
        except (ValueError, OverflowError) as e:
            if isinstance(e, ScheduleError):
                raise
            raise ScheduleError(f"template {template.id}: schedule out of range: {e}") from e

    # ------------------------------------------------------------------ planning
    def _build(
        self,
        template: Template,
        occ_id: str,
        when: date,
        seq: int,
        prev: Occurrence | None,
        clone: bool,
        stamp: str,
    ) -> Occurrence:
        base = template.to_fields()
        base["deadline"] = when.isoformat()
        if prev is not None:
            base["completed"] = coerce_bool(prev.base_fields.get("completed"), False)
        else:
            base["completed"] = bool(template.completed) if clone else False

        occ = Occurrence(
            id=occ_id,
            template_id=template.id,
            occurrence_date=when.isoformat(),
            sequence_number=seq,
            base_fields=base,
            overrides=dict(prev.overrides) if prev is not None else {},
            is_clone=clone,
            created_at=prev.created_at if prev is not None else stamp,
            last_modified=prev.last_modified if prev is not None else stamp,
        )
        occ.completion_status = bool(prev.completion_status) if prev is not None else occ.derived_completion()
        return occ

    def plan(self, template: Template, existing: list[Occurrence] | None = None) -> GenerationPlan:
        tid = check_template_id(template.id)
        plan = GenerationPlan(template_id=tid)
        by_id: dict[str, Occurrence] = {}
        for occ in existing or []:
            if occ.template_id != tid:
                plan.diagnostics.append(f"ignoring occurrence {occ.id} owned by {occ.template_id}")
                continue
            by_id[occ.id] = occ

        stamp = now_iso()
        if template.recurring:
            try:
                dates = self.expand(template)
            except ScheduleError as e:
                # keep whatever is stored; a stale schedule beats lost deviations
                plan.schedule_ok = False
                plan.diagnostics.append(str(e))
                return plan
            for seq, when in enumerate(dates):
                oid = occurrence_id(tid, when)
                occ = self._build(template, oid, when, seq, by_id.get(oid), False, stamp)
                plan.occurrences.append(occ)
        else:
            when = parse_deadline_date(template.deadline)
            if when is None:
                plan.schedule_ok = False
                plan.diagnostics.append(f"template {tid}: no valid deadline; no working copy")
                # it stopped recurring: dated occurrences go, an earlier clone stays
                plan.stale = [o for o in by_id.values() if not o.is_clone]
                self._split_orphans(plan)
                return plan
            oid = clone_id(tid)
            plan.occurrences.append(self._build(template, oid, when, 0, by_id.get(oid), True, stamp))

        wanted = {o.id for o in plan.occurrences}
        for occ in plan.occurrences:
            prev = by_id.get(occ.id)
            if prev is not None and occ.same_content(prev):
                continue
            occ.last_modified = stamp
            plan.writes.append(occ)
        plan.stale = [o for o in by_id.values() if o.id not in wanted]
        self._split_orphans(plan)
        return plan

    def _split_orphans(self, plan: GenerationPlan) -> None:
        plan.orphaned = [o for o in plan.stale if has_deviations(o)]
        if self.orphan_policy == "warn":
            keep = {o.id for o in plan.orphaned}
            plan.stale = [o for o in plan.stale if o.id not in keep]

    # ------------------------------------------------------------------ persistence
    async def generate(self, template: Template, existing: list[Occurrence] | None = None) -> GenerationResult:
        """Plan and persist the occurrences for one template."""
        tid = check_template_id(template.id)
        if existing is None:
            existing = await self._store.get_by_template(tid)
        plan = self.plan(template, existing)
        result = GenerationResult(
            template_id=tid,
            occurrences=list(plan.occurrences),
            orphaned=list(plan.orphaned),
            diagnostics=list(plan.diagnostics),
            schedule_ok=plan.schedule_ok,
        )
        for msg in plan.diagnostics:
            diag(msg, "generator")

        for occ in plan.writes:
            try:
                await self._store.upsert(occ)
                result.written.append(occ.id)
            except StoreError as e:
                warn(f"failed to save occurrence {occ.id}: {e}", "generator")
                result.failures.append((occ.id, str(e)))

        for occ in plan.stale:
            try:
                await self._store.delete(occ.id)
                result.deleted.append(occ.id)
            except StoreError as e:
                warn(f"failed to delete occurrence {occ.id}: {e}", "generator")
                result.failures.append((occ.id, str(e)))

        for occ in plan.orphaned:
            kept = "kept" if self.orphan_policy == "warn" else "discarded"
            warn(
                f"occurrence {occ.id} left the schedule of {tid}; its deviations were {kept}",
                "generator",
                {"overrides": occ.overrides},
            )

        if plan.schedule_ok:
            diag(
                f"template {tid}: {result.count} occurrences, "
                f"{len(result.written)} written, {len(result.deleted)} removed",
                "generator",
            )
        return result

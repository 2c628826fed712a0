#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Tideline Engine Tests
 - Drives the occurrence store, instance generator, reconciliation controller and
   combined task store against an in-memory SQLite store (safe temp data dir)
 - Covers identity stability, override survival, status non-cascade, deletion on
   schedule change, per-occurrence failure isolation, FIFO mutation order and routing

Run:
  python3 tools/tideline_engine_tests.py
Optional:
  python3 tools/tideline_engine_tests.py --only cascade --verbose
"""

import asyncio
import contextlib
import io
import json
import os
import sys
import tempfile
from dataclasses import replace
from datetime import date

HERE = os.path.dirname(os.path.abspath(__file__))
ROOT = os.path.dirname(HERE)
sys.path.insert(0, ROOT)
sys.path.insert(0, HERE)

os.environ.setdefault("TIDELINE_DATA", tempfile.mkdtemp(prefix="tideline-engine-"))

from tideline_core import (  # noqa: E402
    InvalidFieldError,
    Occurrence,
    OccurrenceIdentityError,
    StoreError,
    TaskNotFoundError,
    Template,
    TemplatePatch,
)
from tideline_generator import InstanceGenerator  # noqa: E402
from tideline_reconcile import ReconcileController  # noqa: E402
from tideline_repository import (  # noqa: E402
    JsonTemplateRepository,
    MemoryTemplateRepository,
    record_from_fields,
    template_from_record,
)
from tideline_store import OccurrenceStore  # noqa: E402
from tideline_tasks import CombinedTaskStore, refresh_forever  # noqa: E402

# -------- Helpers -------------------------------------------------------------

def expect(cond, msg):
    if not cond:
        raise AssertionError(msg)

def run(coro):
    return asyncio.run(coro)

TODAY = date(2024, 6, 1)

T1_RECORD = {
    "id": "T1",
    "Task": "Monthly report",
    "Project": "Ops",
    "Recurring": "Yes",
    "Interval": 2,
    "Deadline": "2024-01-15",
    "FinalDate": "2024-07-15",
    "Priority": "Normal",
    "ResponsibleParty": "alice;bob",
    "Completed_x003f_": "No",
}

T1_IDS = ["T1|2024-01-15", "T1|2024-03-15", "T1|2024-05-15", "T1|2024-07-15"]

def quarterly(**kw):
    fields = dict(id="Q", title="Quarterly", deadline="2024-01-15", recurring=True, interval=3, final_date="2024-12-31")
    fields.update(kw)
    return Template(**fields)

def make_generator(store, policy="delete"):
    return InstanceGenerator(store, horizon_year=2050, open_ended_years=50, max_occurrences=5000, orphan_policy=policy)

def make_controller(store, policy="delete"):
    return ReconcileController(store, make_generator(store, policy))

async def combined(records=(T1_RECORD,)):
    store = await OccurrenceStore(":memory:").open()
    repo = MemoryTemplateRepository(records)
    controller = make_controller(store)
    tasks = await CombinedTaskStore.create(controller, repo, today=lambda: TODAY)
    return store, repo, controller, tasks

class FlakyStore(OccurrenceStore):
    """Occurrence store whose upsert fails for selected ids."""

    def __init__(self, fail_ids=()):
        super().__init__(":memory:")
        self.fail_ids = set(fail_ids)

    async def upsert(self, occ):
        if occ.id in self.fail_ids:
            raise StoreError(f"simulated write failure for {occ.id}")
        return await super().upsert(occ)

# -------- Occurrence store ------------------------------------------------------

def test_store_crud_and_stats():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            a = Occurrence(id="T|2024-01-01", template_id="T", occurrence_date="2024-01-01", sequence_number=0,
                           base_fields={"title": "a", "completed": False})
            b = Occurrence(id="T|2024-02-01", template_id="T", occurrence_date="2024-02-01", sequence_number=1,
                           base_fields={"title": "a", "completed": False}, completion_status=True)
            c = Occurrence(id="U_clone", template_id="U", occurrence_date="2099-01-01", sequence_number=0,
                           is_clone=True)
            await store.upsert_many([a, b, c])

            got = await store.get(a.id)
            expect(got is not None and got.base_fields == {"title": "a", "completed": False}, f"round trip {got}")
            expect(got.created_at, "created_at stamped")
            await store.upsert(replace(got, overrides={"title": "b"}, created_at="1999-01-01T00:00:00Z"))
            again = await store.get(a.id)
            expect(again.created_at == got.created_at, "created_at survives upsert")
            expect(again.overrides == {"title": "b"}, "overrides updated")

            expect(await store.template_ids() == {"T", "U"}, "template ids")
            expect([o.id for o in await store.get_by_template("T")] == [a.id, b.id], "ordered by date")
            stats = await store.stats(date(2025, 1, 1))
            expect(stats == {"total": 3, "completed": 1, "pending": 2, "overdue": 1}, f"stats {stats}")

            expect(await store.delete(a.id) is True, "delete existing")
            expect(await store.delete(a.id) is False, "delete missing")
            expect(await store.delete_by_template("T") == 1, "delete by template")
            expect(await store.clear() == 1, "clear")
            expect(await store.get_all() == [], "empty")
    run(go())

def test_store_persists_to_disk():
    async def go():
        path = os.path.join(tempfile.mkdtemp(), "nested", "occ.sqlite3")
        occ = Occurrence(id="T_clone", template_id="T", occurrence_date="2024-01-01", sequence_number=0, is_clone=True)
        async with OccurrenceStore(path) as store:
            await store.upsert(occ)
        async with OccurrenceStore(path) as store:
            got = await store.get("T_clone")
        expect(got is not None and got.is_clone, "record survives reopen")
    run(go())

# -------- Generator -------------------------------------------------------------

def test_regeneration_is_idempotent():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            gen = make_generator(store)
            first = await gen.generate(quarterly())
            expect(len(first.written) == 4, f"written {first.written}")
            before = await store.get_all()
            second = await gen.generate(quarterly())
            after = await store.get_all()
            expect(second.written == [] and second.deleted == [], "no spurious writes")
            expect([(o.id, o.occurrence_date, o.overrides, o.last_modified) for o in after]
                   == [(o.id, o.occurrence_date, o.overrides, o.last_modified) for o in before], "identical records")
    run(go())

def test_write_failures_are_isolated():
    async def go():
        store = await FlakyStore({"Q|2024-04-15"}).open()
        result = await make_generator(store).generate(quarterly())
        expect(not result.ok and [f[0] for f in result.failures] == ["Q|2024-04-15"], f"failures {result.failures}")
        expect(len(result.written) == 3, "other occurrences still written")
        expect(len(await store.get_all()) == 3, "three stored")
        await store.close()
    run(go())

def test_identity_errors_stop_before_the_store():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            try:
                await make_generator(store).generate(quarterly(id="bad|id"))
            except OccurrenceIdentityError:
                pass
            else:
                raise AssertionError("reserved separator in template id must be rejected")
            expect(await store.get_all() == [], "nothing written")
    run(go())

# -------- Reconciliation --------------------------------------------------------

def test_override_survives_descriptive_change():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            expect(await ctl.reconcile_all([quarterly()]) == 4, "first pass generates")
            await ctl.apply_override("Q|2024-04-15", "completed", True)
            touched = await ctl.reconcile_all([quarterly(notes="bring coffee")])
            expect(touched == 4, f"all four bases rewritten, got {touched}")
            occ = await store.get("Q|2024-04-15")
            expect(occ.completion_status is True and occ.overrides == {"completed": True}, "completion kept")
            expect(occ.base_fields["notes"] == "bring coffee", "notes cascaded")
            expect(occ.base_fields["completed"] is False, "completion never cascades into base")
            expect(ctl.last_report.cascaded == ["Q"], f"report {ctl.last_report}")
    run(go())

def test_unchanged_refetch_is_a_no_op():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            await ctl.reconcile_all([quarterly()])
            await ctl.apply_override("Q|2024-07-15", "title", "Special")
            expect(await ctl.reconcile_all([quarterly()]) == 0, "nothing touched")
            expect(await ctl.reconcile_all([quarterly(completed=True)]) == 0,
                   "template completion does not reach occurrences")
            occ = await store.get("Q|2024-07-15")
            expect(occ.overrides == {"title": "Special"}, "deviation intact")
    run(go())

def test_interval_change_drops_off_cadence_dates():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            monthly = quarterly(interval=1)
            await ctl.reconcile_all([monthly])
            expect(len(await store.get_all()) == 12, "twelve monthly occurrences")
            await ctl.apply_override("Q|2024-04-15", "notes", "kept")
            await ctl.apply_override("Q|2024-02-15", "notes", "lost")
            await ctl.reconcile_all([quarterly(interval=3)])
            ids = [o.id for o in await store.get_all()]
            expect(ids == ["Q|2024-01-15", "Q|2024-04-15", "Q|2024-07-15", "Q|2024-10-15"], f"ids {ids}")
            kept = await store.get("Q|2024-04-15")
            expect(kept.overrides == {"notes": "kept"} and kept.sequence_number == 1, "deviation on a surviving date")
    run(go())

def test_orphan_warn_policy_keeps_deviating_occurrences():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store, policy="warn")
            await ctl.reconcile_all([quarterly(interval=1)])
            await ctl.apply_override("Q|2024-02-15", "notes", "keep me")
            await ctl.reconcile_all([quarterly(interval=3)])
            ids = {o.id for o in await store.get_all()}
            expect("Q|2024-02-15" in ids and "Q|2024-03-15" not in ids, f"ids {sorted(ids)}")
            expect(len(ids) == 5, "four on cadence plus the orphan")
    run(go())

def test_invalid_schedule_leaves_occurrences_alone():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            await ctl.reconcile_all([quarterly()])
            await ctl.reconcile_all([quarterly(interval=None)])
            expect(len(await store.get_all()) == 4, "stale schedule kept")
            result = ctl.last_report.results[0]
            expect(result.schedule_ok is False and result.diagnostics, "diagnostic reported")
    run(go())

def test_far_future_templates_do_not_block_the_pass():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            touched = await ctl.reconcile_all([
                quarterly(id="FAR", deadline="9999-12-31", interval=1, final_date=None),
                quarterly(id="BIG", interval=200000, final_date=None),
                quarterly(id="OK"),
            ])
            expect(touched == 5, f"OK's four plus BIG's one, got {touched}")
            expect(await store.template_ids() == {"BIG", "OK"}, "nothing past the horizon")
            expect(ctl.last_report.errors == [], f"errors {ctl.last_report.errors}")
            expect(await ctl.reconcile_all([
                quarterly(id="FAR", deadline="9999-12-31", interval=1, final_date=None),
                quarterly(id="BIG", interval=200000, final_date=None),
                quarterly(id="OK"),
            ]) == 0, "later passes stay quiet")
    run(go())

def test_stopping_recurrence_leaves_only_the_clone():
    async def go():
        for policy, want in (("delete", ["Q_clone"]), ("warn", ["Q_clone", "Q|2024-04-15"])):
            async with OccurrenceStore(":memory:") as store:
                ctl = make_controller(store, policy=policy)
                await ctl.reconcile_all([quarterly()])
                await ctl.apply_override("Q|2024-04-15", "notes", "signed off")
                await ctl.reconcile_all([quarterly(recurring=False)])
                ids = [o.id for o in await store.get_all()]
                expect(ids == want, f"{policy}: ids {ids}")
                clone = await store.get("Q_clone")
                expect(clone.is_clone and clone.occurrence_date == "2024-01-15", f"{policy}: clone {clone}")
                orphaned = [o.id for o in ctl.last_report.results[0].orphaned]
                expect(orphaned == ["Q|2024-04-15"], f"{policy}: orphaned {orphaned}")
    run(go())

def test_removed_template_releases_its_lock():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            await ctl.reconcile_all([quarterly(), quarterly(id="R")])
            expect({"Q", "R"} <= set(ctl._locks), f"locks {sorted(ctl._locks)}")
            await ctl.reconcile_all([quarterly()])
            expect("R" not in ctl._locks and "Q" in ctl._locks, f"locks {sorted(ctl._locks)}")
            await ctl.reconcile_all([])
            expect(ctl._locks == {}, f"locks {sorted(ctl._locks)}")
    run(go())

def test_removed_and_unknown_templates_are_swept():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            await store.upsert(Occurrence(id="Gone|2024-01-01", template_id="Gone", occurrence_date="2024-01-01",
                                          sequence_number=0))
            ctl = make_controller(store)
            await ctl.reconcile_all([quarterly(), quarterly(id="R")])
            expect(await store.template_ids() == {"Q", "R"}, "stale template swept on first pass")
            await ctl.reconcile_all([quarterly()])
            expect(await store.template_ids() == {"Q"}, "removed template's occurrences deleted")
            await ctl.reconcile_all([])
            expect(await store.get_all() == [], "empty template set clears the store")
    run(go())

def test_failed_writes_are_retried_next_pass():
    async def go():
        store = await FlakyStore({"Q|2024-10-15"}).open()
        ctl = make_controller(store)
        expect(await ctl.reconcile_all([quarterly()]) == 3, "three written")
        expect(ctl.last_report.errors, "failure reported")
        store.fail_ids.clear()
        expect(await ctl.reconcile_all([quarterly()]) == 1, "missing occurrence written on retry")
        expect(await ctl.reconcile_all([quarterly()]) == 0, "then quiet")
        await store.close()
    run(go())

def test_override_rejects_schedule_fields():
    async def go():
        async with OccurrenceStore(":memory:") as store:
            ctl = make_controller(store)
            await ctl.reconcile_all([quarterly()])
            for name, value in (("interval", 2), ("priority", "High")):
                try:
                    await ctl.apply_override("Q|2024-01-15", name, value)
                except InvalidFieldError:
                    continue
                raise AssertionError(f"{name}={value!r} should be rejected")
            try:
                await ctl.apply_override("Q|1999-01-01", "title", "x")
            except TaskNotFoundError:
                pass
            else:
                raise AssertionError("unknown occurrence should be reported")
    run(go())

# -------- Combined task store ---------------------------------------------------

def test_end_to_end_completion_survives_title_edit():
    async def go():
        store, repo, ctl, tasks = await combined()
        ids = [e.id for e in tasks.get_all()]
        expect(ids == T1_IDS, f"ids {ids}")
        await tasks.update_field(T1_IDS[1], "completed", True)
        await tasks.update_field("T1", "title", "Renamed report")
        entries = tasks.get_all()
        expect([e.title for e in entries] == ["Renamed report"] * 4, f"titles {[e.title for e in entries]}")
        expect([e.completed for e in entries] == [False, True, False, False], "only occurrence 2 completed")
        expect(repo.records[0]["Task"] == "Renamed report", "template written through the repository")
        stored = await store.get(T1_IDS[1])
        expect(stored.base_fields["completed"] is False and stored.overrides == {"completed": True},
               "deviation kept out of the base snapshot")
        expect(await tasks.refresh() == 0, "later refresh sees nothing new")
        await tasks.dispose()
        await store.close()
    run(go())

def test_template_priority_reaches_only_non_overridden():
    async def go():
        store, repo, ctl, tasks = await combined()
        await tasks.update_field(T1_IDS[2], "priority", "Normal")
        await tasks.update_field("T1", "priority", "Urgent")
        prios = [e.priority for e in tasks.get_all()]
        expect(prios == ["Urgent", "Urgent", "Normal", "Urgent"], f"priorities {prios}")
        expect(repo.records[0]["Priority"] == "Urgent", "repository updated")
        await tasks.dispose()
        await store.close()
    run(go())

def test_template_schedule_edit_regenerates():
    async def go():
        store, repo, ctl, tasks = await combined()
        await tasks.update_field(T1_IDS[2], "notes", "keep")
        await tasks.update_template("T1", TemplatePatch.of(interval=1, final_date="2024-06-30"))
        ids = [e.id for e in tasks.get_all()]
        expect(len(ids) == 6 and ids[0] == "T1|2024-01-15" and ids[-1] == "T1|2024-06-15", f"ids {ids}")
        expect(tasks.get(T1_IDS[2]).get("notes") == "keep", "deviation survives regeneration")
        expect(tasks.get(T1_IDS[3]) is None, "date past the new final date removed")
        await tasks.dispose()
        await store.close()
    run(go())

def test_remote_priority_edit_reaches_non_overridden_on_refresh():
    async def go():
        store, repo, ctl, tasks = await combined()
        await tasks.update_field(T1_IDS[2], "priority", "Normal")
        await repo.update("T1", {"priority": "Urgent"})
        touched = await tasks.refresh()
        expect(touched == 4, f"every base snapshot picks up the priority, got {touched}")
        prios = [e.priority for e in tasks.get_all()]
        expect(prios == ["Urgent", "Urgent", "Normal", "Urgent"], f"priorities {prios}")
        expect(ctl.last_report.cascaded == ["T1"] and ctl.last_report.regenerated == [], "cascade, not regenerate")
        expect(await tasks.refresh() == 0, "settled")
        await tasks.dispose()
        await store.close()
    run(go())

def test_template_id_shaped_like_a_clone_routes_to_the_template():
    async def go():
        once = {"id": "A", "Task": "File taxes", "Recurring": "No", "Deadline": "2024-09-01"}
        lookalike = {"id": "A_clone", "Task": "Lookalike", "Recurring": "No"}
        store, repo, ctl, tasks = await combined([once, lookalike])
        expect(any(tid == "A_clone" for tid, _ in ctl.last_report.errors), f"errors {ctl.last_report.errors}")
        expect(await store.template_ids() == {"A"}, "no occurrences for the reserved id")
        await tasks.update_field("A_clone", "notes", "for the template")
        expect(repo.records[1]["Notes"] == "for the template", "written through the repository")
        clone = await store.get("A_clone")
        expect(clone.template_id == "A" and clone.overrides == {}, f"A's working copy untouched: {clone}")
        await tasks.dispose()
        await store.close()
    run(go())

def test_subscribers_called_once_per_mutation_in_order():
    async def go():
        store, repo, ctl, tasks = await combined()
        seen = []
        unsubscribe = tasks.subscribe(lambda view: seen.append(view))
        await asyncio.gather(
            tasks.update_field(T1_IDS[0], "title", "first"),
            tasks.update_field(T1_IDS[0], "title", "second"),
        )
        expect(len(seen) == 2, f"one notification per mutation, got {len(seen)}")
        expect(seen[0][0].title == "first" and seen[1][0].title == "second", "applied in submission order")
        expect((await store.get(T1_IDS[0])).overrides["title"] == "second", "last write wins")
        unsubscribe()
        await tasks.update_field(T1_IDS[0], "title", "third")
        expect(len(seen) == 2, "no calls after unsubscribe")
        await tasks.dispose()
        await store.close()
    run(go())

def test_failing_listener_does_not_break_others():
    async def go():
        store, repo, ctl, tasks = await combined()
        calls = []

        def broken(view):
            raise RuntimeError("listener bug")

        tasks.subscribe(broken)
        tasks.subscribe(lambda view: calls.append(len(view)))
        await tasks.update_field(T1_IDS[0], "link", "https://example.invalid/doc")
        expect(calls == [4], f"healthy listener still notified: {calls}")
        await tasks.dispose()
        await store.close()
    run(go())

def test_unknown_ids_are_rejected_without_writes():
    async def go():
        store, repo, ctl, tasks = await combined()
        seen = []
        tasks.subscribe(seen.append)
        before = await store.get_all()
        for job in (
            tasks.update_field("nope", "title", "x"),
            tasks.delete_task("T1|1999-01-01"),
            tasks.update_template("ghost", TemplatePatch.of(title="x")),
        ):
            try:
                await job
            except TaskNotFoundError:
                continue
            raise AssertionError("unknown id should be reported")
        expect(seen == [], "no notifications for failed mutations")
        expect(await store.get_all() == before, "store untouched")
        await tasks.dispose()
        await store.close()
    run(go())

def test_delete_routing():
    async def go():
        store, repo, ctl, tasks = await combined()
        await tasks.delete_task(T1_IDS[0])
        expect([e.id for e in tasks.get_all()] == T1_IDS[1:], "one occurrence deleted")
        await tasks.delete_task("T1")
        expect(tasks.get_all() == [] and repo.records == [], "template and occurrences deleted")
        expect(await store.get_all() == [], "store emptied")
        await tasks.dispose()
        await store.close()
    run(go())

def test_view_includes_templates_without_occurrences():
    async def go():
        loose = {"id": "L", "Task": "Someday", "Recurring": "No", "Completed_x003f_": "No"}
        once = {"id": "O", "Task": "Tax return", "Recurring": "No", "Deadline": "2024-04-30"}
        store, repo, ctl, tasks = await combined([T1_RECORD, loose, once])
        by_id = {e.id: e for e in tasks.get_all()}
        expect(set(by_id) == set(T1_IDS) | {"L", "O_clone"}, f"ids {sorted(by_id)}")
        expect(by_id["L"].is_recurring_instance is False and by_id["L"].occurrence_date is None, "template entry")
        expect(by_id["O_clone"].is_clone and by_id["O_clone"].status == "Overdue", "clone is overdue")
        expect(by_id[T1_IDS[3]].status == "Active", "future occurrence active")
        expect(by_id[T1_IDS[0]].responsible == ("alice", "bob"), "responsible parsed at the boundary")
        await tasks.update_field("L", "notes", "later")
        expect(repo.records[1]["Notes"] == "later", "template-only entry routed to the repository")
        await tasks.dispose()
        await store.close()
    run(go())

def test_reset_field_restores_base_value():
    async def go():
        store, repo, ctl, tasks = await combined()
        await tasks.update_field(T1_IDS[0], "project", "Side")
        expect(tasks.get(T1_IDS[0]).overridden == frozenset({"project"}), "override recorded")
        await tasks.reset_field(T1_IDS[0], "project")
        entry = tasks.get(T1_IDS[0])
        expect(entry.get("project") == "Ops" and not entry.overridden, "back to the template value")
        await tasks.dispose()
        await store.close()
    run(go())

def test_dispose_rejects_further_mutations():
    async def go():
        store, repo, ctl, tasks = await combined()
        await tasks.dispose()
        expect(tasks.disposed, "disposed flag")
        try:
            await tasks.update_field(T1_IDS[0], "title", "x")
        except RuntimeError:
            pass
        else:
            raise AssertionError("disposed store must refuse mutations")
        await store.close()
    run(go())

def test_refresh_forever_until_stopped():
    async def go():
        store, repo, ctl, tasks = await combined()
        stop = asyncio.Event()
        seen = []

        def listener(view):
            seen.append(len(view))
            if len(seen) >= 2:
                stop.set()

        tasks.subscribe(listener)
        await asyncio.wait_for(refresh_forever(tasks, interval=0.01, stop=stop), timeout=5)
        expect(len(seen) >= 2 and all(n == 4 for n in seen), f"periodic refreshes {seen}")
        await tasks.dispose()
        await store.close()
    run(go())

# -------- Repository ------------------------------------------------------------

def test_external_record_mapping():
    tpl = template_from_record({**T1_RECORD, "ResponsibleParty": " alice; bob;alice;", "Unknown": 1})
    expect(tpl.title == "Monthly report" and tpl.recurring is True and tpl.interval == 2, f"template {tpl}")
    expect(tpl.responsible == ("alice", "bob"), f"responsible {tpl.responsible}")
    rec = record_from_fields({"responsible": ("a", "b"), "recurring": True, "completed": False, "bogus": 1})
    expect(rec == {"ResponsibleParty": "a;b", "Recurring": "Yes", "Completed_x003f_": "No"}, f"record {rec}")

def test_json_repository_round_trip():
    async def go():
        path = os.path.join(tempfile.mkdtemp(), "templates.json")
        repo = JsonTemplateRepository(path)
        expect(await repo.get_all() == [], "missing file reads empty")
        tid = await repo.add({"title": "Water plants", "recurring": True, "interval": 1, "deadline": "2024-01-01"})
        await repo.update(tid, {"responsible": ["kim"], "final_date": None})
        [tpl] = await repo.get_all()
        expect(tpl.id == tid and tpl.responsible == ("kim",) and tpl.final_date is None, f"template {tpl}")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        expect(data["templates"][0]["Task"] == "Water plants", "external layout on disk")
        await repo.delete(tid)
        expect(await repo.get_all() == [], "deleted")
        try:
            await repo.update(tid, {"title": "x"})
        except TaskNotFoundError:
            pass
        else:
            raise AssertionError("update of a missing template should fail")
    run(go())

def test_json_repository_writers_do_not_lose_updates():
    async def go():
        path = os.path.join(tempfile.mkdtemp(), "templates.json")
        first, second = JsonTemplateRepository(path), JsonTemplateRepository(path)
        tid = await first.add({"id": "W", "title": "Water plants"})
        await asyncio.gather(
            first.update(tid, {"notes": "north window"}),
            second.update(tid, {"link": "https://example.invalid/plants"}),
            first.update(tid, {"project": "Home"}),
            second.update(tid, {"responsible": ["kim", "lee"]}),
        )
        [tpl] = await second.get_all()
        expect(tpl.notes == "north window" and tpl.link == "https://example.invalid/plants", f"template {tpl}")
        expect(tpl.project == "Home" and tpl.responsible == ("kim", "lee"), f"template {tpl}")
        expect(tpl.title == "Water plants", "untouched field kept")

        with open(path, encoding="utf-8") as f:
            before = f.read()
        try:
            await first.update("missing", {"notes": "x"})
            expect(False, "update of a missing template should fail")
        except TaskNotFoundError:
            pass
        with open(path, encoding="utf-8") as f:
            expect(f.read() == before, "failed update leaves the file as it was")
    run(go())

# -------- Command line ----------------------------------------------------------

def test_navigator_preview_plain():
    import tideline_navigator as nav
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        rc = nav.main(["--plain", "preview", "2024-01-31", "1", "--final", "2024-04-30", "--limit", "0"])
    text = out.getvalue()
    expect(rc == 0, f"exit code {rc}")
    for want in ("2024-01-31", "2024-02-29", "2024-03-31", "2024-04-30"):
        expect(want in text, f"{want} missing from preview:\n{text}")

def test_navigator_refresh_then_list_json():
    import tideline_navigator as nav
    base = tempfile.mkdtemp()
    db = os.path.join(base, "occ.sqlite3")
    templates = os.path.join(base, "templates.json")
    with open(templates, "w", encoding="utf-8") as f:
        json.dump({"templates": [T1_RECORD]}, f)
    with contextlib.redirect_stdout(io.StringIO()):
        rc = nav.main(["--db", db, "--plain", "refresh", "--templates", templates])
    expect(rc == 0, f"refresh exit code {rc}")
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        rc = nav.main(["--db", db, "list", "--templates", templates, "--json"])
    rows = json.loads(out.getvalue())
    expect(rc == 0 and [r["id"] for r in rows] == T1_IDS, f"listed {[r['id'] for r in rows]}")

def test_health_check_on_empty_store():
    import tideline_health_check as hc
    db = os.path.join(tempfile.mkdtemp(), "occ.sqlite3")
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        rc = hc.main(["--db", db, "--json"])
    payload = json.loads(out.getvalue())
    expect(rc == 0 and payload["status"] == "ok", f"health {payload}")
    expect(payload["metrics"]["total"] == 0, "empty store")


TESTS = [
    test_store_crud_and_stats,
    test_store_persists_to_disk,
    test_regeneration_is_idempotent,
    test_write_failures_are_isolated,
    test_identity_errors_stop_before_the_store,
    test_override_survives_descriptive_change,
    test_unchanged_refetch_is_a_no_op,
    test_interval_change_drops_off_cadence_dates,
    test_orphan_warn_policy_keeps_deviating_occurrences,
    test_invalid_schedule_leaves_occurrences_alone,
    test_far_future_templates_do_not_block_the_pass,
    test_stopping_recurrence_leaves_only_the_clone,
    test_removed_template_releases_its_lock,
    test_removed_and_unknown_templates_are_swept,
    test_failed_writes_are_retried_next_pass,
    test_override_rejects_schedule_fields,
    test_end_to_end_completion_survives_title_edit,
    test_template_priority_reaches_only_non_overridden,
    test_template_schedule_edit_regenerates,
    test_remote_priority_edit_reaches_non_overridden_on_refresh,
    test_template_id_shaped_like_a_clone_routes_to_the_template,
    test_subscribers_called_once_per_mutation_in_order,
    test_failing_listener_does_not_break_others,
    test_unknown_ids_are_rejected_without_writes,
    test_delete_routing,
    test_view_includes_templates_without_occurrences,
    test_reset_field_restores_base_value,
    test_dispose_rejects_further_mutations,
    test_refresh_forever_until_stopped,
    test_external_record_mapping,
    test_json_repository_round_trip,
    test_json_repository_writers_do_not_lose_updates,
    test_navigator_preview_plain,
    test_navigator_refresh_then_list_json,
    test_health_check_on_empty_store,
]


def main():
    import argparse
    ap = argparse.ArgumentParser()
    ap.add_argument("--only", help="substring filter for test names")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    selected = TESTS
    if args.only:
        selected = [fn for fn in TESTS if args.only.lower() in fn.__name__.lower()]

    fails = 0
    for fn in selected:
        try:
            fn()
            if args.verbose:
                print(f"✓ {fn.__name__}")
        except AssertionError as e:
            fails += 1
            print(f"✗ {fn.__name__}: {e}")
        except Exception as e:
            fails += 1
            print(f"✗ {fn.__name__}: unexpected error {e}")

    total = len(selected)
    print(f"\nDone: {total - fails}/{total} passing")
    sys.exit(1 if fails else 0)

if __name__ == "__main__":
    main()

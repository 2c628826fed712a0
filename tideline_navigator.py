#!/usr/bin/env python3
"""
tideline navigator

Command line window onto the engine:
- preview  expand a schedule without touching any store
- list     combined task list (occurrences + templates without one)
- refresh  one reconciliation pass of a JSON template file against the store
- stats    total / completed / pending / overdue counts from the store

Panels render with Rich; ``panel_mode = "fast"`` in the config (or --plain)
prints plain aligned text instead.
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import json
import os
import sys

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

import tideline_core as core
from tideline_core import ScheduleError, Template, TidelineError, parse_deadline_date
from tideline_generator import InstanceGenerator
from tideline_reconcile import ReconcileController
from tideline_repository import JsonTemplateRepository
from tideline_store import OccurrenceStore
from tideline_tasks import CombinedTaskStore


# ──────────────────────────────────────────────────────────────────────────────
# Constants / styling
# ──────────────────────────────────────────────────────────────────────────────
console = Console()

COLORS = {
    'primary': 'bright_cyan',
    'success': 'green',
    'warning': 'bright_yellow',
    'error': 'bright_red',
    'muted': 'grey58',
}

STATUS_STYLE = {
    "Completed": COLORS['success'],
    "Overdue": COLORS['error'],
    "Active": COLORS['primary'],
}

KIND_BORDER = {
    "info": COLORS['primary'],
    "warning": COLORS['warning'],
    "error": COLORS['error'],
}


def _ansi(code: str) -> str:
    return f"\x1b[{code}m"


def render_panel(title: str, rows: list[tuple[str | None, object]], *, kind: str = "info", mode: str | None = None) -> None:
    """Key/value panel; ``None`` keys print a blank spacer line."""
    mode = mode or core.panel_mode()
    if mode == "fast":
        use_color = core.fast_color() and sys.stdout.isatty()
        bold = _ansi("1") if use_color else ""
        reset = _ansi("0") if use_color else ""
        print(f"{bold}{title}{reset}")
        keys = [str(k) for k, _ in rows if k is not None]
        width = min(16, max([6] + [len(k) for k in keys]))
        for k, v in rows:
            if k is None:
                print()
                continue
            print(f"  {str(k):<{width}} {'' if v is None else v}")
        return

    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold", no_wrap=True)
    grid.add_column()
    for k, v in rows:
        if k is None:
            grid.add_row("", "")
            continue
        grid.add_row(str(k), "" if v is None else str(v))
    border = KIND_BORDER.get(kind, COLORS['primary'])
    console.print(
        Panel(
            grid,
            title=Text(str(title), style=f"bold {border}"),
            border_style=border,
            expand=False,
            padding=(0, 1),
        )
    )


def render_tasks(entries, mode: str | None = None) -> None:
    mode = mode or core.panel_mode()
    if mode == "fast":
        for e in entries:
            print(f"{e.occurrence_date or '----------'}  {e.status:<9}  {e.priority:<6}  {e.id}  {e.title}")
        return
    tbl = Table(show_header=True, header_style="bold", border_style="bright_black", box=box.SIMPLE_HEAVY)
    tbl.add_column("Date", no_wrap=True)
    tbl.add_column("Status", no_wrap=True)
    tbl.add_column("Priority", no_wrap=True)
    tbl.add_column("Title")
    tbl.add_column("Project", style=COLORS['muted'])
    tbl.add_column("Id", style=COLORS['muted'], no_wrap=True)
    for e in entries:
        marker = "*" if e.overridden else ""
        tbl.add_row(
            e.occurrence_date or "-",
            Text(e.status, style=STATUS_STYLE.get(e.status, "")),
            Text(e.priority, style=COLORS['warning'] if e.priority == "Urgent" else ""),
            f"{e.title}{marker}",
            str(e.get("project") or ""),
            e.id,
        )
    console.print(tbl)


# ──────────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────────
def cmd_preview(args) -> int:
    tpl = Template(
        id="preview",
        title=args.title or "",
        deadline=args.deadline,
        recurring=True,
        interval=core.coerce_int(args.interval),
        final_date=args.final,
    )
    gen = InstanceGenerator(None)
    try:
        dates = gen.expand(tpl)
    except ScheduleError as e:
        render_panel("Schedule preview", [("Error", str(e))], kind="error", mode=args.mode)
        return 1
    start = parse_deadline_date(args.deadline)
    rows = [
        ("Start", start.isoformat() if start else ""),
        ("Interval", f"every {tpl.interval} month(s)"),
        ("Final", args.final or f"open-ended (horizon {gen.horizon_year})"),
        ("Count", len(dates)),
        (None, None),
    ]
    shown = dates[: args.limit] if args.limit > 0 else dates
    for i, d in enumerate(shown):
        rows.append((f"#{i}", d.isoformat()))
    if len(shown) < len(dates):
        rows.append(("…", f"{len(dates) - len(shown)} more, last {dates[-1].isoformat()}"))
    render_panel("Schedule preview", rows, mode=args.mode)
    return 0


async def _open(args):
    store = await OccurrenceStore(args.db).open()
    controller = ReconcileController(store)
    repo = JsonTemplateRepository(args.templates)
    return store, controller, repo


async def _list(args) -> int:
    store, controller, repo = await _open(args)
    try:
        tasks = await CombinedTaskStore.create(controller, repo, refresh=False)
        try:
            tasks.set_templates(await repo.get_all())
            tasks.set_occurrences(await store.get_all())
            entries = tasks.get_all()
            if args.status:
                entries = [e for e in entries if e.status.lower() == args.status.lower()]
            if args.json:
                print(json.dumps([_entry_json(e) for e in entries], ensure_ascii=False, indent=2))
            else:
                render_tasks(entries, mode=args.mode)
        finally:
            await tasks.dispose()
    finally:
        await store.close()
    return 0


def _entry_json(e) -> dict:
    out = dict(e.fields)
    out.update(
        {
            "id": e.id,
            "originalTemplateId": e.original_template_id,
            "isRecurringInstance": e.is_recurring_instance,
            "occurrenceDate": e.occurrence_date,
            "status": e.status,
        }
    )
    return out


async def _refresh(args) -> int:
    store, controller, repo = await _open(args)
    try:
        tasks = await CombinedTaskStore.create(controller, repo)
        await tasks.dispose()
        report = controller.last_report
    finally:
        await store.close()
    rows = [
        ("Templates", report.templates),
        ("Regenerated", len(report.regenerated)),
        ("Cascaded", len(report.cascaded)),
        ("Removed", len(report.removed)),
        ("Touched", report.instance_count),
    ]
    for tid, err in report.errors:
        rows.append(("Error", f"{tid}: {err}"))
    render_panel("Reconcile", rows, kind="error" if report.errors else "info", mode=args.mode)
    return 1 if report.errors else 0


async def _stats(args) -> int:
    async with OccurrenceStore(args.db) as store:
        stats = await store.stats()
    if args.json:
        print(json.dumps(stats))
        return 0
    kind = "warning" if stats["overdue"] else "info"
    render_panel("Occurrences", [(k.capitalize(), v) for k, v in stats.items()], kind=kind, mode=args.mode)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tideline", description="Recurring task occurrence navigator")
    ap.add_argument("--db", default=None, help="occurrence store (default from config)")
    ap.add_argument("--plain", dest="mode", action="store_const", const="fast", help="plain text output")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("preview", help="expand a schedule")
    p.add_argument("deadline")
    p.add_argument("interval")
    p.add_argument("--final", default=None)
    p.add_argument("--title", default=None)
    p.add_argument("--limit", type=int, default=24, help="rows to show (0 = all)")
    p.set_defaults(func=cmd_preview)

    default_templates = os.path.join(core.data_dir(), "templates.json")
    for name, fn in (("list", _list), ("refresh", _refresh)):
        p = sub.add_parser(name)
        p.add_argument("--templates", default=default_templates, help="JSON template file")
        if name == "list":
            p.add_argument("--status", choices=["active", "overdue", "completed"], default=None)
            p.add_argument("--json", action="store_true")
        p.set_defaults(func=fn)

    p = sub.add_parser("stats")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_stats)
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if inspect.iscoroutinefunction(args.func):
            return asyncio.run(args.func(args))
        return args.func(args)
    except TidelineError as e:
        render_panel("tideline", [("Error", str(e))], kind="error", mode=args.mode)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

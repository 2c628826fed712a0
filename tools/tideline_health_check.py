#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Operational health check for the tideline occurrence store and diag log."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

import tideline_core as core  # noqa: E402
from tideline_core import StoreError  # noqa: E402
from tideline_store import OccurrenceStore  # noqa: E402


def _safe_size(path: Path) -> int:
    try:
        if not path.exists():
            return 0
        return int(path.stat().st_size)
    except OSError:
        return -1


def _safe_count_warnings(path: Path) -> int:
    """JSONL records in the diag log whose message looks like a failure."""
    try:
        if not path.exists():
            return 0
        n = 0
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for ln in f:
                ln = ln.strip()
                if not ln:
                    continue
                try:
                    msg = str(json.loads(ln).get("msg") or "")
                except ValueError:
                    continue
                if "failed" in msg or "could not" in msg:
                    n += 1
        return n
    except OSError:
        return -1


async def _store_stats(db_path: str) -> dict:
    async with OccurrenceStore(db_path) as store:
        stats = await store.stats()
        stats["templates"] = len(await store.template_ids())
    return stats


def _add_check(checks: list[dict], name: str, value: int | float, warn: int | float, crit: int | float) -> None:
    if value < 0:
        checks.append({"name": name, "value": value, "status": "warn", "message": "unreadable"})
        return
    if value >= crit:
        status = "crit"
    elif value >= warn:
        status = "warn"
    else:
        status = "ok"
    checks.append({"name": name, "value": value, "status": status, "warn": warn, "crit": crit})


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="tideline occurrence store health check")
    ap.add_argument("--db", default=None, help="occurrence store (default from config)")
    ap.add_argument("--json", action="store_true", help="emit JSON only")
    ap.add_argument("--overdue-warn", type=int, default=1)
    ap.add_argument("--overdue-crit", type=int, default=50)
    ap.add_argument("--pending-warn", type=int, default=2000)
    ap.add_argument("--pending-crit", type=int, default=10000)
    ap.add_argument("--diag-failures-warn", type=int, default=1)
    ap.add_argument("--diag-failures-crit", type=int, default=25)
    args = ap.parse_args(argv)

    db_path = args.db or core.default_db_path()
    diag_log = Path(core.data_dir()) / ".tideline_diag.jsonl"

    checks: list[dict] = []
    metrics: dict = {}
    try:
        stats = asyncio.run(_store_stats(db_path))
        metrics.update(stats)
        _add_check(checks, "overdue", stats["overdue"], args.overdue_warn, args.overdue_crit)
        _add_check(checks, "pending", stats["pending"], args.pending_warn, args.pending_crit)
    except StoreError as e:
        checks.append({"name": "store", "value": -1, "status": "crit", "message": str(e)})

    failures = _safe_count_warnings(diag_log)
    _add_check(checks, "diag_failures", failures, args.diag_failures_warn, args.diag_failures_crit)
    metrics.update(
        {
            "diag_log_bytes": _safe_size(diag_log),
            "diag_failures": failures,
            "diag_log_enabled_hint": "set TIDELINE_DIAG_LOG=1 to persist engine diagnostics",
            "diag_log_path": str(diag_log),
        }
    )

    status = "ok"
    for chk in checks:
        st = chk.get("status")
        if st == "crit":
            status = "crit"
            break
        if st == "warn" and status == "ok":
            status = "warn"

    payload = {"status": status, "db": os.path.abspath(db_path), "metrics": metrics, "checks": checks}

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))
    else:
        print(f"status={payload['status']} db={payload['db']}")
        for k, v in metrics.items():
            print(f"{k}={v}")
        print("checks:")
        for chk in checks:
            print(f"  - {chk.get('name')}: {chk.get('status')} (value={chk.get('value')})")

    if status == "crit":
        return 2
    if status == "warn":
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Combined task store.

In-memory, subscribable view merging every generated occurrence with the
templates that currently have none. Field updates are routed either to the
occurrence's deviation map or to the template repository (followed by a
cascade or regeneration). Mutations run one at a time, in submission order,
through a single worker draining a FIFO queue.

Construct with ``await CombinedTaskStore.create(controller, repository)``,
release with ``await store.dispose()``.
"""
from __future__ import annotations

import asyncio
from datetime import date
from typing import Callable, Iterable

import tideline_core as core
from tideline_core import (
    Occurrence,
    TaskNotFoundError,
    TaskView,
    Template,
    TemplatePatch,
    TidelineError,
    diag,
    local_today,
    warn,
)

Listener = Callable[[list], None]

_STOP = object()


class CombinedTaskStore:
    def __init__(self, controller, repository, *, today: Callable[[], date] | None = None) -> None:
        self._controller = controller
        self._repository = repository
        self._today = today or local_today
        self._templates: dict[str, Template] = {}
        self._occurrences: dict[str, Occurrence] = {}
        self._view: list[TaskView] = []
        self._listeners: list[Listener] = []
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._disposed = False

    # ------------------------------------------------------------------ lifecycle
    @classmethod
    async def create(cls, controller, repository, *, refresh: bool = True, **kwargs) -> "CombinedTaskStore":
        store = cls(controller, repository, **kwargs)
        store._start()
        if refresh:
            await store.refresh()
        return store

    def _start(self) -> None:
        if self._worker is None:
            self._queue = asyncio.Queue()
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def dispose(self) -> None:
        """Finish queued mutations, stop the worker and drop all subscribers."""
        if self._disposed:
            return
        self._disposed = True
        if self._worker is not None:
            await self._queue.put(_STOP)
            await self._worker
            self._worker = None
        self._listeners.clear()

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------ view
    def get_all(self) -> list[TaskView]:
        return list(self._view)

    def get(self, task_id: str) -> TaskView | None:
        for entry in self._view:
            if entry.id == task_id:
                return entry
        return None

    def set_templates(self, templates: Iterable[Template]) -> None:
        self._templates = {t.id: t for t in templates}
        self._publish()

    def set_occurrences(self, occurrences: Iterable[Occurrence]) -> None:
        self._occurrences = {o.id: o for o in occurrences}
        self._publish()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _recompute(self) -> list[TaskView]:
        today = self._today()
        occs = sorted(self._occurrences.values(), key=lambda o: (o.template_id, o.occurrence_date, o.id))
        view = [TaskView.from_occurrence(o, today) for o in occs]
        covered = {o.template_id for o in occs}
        for tpl in self._templates.values():
            if tpl.id not in covered:
                view.append(TaskView.from_template(tpl, today))
        self._view = view
        return view

    def _publish(self) -> None:
        view = self._recompute()
        for listener in list(self._listeners):
            try:
                listener(list(view))
            except Exception as e:
                warn(f"task listener {getattr(listener, '__name__', listener)!r} failed: {e}", "tasks")

    # ------------------------------------------------------------------ queue
    async def _submit(self, job, *args):
        if self._disposed:
            raise RuntimeError("combined task store is disposed")
        self._start()
        fut = asyncio.get_running_loop().create_future()
        await self._queue.put((job, args, fut))
        return await fut

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                job, args, fut = item
                try:
                    result = await job(*args)
                except Exception as e:
                    # handed to the awaiting caller
                    if not fut.done():
                        fut.set_exception(e)
                    continue
                self._publish()
                if not fut.done():
                    fut.set_result(result)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------ public mutations
    async def update_field(self, task_id: str, name: str, value) -> None:
        """Set one field on an occurrence (as a deviation) or on a template."""
        await self._submit(self._update_field, task_id, name, value)

    async def update_template(self, template_id: str, patch: TemplatePatch) -> None:
        await self._submit(self._update_template, template_id, patch)

    async def reset_field(self, occurrence_id: str, name: str) -> None:
        """Drop an occurrence's deviation for ``name``."""
        await self._submit(self._reset_field, occurrence_id, name)

    async def delete_task(self, task_id: str) -> None:
        await self._submit(self._delete_task, task_id)

    async def refresh(self) -> int:
        """Re-read templates, reconcile, reload occurrences."""
        return await self._submit(self._refresh)

    # ------------------------------------------------------------------ jobs
    async def _resolve_occurrence(self, task_id: str) -> Occurrence | None:
        # template ids win; an occurrence id never names a template
        if task_id in self._templates:
            return None
        occ = self._occurrences.get(task_id)
        if occ is not None:
            return occ
        return await self._controller.store.get(task_id)

    async def _update_field(self, task_id: str, name: str, value) -> None:
        occ = await self._resolve_occurrence(task_id)
        if occ is not None:
            updated = await self._controller.apply_override(task_id, name, value)
            self._occurrences[updated.id] = updated
            return
        if task_id not in self._templates:
            raise TaskNotFoundError(f"no template or occurrence {task_id!r}")
        await self._update_template(task_id, TemplatePatch.of(**{name: value}))

    async def _update_template(self, template_id: str, patch: TemplatePatch) -> None:
        if template_id not in self._templates:
            raise TaskNotFoundError(f"no template {template_id!r}")
        if not patch:
            return
        await self._repository.update(template_id, patch.present())
        fresh = None
        for tpl in await self._repository.get_all():
            if tpl.id == template_id:
                fresh = tpl
                break
        if fresh is None:
            raise TaskNotFoundError(f"template {template_id!r} vanished during update")
        self._templates[template_id] = fresh
        action = await self._controller.template_changed(fresh, patch.field_names())
        diag(f"template {template_id} updated ({', '.join(sorted(patch.field_names()))}); {action}", "tasks")
        await self._reload_occurrences_of(template_id)

    async def _reset_field(self, occurrence_id: str, name: str) -> None:
        occ = await self._resolve_occurrence(occurrence_id)
        if occ is None:
            raise TaskNotFoundError(f"no occurrence {occurrence_id!r}")
        updated = await self._controller.clear_override(occurrence_id, name)
        self._occurrences[updated.id] = updated

    async def _delete_task(self, task_id: str) -> None:
        occ = await self._resolve_occurrence(task_id)
        if occ is not None:
            await self._controller.delete_occurrence(task_id)
            self._occurrences.pop(task_id, None)
            return
        if task_id not in self._templates:
            raise TaskNotFoundError(f"no template or occurrence {task_id!r}")
        await self._repository.delete(task_id)
        await self._controller.remove_template(task_id)
        self._templates.pop(task_id, None)
        self._occurrences = {k: o for k, o in self._occurrences.items() if o.template_id != task_id}

    async def _reload_occurrences_of(self, template_id: str) -> None:
        fresh = await self._controller.store.get_by_template(template_id)
        kept = {k: o for k, o in self._occurrences.items() if o.template_id != template_id}
        kept.update({o.id: o for o in fresh})
        self._occurrences = kept

    async def _refresh(self) -> int:
        templates = list(await self._repository.get_all())
        count = await self._controller.reconcile_all(templates)
        occs = await self._controller.store.get_all()
        self._templates = {t.id: t for t in templates}
        self._occurrences = {o.id: o for o in occs}
        return count


async def refresh_forever(store: CombinedTaskStore, interval: float | None = None, stop: asyncio.Event | None = None) -> None:
    """Call ``store.refresh()`` every ``interval`` seconds until ``stop`` is set."""
    secs = interval or core.refresh_interval_secs()
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await store.refresh()
        except TidelineError as e:
            warn(f"periodic refresh failed: {e}", "tasks")
        try:
            await asyncio.wait_for(stop.wait(), timeout=secs)
        except asyncio.TimeoutError:
            pass

"""Durable work queue on the relational store.

At-least-once: a task is claimed by flipping ``pending`` to ``running`` in a
conditional update, and a ``running`` task whose worker vanished is handed
out again after ``visibility_timeout`` seconds. Handlers must tolerate
redelivery.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from autoapply.db import Database, Task, utcnow
from autoapply.log import get_logger
from autoapply.retry import backoff_delay

log = get_logger(__name__)

Handler = Callable[[dict], Any]
FailureHook = Callable[[dict, BaseException], Any]

MAX_RETRY_DELAY = 3600.0
RETENTION = timedelta(hours=24)


@dataclass
class _Registration:
    handler: Handler
    on_failure: Optional[FailureHook] = None


@dataclass
class RunStats:
    completed: int = 0
    retried: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.completed + self.retried + self.failed


class WorkQueue:
    def __init__(self, db: Database, visibility_timeout: float = 600.0) -> None:
        self.db = db
        self.visibility_timeout = visibility_timeout
        self._handlers: dict[str, _Registration] = {}

    def register(self, name: str, handler: Handler, on_failure: FailureHook | None = None) -> None:
        self._handlers[name] = _Registration(handler, on_failure)

    @property
    def task_names(self) -> list[str]:
        return sorted(self._handlers)

    def enqueue(
        self,
        name: str,
        payload: dict,
        *,
        delay: float = 0,
        priority: int = 0,
        max_attempts: int = 3,
        backoff: float = 5.0,
        key: str | None = None,
    ) -> int:
        """Add a task and return its id. A known ``key`` returns the existing task instead."""
        if key is not None:
            existing = self._find_by_key(key)
            if existing is not None:
                log.debug("Task %s already queued as #%d", key, existing)
                return existing
        task = Task(
            name=name,
            dedup_key=key,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            backoff_seconds=backoff,
            run_at=utcnow() + timedelta(seconds=delay),
        )
        try:
            with self.db.session() as s:
                s.add(task)
                s.flush()
                task_id = task.id
        except IntegrityError:
            if key is None:
                raise
            # lost the race to another producer with the same key
            existing = self._find_by_key(key)
            if existing is None:
                raise
            return existing
        log.debug("Queued %s #%d (priority %d, delay %.0fs)", name, task_id, priority, delay)
        return task_id

    def _find_by_key(self, key: str) -> int | None:
        with self.db.session() as s:
            return s.scalar(select(Task.id).where(Task.dedup_key == key))

    def get(self, task_id: int) -> Task | None:
        with self.db.session() as s:
            return s.get(Task, task_id)

    def pending_count(self) -> int:
        with self.db.session() as s:
            return s.scalar(select(func.count()).select_from(Task).where(Task.status == "pending")) or 0

    def reclaim_stale(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.visibility_timeout)
        with self.db.session() as s:
            result = s.execute(
                update(Task)
                .where(Task.status == "running", Task.started_at < cutoff)
                .values(status="pending", run_at=now)
            )
            count = result.rowcount or 0
        if count:
            log.warning("Reclaimed %d stale running tasks", count)
        return count

    def _claim(self, now: datetime, limit: int) -> list[Task]:
        with self.db.session() as s:
            candidates = s.scalars(
                select(Task.id)
                .where(Task.status == "pending", Task.run_at <= now)
                .order_by(Task.priority, Task.run_at, Task.id)
                .limit(limit)
            ).all()

        claimed: list[Task] = []
        for task_id in candidates:
            with self.db.session() as s:
                result = s.execute(
                    update(Task)
                    .where(Task.id == task_id, Task.status == "pending")
                    .values(status="running", started_at=now, attempts=Task.attempts + 1)
                )
                if result.rowcount == 1:
                    claimed.append(s.get(Task, task_id))
        return claimed

    def run_pending(self, limit: int = 50, now: datetime | None = None) -> RunStats:
        """Claim up to ``limit`` due tasks and run each handler once."""
        now = now or utcnow()
        self.reclaim_stale(now)
        stats = RunStats()
        for task in self._claim(now, limit):
            self._run(task, stats)
        if stats.processed:
            log.info(
                "Queue run: %d completed, %d retried, %d failed",
                stats.completed, stats.retried, stats.failed,
            )
        return stats

    def _run(self, task: Task, stats: RunStats) -> None:
        reg = self._handlers.get(task.name)
        if reg is None:
            self._finish(task.id, "failed", f"no handler registered for {task.name}")
            stats.failed += 1
            stats.errors.append(f"{task.name}#{task.id}: no handler")
            log.error("No handler for task %s #%d", task.name, task.id)
            return
        try:
            reg.handler(dict(task.payload or {}))
        except Exception as exc:
            self._handle_failure(task, reg, exc, stats)
            return
        self._finish(task.id, "completed")
        stats.completed += 1

    def _handle_failure(self, task: Task, reg: _Registration, exc: Exception, stats: RunStats) -> None:
        error = f"{type(exc).__name__}: {exc}"[:500]
        stats.errors.append(f"{task.name}#{task.id}: {error}")
        if task.attempts >= task.max_attempts:
            self._finish(task.id, "failed", error)
            stats.failed += 1
            log.error("Task %s #%d failed after %d attempts: %s", task.name, task.id, task.attempts, error)
            if reg.on_failure is not None:
                try:
                    reg.on_failure(dict(task.payload or {}), exc)
                except Exception as hook_exc:
                    log.error("Failure hook for %s #%d raised: %s", task.name, task.id, hook_exc)
            return

        delay = backoff_delay(task.attempts, base_delay=task.backoff_seconds, max_delay=MAX_RETRY_DELAY)
        with self.db.session() as s:
            s.execute(
                update(Task)
                .where(Task.id == task.id)
                .values(status="pending", run_at=utcnow() + timedelta(seconds=delay), last_error=error)
            )
        stats.retried += 1
        log.warning(
            "Task %s #%d attempt %d/%d failed (%s), retrying in %.0fs",
            task.name, task.id, task.attempts, task.max_attempts, error, delay,
        )

    def _finish(self, task_id: int, status: str, error: str | None = None) -> None:
        with self.db.session() as s:
            s.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(status=status, finished_at=utcnow(), last_error=error)
            )

    def purge(
        self,
        completed_age: timedelta = RETENTION,
        failed_age: timedelta = RETENTION,
        now: datetime | None = None,
    ) -> int:
        now = now or utcnow()
        with self.db.session() as s:
            done = s.execute(
                delete(Task).where(Task.status == "completed", Task.finished_at < now - completed_age)
            ).rowcount or 0
            failed = s.execute(
                delete(Task).where(Task.status == "failed", Task.finished_at < now - failed_age)
            ).rowcount or 0
        if done or failed:
            log.info("Purged %d completed and %d failed tasks", done, failed)
        return done + failed

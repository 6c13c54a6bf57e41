"""Service wiring and the long-running worker.

The worker enqueues the periodic jobs when they come due and drains the
work queue in between:

- auto-apply sweep every ``sweep_interval_minutes``
- digest flush daily at ``digest_hour``
- expansion cache cleanup daily at ``cache_cleanup_hour``
- statistics and queue purge hourly
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from autoapply.cache import MemoryCache
from autoapply.config import Settings, ensure_dirs
from autoapply.db import Database
from autoapply.digest import DigestBatcher, Mailer, MailSender
from autoapply.dispatch import DispatchPipeline
from autoapply.expansion import QueryExpansionEngine
from autoapply.llm import GroqClient, TextService
from autoapply.log import get_logger
from autoapply.queue import RunStats, WorkQueue
from autoapply.relevance import build_dictionary
from autoapply.scheduler import AutoApplyEngine
from autoapply.scoring import ScoringEngine
from autoapply.search import JobSearch

log = get_logger(__name__)

SWEEP_TASK = "sweep"
DIGEST_FLUSH_TASK = "digest.flush"
CACHE_CLEANUP_TASK = "cache.cleanup"
STATS_TASK = "stats.report"
PURGE_TASK = "queue.purge"


@dataclass
class Services:
    settings: Settings
    db: Database
    queue: WorkQueue
    expansion: QueryExpansionEngine
    search: JobSearch
    scoring: ScoringEngine
    digests: DigestBatcher
    dispatch: DispatchPipeline
    engine: AutoApplyEngine


def build_services(
    settings: Settings,
    db: Database | None = None,
    client: TextService | None = None,
    mailer: MailSender | None = None,
) -> Services:
    if db is None:
        if settings.database_url.startswith("sqlite:///") and ":memory:" not in settings.database_url:
            ensure_dirs()
        db = Database(settings.database_url)
        db.create_all()
    client = client or GroqClient.from_settings(settings)
    mailer = mailer or Mailer.from_settings(settings)
    fast = MemoryCache()

    queue = WorkQueue(db)
    expansion = QueryExpansionEngine.build(
        build_dictionary(settings.relevance_dictionary_path), fast, db, client,
        timeout=settings.expansion_timeout,
    )
    search = JobSearch(db, expansion, fast, result_ttl_hours=settings.search_cache_ttl_hours)
    scoring = ScoringEngine(db, queue, client, timeout=settings.scoring_timeout)
    digests = DigestBatcher(db, mailer)
    dispatch = DispatchPipeline(db, queue, digests, scoring)
    engine = AutoApplyEngine(
        db, expansion, dispatch,
        lookback_hours=settings.lookback_hours,
        new_postings_limit=settings.new_postings_limit,
    )
    services = Services(settings, db, queue, expansion, search, scoring, digests, dispatch, engine)
    register_tasks(services)
    return services


def register_tasks(services: Services) -> None:
    queue = services.queue
    services.scoring.register()
    services.dispatch.register()
    queue.register(SWEEP_TASK, lambda payload: services.engine.process_all_subscriptions())
    queue.register(DIGEST_FLUSH_TASK, lambda payload: services.digests.flush(_payload_date(payload)))
    queue.register(CACHE_CLEANUP_TASK, lambda payload: services.expansion.clean_expired_cache())
    queue.register(STATS_TASK, lambda payload: _report_stats(services))
    queue.register(PURGE_TASK, lambda payload: queue.purge())


def _payload_date(payload: dict) -> date | None:
    raw = payload.get("date")
    return date.fromisoformat(raw) if raw else None


def _report_stats(services: Services) -> None:
    stats = services.engine.get_statistics(days=7)
    log.info(
        "Auto-apply last 7 days: %d subscriptions, %d users, %d applications (%d ok, %d failed); %d tasks pending",
        stats["active_subscriptions"], stats["active_users"], stats["total_applications"],
        stats["successful_applications"], stats["failed_applications"], services.queue.pending_count(),
    )


def next_daily(now: datetime, hour: int) -> datetime:
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= target:
        target += timedelta(days=1)
    return target


class Worker:
    def __init__(self, services: Services, now: datetime | None = None) -> None:
        self.services = services
        settings = services.settings
        self.tz = ZoneInfo(settings.schedule_timezone)
        self.sweep_every = timedelta(minutes=settings.sweep_interval_minutes)
        now = now or self.now()
        self._next: dict[str, datetime] = {
            SWEEP_TASK: now,
            DIGEST_FLUSH_TASK: next_daily(now, settings.digest_hour),
            CACHE_CLEANUP_TASK: next_daily(now, settings.cache_cleanup_hour),
            STATS_TASK: now + timedelta(hours=1),
            PURGE_TASK: now + timedelta(hours=1),
        }

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def schedule_due(self, now: datetime | None = None) -> list[str]:
        """Enqueue each periodic job whose time has come; returns their names."""
        now = now or self.now()
        due = [name for name, at in self._next.items() if at <= now]
        for name in due:
            slot = self._next[name]
            payload: dict = {}
            if name == DIGEST_FLUSH_TASK:
                payload = {"date": slot.astimezone(ZoneInfo("UTC")).date().isoformat()}
            self.services.queue.enqueue(
                name, payload,
                priority=1 if name == SWEEP_TASK else 3,
                max_attempts=3,
                backoff=60.0,
                key=f"{name}:{slot:%Y-%m-%dT%H:%M}",
            )
            self._next[name] = self._advance(name, slot, now)
            log.debug("Scheduled %s; next at %s", name, self._next[name])
        return due

    def _advance(self, name: str, slot: datetime, now: datetime) -> datetime:
        settings = self.services.settings
        if name == SWEEP_TASK:
            step = self.sweep_every
        elif name in (STATS_TASK, PURGE_TASK):
            step = timedelta(hours=1)
        elif name == DIGEST_FLUSH_TASK:
            return next_daily(now, settings.digest_hour)
        else:
            return next_daily(now, settings.cache_cleanup_hour)
        nxt = slot + step
        while nxt <= now:
            nxt += step
        return nxt

    def run_once(self, max_tasks: int = 50) -> RunStats:
        self.schedule_due()
        return self.services.queue.run_pending(limit=max_tasks)

    def serve(self, poll_seconds: float = 10.0) -> None:
        log.info(
            "Worker started: sweep every %s, digest at %02d:00, cache cleanup at %02d:00 (%s)",
            self.sweep_every, self.services.settings.digest_hour,
            self.services.settings.cache_cleanup_hour, self.tz.key,
        )
        while True:
            try:
                stats = self.run_once()
            except Exception as exc:
                log.error("Worker iteration failed: %s", exc, exc_info=True)
                time.sleep(poll_seconds)
                continue
            if not stats.processed:
                time.sleep(poll_seconds)

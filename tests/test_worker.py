from __future__ import annotations

import json
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select

from autoapply import cli
from autoapply.config import Settings
from autoapply.db import Task
from autoapply.worker import DIGEST_FLUSH_TASK, SWEEP_TASK, Worker, next_daily

LAGOS = ZoneInfo("Africa/Lagos")


def test_next_daily():
    morning = datetime(2024, 3, 1, 9, 30, tzinfo=LAGOS)
    assert next_daily(morning, 18) == datetime(2024, 3, 1, 18, 0, tzinfo=LAGOS)
    evening = datetime(2024, 3, 1, 18, 0, tzinfo=LAGOS)
    assert next_daily(evening, 18) == datetime(2024, 3, 2, 18, 0, tzinfo=LAGOS)


def test_periodic_jobs_come_due(services, db):
    start = datetime(2024, 3, 1, 17, 0, tzinfo=LAGOS)
    worker = Worker(services, now=start)

    assert worker.schedule_due(start) == [SWEEP_TASK]
    assert worker.schedule_due(start + timedelta(minutes=10)) == []
    due = worker.schedule_due(start + timedelta(hours=1, minutes=1))
    assert set(due) == {SWEEP_TASK, DIGEST_FLUSH_TASK, "stats.report", "queue.purge"}

    with db.session() as s:
        flush = s.scalar(select(Task).where(Task.name == DIGEST_FLUSH_TASK))
    assert flush.payload == {"date": "2024-03-01"}

    stats = services.queue.run_pending()
    assert (stats.completed, stats.failed) == (5, 0)


def test_same_slot_is_enqueued_once(services):
    start = datetime(2024, 3, 1, 17, 0, tzinfo=LAGOS)
    Worker(services, now=start).schedule_due(start)
    Worker(services, now=start).schedule_due(start)
    assert services.queue.pending_count() == 1


def _run_cli(monkeypatch, capsys, *argv):
    monkeypatch.setattr(cli, "load_settings", lambda: Settings(database_url="sqlite://"))
    assert cli.main(list(argv)) == 0
    return json.loads(capsys.readouterr().out)


def test_cli_search(monkeypatch, capsys):
    out = _run_cli(monkeypatch, capsys, "search", "react developer", "--location", "Lagos")
    assert out["filter"]["source"] == "rule"
    assert out["postings"] == []


def test_cli_stats(monkeypatch, capsys):
    out = _run_cli(monkeypatch, capsys, "stats", "--days", "3")
    assert out["auto_apply"]["total_applications"] == 0
    assert out["digests"]["total_digests"] == 0
    assert out["queue_pending"] == 0


def test_cli_score_not_requested(monkeypatch, capsys):
    assert _run_cli(monkeypatch, capsys, "score", "missing") == {"available": False, "status": "not_requested"}

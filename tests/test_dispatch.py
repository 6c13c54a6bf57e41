from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from autoapply.config import Settings
from autoapply.db import (
    Application, ATSScore, AutoApplyLog, Database, DigestBatch, Posting, Preference, Subscription, Task, utcnow,
)
from autoapply.dispatch import DIGEST_TASK
from autoapply.errors import DuplicateApplication, PostingNotFound, QuotaExhausted
from autoapply.worker import build_services

from conftest import CV_TEXT, FakeAI, FakeMailer

OWNER = "2348031234567"


def test_submit_runs_every_step(services, db, make_posting, make_subscription, make_preference):
    posting = make_posting()
    sub = make_subscription()
    pref = make_preference(sub)

    app_id = services.dispatch.submit(OWNER, posting.id, CV_TEXT, subscription_id=sub.id, preference_id=pref.id)

    with db.session() as s:
        app = s.get(Application, app_id)
        assert app.status == "applied"
        assert app.included_in_digest is True
        assert app.applicant_name == "Adaeze Okafor"
        assert app.applicant_email == "adaeze.okafor@gmail.com"
        assert app.applicant_phone == "+2348031234567"
        assert s.scalar(select(ATSScore.processing_status).where(ATSScore.application_id == app_id)) == "pending"
        assert s.get(Subscription, sub.id).jobs_applied == 1
        updated = s.get(Preference, pref.id)
        assert updated.jobs_applied == 1
        assert updated.last_applied_at is not None
        log_row = s.scalar(select(AutoApplyLog))
        assert (log_row.application_id, log_row.status) == (app_id, "applied")


def test_duplicate_is_rejected_without_spending_quota(services, db, make_posting, make_subscription):
    posting = make_posting()
    sub = make_subscription()
    services.dispatch.submit(OWNER, posting.id, CV_TEXT, subscription_id=sub.id)

    with pytest.raises(DuplicateApplication):
        services.dispatch.submit(OWNER, posting.id, CV_TEXT, subscription_id=sub.id)

    with db.session() as s:
        assert s.get(Subscription, sub.id).jobs_applied == 1
        assert s.scalar(select(func.count()).select_from(Application)) == 1


def test_quota_is_checked_in_the_insert_transaction(services, db, make_posting, make_subscription):
    sub = make_subscription(jobs_applied=10, max_jobs=10)
    with pytest.raises(QuotaExhausted):
        services.dispatch.submit(OWNER, make_posting().id, CV_TEXT, subscription_id=sub.id)
    with db.session() as s:
        assert s.scalar(select(func.count()).select_from(Application)) == 0
        assert s.get(Subscription, sub.id).jobs_applied == 10


def test_unlimited_tier_has_no_cap(services, db, make_posting, make_subscription):
    sub = make_subscription(tier="unlimited", max_jobs=None, jobs_applied=500)
    services.dispatch.submit(OWNER, make_posting().id, CV_TEXT, subscription_id=sub.id)
    with db.session() as s:
        assert s.get(Subscription, sub.id).jobs_applied == 501


def test_missing_posting(services):
    with pytest.raises(PostingNotFound):
        services.dispatch.submit(OWNER, "no-such-job", CV_TEXT)


def test_posting_without_recipient_fails_application(services, db, make_posting):
    app_id = services.dispatch.submit(OWNER, make_posting(email=None).id, CV_TEXT)
    with db.session() as s:
        app = s.get(Application, app_id)
        assert app.status == "failed"
        assert app.failure_reason == "posting has no recipient email"


def test_failed_digest_step_is_requeued(services, db, make_posting, monkeypatch):
    posting = make_posting()

    def broken(*args, **kwargs):
        raise RuntimeError("db hiccup")

    original = services.digests.track
    monkeypatch.setattr(services.digests, "track", broken)
    app_id = services.dispatch.submit(OWNER, posting.id, CV_TEXT)

    with db.session() as s:
        assert s.get(Application, app_id).status == "processing"
        task = s.scalar(select(Task).where(Task.name == DIGEST_TASK))
        assert task.dedup_key == f"{DIGEST_TASK}:{app_id}"
        assert task.payload["recipient"] == "hr@acme.ng"

    monkeypatch.setattr(services.digests, "track", original)
    services.dispatch._retry_digest(task.payload)
    with db.session() as s:
        assert s.get(Application, app_id).status == "applied"
        assert s.scalar(select(func.count()).select_from(DigestBatch)) == 1


def test_digest_retry_exhaustion_marks_application_failed(services, db, make_posting, make_subscription):
    sub = make_subscription()
    app_id = services.dispatch.submit(OWNER, make_posting().id, CV_TEXT, subscription_id=sub.id)
    services.dispatch._digest_gave_up({"application_id": app_id}, RuntimeError("smtp"))
    with db.session() as s:
        assert s.get(Application, app_id).status == "failed"
        assert s.scalar(select(AutoApplyLog.status)) == "failed"


def test_concurrent_submits_create_one_application(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'race.db'}")
    db.create_all()
    services = build_services(Settings(database_url=db.url), db=db, client=FakeAI(), mailer=FakeMailer())
    with db.session() as s:
        s.add(Posting(id="job-race", title="React Developer", email="hr@acme.ng"))
        sub = Subscription(
            owner_id=OWNER, tier="basic", status="active", jobs_applied=0, max_jobs=10,
            valid_until=utcnow() + timedelta(days=30),
        )
        s.add(sub)
        s.flush()
        sub_id = sub.id

    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def submit():
        barrier.wait()
        try:
            services.dispatch.submit(OWNER, "job-race", CV_TEXT, subscription_id=sub_id)
            outcomes.append("applied")
        except DuplicateApplication:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["applied", "duplicate"]
    with db.session() as s:
        assert s.scalar(select(func.count()).select_from(Application)) == 1
        assert s.get(Subscription, sub_id).jobs_applied == 1
    db.engine.dispose()

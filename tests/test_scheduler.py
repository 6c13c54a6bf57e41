from __future__ import annotations

import uuid
from datetime import timedelta

from sqlalchemy import func, select, update

from autoapply.db import Application, Preference, Subscription, utcnow

from conftest import CV_TEXT

OWNER = "2348031234567"


def _seed_profile(db, owner_id=OWNER):
    """The owner's CV arrives with an earlier, manual application."""
    with db.session() as s:
        s.add(Application(
            id=str(uuid.uuid4()), owner_id=owner_id, posting_id="manual-1",
            profile_text=CV_TEXT, status="applied", applied_at=utcnow() - timedelta(days=3),
        ))


def _applied_count(db, owner_id=OWNER):
    with db.session() as s:
        return s.scalar(
            select(func.count()).select_from(Application)
            .where(Application.owner_id == owner_id, Application.posting_id != "manual-1")
        )


def test_basic_tier_with_one_slot_left_applies_once(services, db, make_posting, make_subscription, make_preference):
    _seed_profile(db)
    sub = make_subscription(jobs_applied=9, max_jobs=10)
    make_preference(sub)
    for _ in range(5):
        make_posting()

    assert services.engine.process_all_subscriptions() == {"processed": 1, "applied": 1}
    assert _applied_count(db) == 1
    with db.session() as s:
        assert s.get(Subscription, sub.id).jobs_applied == 10


def test_rerun_never_double_applies(services, db, make_posting, make_subscription, make_preference):
    _seed_profile(db)
    sub = make_subscription(tier="unlimited", max_jobs=None)
    pref = make_preference(sub)
    for _ in range(3):
        make_posting()

    assert services.engine.process_all_subscriptions()["applied"] == 3
    # widen the window again so only owner+posting dedup stands in the way
    with db.session() as s:
        s.execute(update(Preference).where(Preference.id == pref.id).values(last_applied_at=None))
    assert services.engine.process_all_subscriptions()["applied"] == 0
    assert _applied_count(db) == 3


def test_filter_is_resolved_once_and_stored(services, db, make_subscription, make_preference):
    _seed_profile(db)
    pref = make_preference(make_subscription())
    services.engine.process_all_subscriptions()
    with db.session() as s:
        stored = s.get(Preference, pref.id).expanded_filter
    assert stored["source"] == "rule"
    assert "java developer" in stored["must_exclude"]


def test_irrelevant_and_old_postings_are_skipped(services, db, make_posting, make_subscription, make_preference):
    _seed_profile(db)
    make_preference(make_subscription())
    make_posting(title="Java Developer", description="Spring and JavaScript tooling for the web.")
    make_posting(last_updated=utcnow() - timedelta(days=3), scraped_at=utcnow() - timedelta(days=3))
    make_posting(location="Kano", state="Kano")
    assert services.engine.process_all_subscriptions()["applied"] == 0


def test_remote_preference(services, db, make_posting, make_subscription, make_preference):
    _seed_profile(db)
    make_preference(make_subscription(), location="Remote", is_remote=True)
    make_posting(location="Lagos")
    remote = make_posting(location="Anywhere", state=None, is_remote=True)
    assert services.engine.process_all_subscriptions()["applied"] == 1
    with db.session() as s:
        assert s.scalar(select(Application.posting_id).where(Application.posting_id == remote.id)) == remote.id


def test_missing_profile_skips_preference(services, db, make_posting, make_subscription, make_preference):
    make_preference(make_subscription())
    make_posting()
    assert services.engine.process_all_subscriptions() == {"processed": 1, "applied": 0}


def test_inactive_subscriptions_are_ignored(services, db, make_posting, make_subscription, make_preference):
    _seed_profile(db)
    make_preference(make_subscription(valid_until=utcnow() - timedelta(days=1)))
    make_preference(make_subscription(status="cancelled"))
    make_preference(make_subscription(jobs_applied=10, max_jobs=10))
    make_posting()
    assert services.engine.process_all_subscriptions() == {"processed": 0, "applied": 0}


def test_failing_preference_does_not_stop_siblings(services, db, make_posting, make_subscription, make_preference, monkeypatch):
    _seed_profile(db)
    sub = make_subscription()
    broken = make_preference(sub, location="Abuja")
    make_preference(sub)
    make_posting()

    original = services.engine.find_new_postings

    def flaky(pref, flt, owner_id, now=None):
        if pref.id == broken.id:
            raise RuntimeError("query timed out")
        return original(pref, flt, owner_id, now)

    monkeypatch.setattr(services.engine, "find_new_postings", flaky)
    assert services.engine.process_all_subscriptions() == {"processed": 1, "applied": 1}


def test_failing_subscription_does_not_stop_others(services, db, make_posting, make_subscription, make_preference, monkeypatch):
    other_owner = "2348099999999"
    _seed_profile(db)
    _seed_profile(db, other_owner)
    bad = make_subscription()
    make_preference(bad)
    good = make_subscription(owner_id=other_owner)
    make_preference(good)
    make_posting()

    original = services.engine.process_subscription

    def flaky(sub):
        if sub.id == bad.id:
            raise RuntimeError("boom")
        return original(sub)

    monkeypatch.setattr(services.engine, "process_subscription", flaky)
    assert services.engine.process_all_subscriptions() == {"processed": 1, "applied": 1}
    assert _applied_count(db, other_owner) == 1


def test_statistics(services, db, make_posting, make_subscription, make_preference):
    _seed_profile(db)
    make_preference(make_subscription())
    make_posting()
    make_posting(email=None)
    services.engine.process_all_subscriptions()

    stats = services.engine.get_statistics(days=7)
    assert stats["active_subscriptions"] == 1
    assert stats["active_users"] == 1
    assert stats["total_applications"] == 2
    assert stats["successful_applications"] == 1
    assert stats["failed_applications"] == 1

from __future__ import annotations

import os

os.environ.setdefault("AUTOAPPLY_LOG_FILE", "false")

import itertools
from datetime import timedelta

import pytest

from autoapply.config import Settings
from autoapply.db import Database, Posting, Preference, Subscription, utcnow
from autoapply.errors import AIServiceError
from autoapply.worker import build_services

CV_TEXT = """CURRICULUM VITAE
Adaeze Okafor
Email: adaeze.okafor@gmail.com
Phone: +234 803 123 4567

Frontend developer with 5 years experience building React and JavaScript
applications. Comfortable with TypeScript, Docker and AWS.

Education: BSc Computer Science, University of Lagos
"""


class FakeAI:
    """Returns queued replies in order; an exception instance is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[dict] = []

    def complete_json(self, prompt, *, timeout, max_tokens=800):
        self.calls.append({"prompt": prompt, "timeout": timeout})
        if not self.replies:
            raise AIServiceError("no reply configured")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeMailer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    def send(self, to_addr, subject, text, html):
        if self.fail:
            raise OSError("smtp unreachable")
        self.sent.append({"to": to_addr, "subject": subject, "text": text, "html": html})


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    return database


@pytest.fixture
def ai():
    return FakeAI()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def services(db, ai, mailer):
    return build_services(Settings(database_url="sqlite://"), db=db, client=ai, mailer=mailer)


_ids = itertools.count(1)


@pytest.fixture
def make_posting(db):
    def _make(**kwargs) -> Posting:
        now = utcnow()
        values = {
            "id": f"job-{next(_ids)}",
            "title": "React Developer",
            "description": "Build web interfaces in React and JavaScript.",
            "requirements": "",
            "category": "it_software",
            "experience": "",
            "location": "Lagos",
            "state": "Lagos",
            "is_remote": False,
            "company": "Acme",
            "email": "hr@acme.ng",
            "last_updated": now - timedelta(hours=1),
            "scraped_at": now - timedelta(hours=1),
        }
        values.update(kwargs)
        posting = Posting(**values)
        with db.session() as s:
            s.add(posting)
        return posting

    return _make


@pytest.fixture
def make_subscription(db):
    def _make(**kwargs) -> Subscription:
        values = {
            "owner_id": "2348031234567",
            "tier": "basic",
            "status": "active",
            "jobs_applied": 0,
            "max_jobs": 10,
            "valid_until": utcnow() + timedelta(days=30),
        }
        values.update(kwargs)
        sub = Subscription(**values)
        with db.session() as s:
            s.add(sub)
        return sub

    return _make


@pytest.fixture
def make_preference(db):
    def _make(sub: Subscription, **kwargs) -> Preference:
        values = {
            "subscription_id": sub.id,
            "owner_id": sub.owner_id,
            "category": "it_software",
            "category_label": "react developer",
            "location": "Lagos",
            "is_remote": False,
        }
        values.update(kwargs)
        pref = Preference(**values)
        with db.session() as s:
            s.add(pref)
        return pref

    return _make

from __future__ import annotations

import uuid
from datetime import timedelta

from autoapply.db import Application, utcnow
from autoapply.profiles import extract_contact, latest_profile_text

from conftest import CV_TEXT


def test_contact_from_cv():
    contact = extract_contact(CV_TEXT)
    assert contact.name == "Adaeze Okafor"
    assert contact.email == "adaeze.okafor@gmail.com"
    assert contact.phone == "+2348031234567"


def test_placeholder_email_and_labelled_name():
    text = "Name: Chidi Eze\nyour.name@example.com\nchidi@eze.ng\nTel: 0803-555-1234\nWorked 2015 - 2019"
    contact = extract_contact(text)
    assert contact.name == "Chidi Eze"
    assert contact.email == "chidi@eze.ng"
    assert contact.phone == "08035551234"


def test_date_ranges_are_not_phone_numbers():
    contact = extract_contact("Experience\nAcme Ltd 2015 2016 2017 2018 2019\nSales")
    assert contact.phone == ""
    assert contact.name == ""


def test_empty_text():
    contact = extract_contact("")
    assert (contact.name, contact.email, contact.phone) == ("", "", "")


def test_latest_profile_text(db):
    owner = "2348031234567"
    with db.session() as s:
        s.add(Application(id=str(uuid.uuid4()), owner_id=owner, posting_id="a", profile_text="old cv",
                          applied_at=utcnow() - timedelta(days=2)))
        s.add(Application(id=str(uuid.uuid4()), owner_id=owner, posting_id="b", profile_text="new cv",
                          applied_at=utcnow() - timedelta(days=1)))
        s.add(Application(id=str(uuid.uuid4()), owner_id=owner, posting_id="c", profile_text=None,
                          applied_at=utcnow()))
    with db.session() as s:
        assert latest_profile_text(s, owner) == "new cv"
        assert latest_profile_text(s, "someone-else") is None

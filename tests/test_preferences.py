from __future__ import annotations

import pytest

from autoapply.errors import PreferenceError
from autoapply.preferences import CATEGORIES, LOCATIONS, add_preference, list_preferences, remove_preference


def test_catalogs():
    assert len(CATEGORIES) == 19
    assert "Remote" in LOCATIONS


def test_add_list_remove(db, make_subscription):
    sub = make_subscription()
    lagos = add_preference(db, sub.id, "it_software", "Lagos")
    remote = add_preference(db, sub.id, "accounting_finance", "Remote")

    prefs = list_preferences(db, sub.id)
    assert [p["id"] for p in prefs] == [lagos, remote]
    assert prefs[0]["category_label"] == "IT & Software Development"
    assert prefs[0]["is_remote"] is False
    assert prefs[1]["is_remote"] is True

    assert remove_preference(db, lagos, sub.owner_id) is True
    assert remove_preference(db, lagos, sub.owner_id) is False
    assert [p["id"] for p in list_preferences(db, sub.id)] == [remote]


def test_duplicate_active_preference_rejected(db, make_subscription):
    sub = make_subscription()
    first = add_preference(db, sub.id, "it_software", "Lagos")
    with pytest.raises(PreferenceError):
        add_preference(db, sub.id, "it_software", "Lagos")
    remove_preference(db, first, sub.owner_id)
    assert add_preference(db, sub.id, "it_software", "Lagos") != first


def test_other_owner_cannot_remove(db, make_subscription):
    sub = make_subscription()
    pref = add_preference(db, sub.id, "it_software", "Lagos")
    assert remove_preference(db, pref, "2348000000000") is False


@pytest.mark.parametrize("category, location", [("astronaut", "Lagos"), ("it_software", "  ")])
def test_invalid_input(db, make_subscription, category, location):
    with pytest.raises(PreferenceError):
        add_preference(db, make_subscription().id, category, location)


def test_unknown_subscription(db):
    with pytest.raises(PreferenceError):
        add_preference(db, 999, "it_software", "Lagos")

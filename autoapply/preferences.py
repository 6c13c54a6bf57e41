"""Which categories and locations a subscription watches."""
from __future__ import annotations

from typing import Any

from sqlalchemy import select

from autoapply.db import Database, Preference, Subscription, utcnow
from autoapply.errors import PreferenceError
from autoapply.log import get_logger, mask

log = get_logger(__name__)

CATEGORIES: dict[str, str] = {
    "it_software": "IT & Software Development",
    "accounting_finance": "Accounting & Finance",
    "marketing_sales": "Sales & Marketing",
    "healthcare_medical": "Healthcare & Medical",
    "engineering_technical": "Engineering & Technical",
    "education_training": "Education & Training",
    "admin_office": "Administration & Office",
    "management_executive": "Management & Executive",
    "human_resources": "Human Resources",
    "customer_service": "Customer Service",
    "legal_compliance": "Legal & Compliance",
    "media_creative": "Media & Creative",
    "logistics_supply": "Logistics & Supply Chain",
    "security_safety": "Security & Safety",
    "construction_real_estate": "Construction & Real Estate",
    "manufacturing_production": "Manufacturing & Production",
    "transport_driving": "Transport & Driving",
    "retail_fashion": "Retail & Fashion",
    "other_general": "General Jobs",
}

LOCATIONS: list[str] = [
    "Lagos", "Abuja", "Port Harcourt", "Kano", "Ibadan",
    "Jos", "Kaduna", "Enugu", "Benin", "Calabar",
    "Oyo", "Abia", "Delta", "Edo", "Rivers",
    "Anambra", "Imo", "Ogun", "Ondo", "Osun",
    "Remote",
]


def add_preference(db: Database, subscription_id: int, category: str, location: str) -> int:
    """Watch ``category`` in ``location``; returns the new preference id."""
    if category not in CATEGORIES:
        raise PreferenceError(f"Unknown category: {category}")
    location = location.strip()
    if not location:
        raise PreferenceError("Location is required")

    with db.session() as s:
        sub = s.get(Subscription, subscription_id)
        if sub is None:
            raise PreferenceError(f"Subscription {subscription_id} not found")
        existing = s.scalar(
            select(Preference.id).where(
                Preference.subscription_id == subscription_id,
                Preference.category == category,
                Preference.location == location,
                Preference.is_active.is_(True),
            )
        )
        if existing is not None:
            raise PreferenceError("You already have this preference active!")
        pref = Preference(
            subscription_id=subscription_id,
            owner_id=sub.owner_id,
            category=category,
            category_label=CATEGORIES[category],
            location=location,
            is_remote=location.lower() == "remote",
        )
        s.add(pref)
        s.flush()
        pref_id = pref.id
        owner = sub.owner_id

    log.info("Preference #%d saved for %s: %s in %s", pref_id, mask(owner), CATEGORIES[category], location)
    return pref_id


def remove_preference(db: Database, preference_id: int, owner_id: str) -> bool:
    with db.session() as s:
        pref = s.scalar(
            select(Preference).where(Preference.id == preference_id, Preference.owner_id == owner_id)
        )
        if pref is None or not pref.is_active:
            return False
        pref.is_active = False
        pref.updated_at = utcnow()
    log.info("Preference #%d deactivated for %s", preference_id, mask(owner_id))
    return True


def list_preferences(db: Database, subscription_id: int) -> list[dict[str, Any]]:
    with db.session() as s:
        prefs = s.scalars(
            select(Preference)
            .where(Preference.subscription_id == subscription_id, Preference.is_active.is_(True))
            .order_by(Preference.created_at, Preference.id)
        ).all()
    return [
        {
            "id": p.id,
            "category": p.category,
            "category_label": p.category_label,
            "location": p.location,
            "is_remote": p.is_remote,
            "jobs_matched": p.jobs_matched,
            "jobs_applied": p.jobs_applied,
            "last_applied_at": p.last_applied_at,
        }
        for p in prefs
    ]

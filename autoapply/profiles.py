"""Profile source: the CV text an owner last submitted, and contact details inside it."""
from __future__ import annotations

import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from autoapply.db import Application
from autoapply.models import ContactInfo

_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_RE = re.compile(r"(?:\+?234[\s-]?|0)[789][01]\d(?:[\s-]?\d){7}|\+\d{1,3}(?:[\s-]?\d){7,12}")

_PLACEHOLDER_DOMAINS = ("example.com", "domain.com", "email.com", "test.com")

_NAME_PATTERNS = [
    re.compile(r"(?:Full Name|Name)\s*[:\-]\s*([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,2})"),
    re.compile(r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,2})\s*(?i:Nationality|Date of birth|Gender)\s*:"),
]
_LINE_NAME_RE = re.compile(r"^([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,3})$")
_NOT_NAMES = (
    "team", "leadership", "manager", "skills", "experience", "education",
    "professional", "summary", "profile", "curriculum", "resume", "objective",
)
_HEADERS = ("personal information", "contact details", "curriculum vitae", "resume", "cv")


def _plausible_name(candidate: str) -> bool:
    low = candidate.lower()
    return not any(word in low for word in _NOT_NAMES)


def _extract_name(text: str) -> str:
    for pattern in _NAME_PATTERNS:
        m = pattern.search(text)
        if m and _plausible_name(m.group(1)):
            return m.group(1).strip()

    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    start = 0
    for i, line in enumerate(lines[:10]):
        if line.lower().rstrip(":") in _HEADERS:
            start = i + 1
            break
    for line in lines[start:start + 5]:
        cleaned = re.sub(r"^[•\-*]\s*", "", line)
        m = _LINE_NAME_RE.match(cleaned)
        if m and _plausible_name(m.group(1)):
            return m.group(1)
    return ""


def extract_contact(text: str) -> ContactInfo:
    """Best-effort name, email and phone; empty strings where nothing fits."""
    if not text:
        return ContactInfo()

    email = ""
    for candidate in _EMAIL_RE.findall(text):
        if not any(candidate.lower().endswith(d) for d in _PLACEHOLDER_DOMAINS):
            email = candidate
            break

    phone = ""
    m = _PHONE_RE.search(text)
    if m:
        phone = re.sub(r"[\s\-().]", "", m.group(0))

    return ContactInfo(name=_extract_name(text), email=email, phone=phone)


def latest_profile_text(session: Session, owner_id: str) -> str | None:
    """Most recent non-empty profile text the owner submitted with an application."""
    return session.scalar(
        select(Application.profile_text)
        .where(
            Application.owner_id == owner_id,
            Application.profile_text.is_not(None),
            Application.profile_text != "",
        )
        .order_by(Application.applied_at.desc())
        .limit(1)
    )

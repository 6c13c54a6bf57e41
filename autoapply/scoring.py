"""ATS compatibility scoring: AI analysis with a rule-based fallback."""
from __future__ import annotations

import math
import re
import time
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from autoapply.db import ATSScore, Database, Posting, utcnow
from autoapply.errors import AIServiceError
from autoapply.llm import TextService, ats_prompt
from autoapply.log import get_logger, mask
from autoapply.models import ScoreAnalysis
from autoapply.queue import WorkQueue

log = get_logger(__name__)

SCORING_TASK = "ats.calculate"
SKILL_WEIGHT = 0.4
EXPERIENCE_WEIGHT = 0.35
EDUCATION_WEIGHT = 0.25

_KEYWORD_PATTERNS = [
    re.compile(r"\b(javascript|python|java|react|angular|vue|node\.?js|typescript)\b", re.IGNORECASE),
    re.compile(r"\b(sql|mysql|postgresql|mongodb|redis|elasticsearch)\b", re.IGNORECASE),
    re.compile(r"\b(aws|azure|gcp|docker|kubernetes|jenkins)\b", re.IGNORECASE),
    re.compile(r"\b(excel|powerpoint|word|office|quickbooks|sap|erp)\b", re.IGNORECASE),
    re.compile(r"\b(accounting|finance|audit|bookkeeping|financial reporting)\b", re.IGNORECASE),
    re.compile(r"\b(marketing|sales|business development|crm|lead generation)\b", re.IGNORECASE),
]
_REQUIRED_YEARS_RE = re.compile(r"(\d+)\s*(?:\+|to|-)\s*(\d+)?\s*years?")
_CANDIDATE_YEARS_RE = re.compile(r"(\d+)\s*(?:\+)?\s*years?\s*(?:of\s*)?experience")

# first hit wins, so the ladder runs top-down
_EDUCATION_LADDER = [
    (("phd", "doctorate"), 100),
    (("master", "msc", "mba"), 90),
    (("bachelor", "bsc", "b.sc"), 80),
    (("hnd", "diploma"), 70),
    (("university", "college"), 60),
]


def _clamp(value: float) -> int:
    return max(0, min(100, math.floor(value + 0.5)))


def extract_keywords(text: str) -> list[str]:
    """Skill keywords found in ``text``, lower-cased, in order of discovery."""
    found: dict[str, None] = {}
    for pattern in _KEYWORD_PATTERNS:
        for m in pattern.finditer(text or ""):
            found.setdefault(m.group(0).lower(), None)
    return list(found)


def experience_match(profile_text: str, required: str | None) -> int:
    if not required:
        return 75
    m = _REQUIRED_YEARS_RE.search(required.lower())
    required_years = int(m.group(1)) if m else 0
    m = _CANDIDATE_YEARS_RE.search((profile_text or "").lower())
    years = int(m.group(1)) if m else 0

    if years >= required_years:
        return 100
    if years >= required_years * 0.7:
        return 75
    if years >= required_years * 0.5:
        return 50
    return 30


def education_match(profile_text: str) -> int:
    low = (profile_text or "").lower()
    for markers, score in _EDUCATION_LADDER:
        if any(marker in low for marker in markers):
            return score
    return 40


def overall_score(analysis: ScoreAnalysis) -> int:
    return _clamp(
        analysis.skill_match_score * SKILL_WEIGHT
        + analysis.experience_match_score * EXPERIENCE_WEIGHT
        + analysis.education_match_score * EDUCATION_WEIGHT
    )


def analyze_with_rules(profile_text: str, posting: Any) -> ScoreAnalysis:
    profile_low = (profile_text or "").lower()
    posting_text = f"{posting.title or ''} {posting.description or ''} {posting.requirements or ''}".lower()
    keywords = extract_keywords(posting_text)
    matched = [k for k in keywords if k in profile_low]
    missing = [k for k in keywords if k not in profile_low]

    # a posting with no recognisable skills says nothing either way
    skill = _clamp(100 * len(matched) / len(keywords)) if keywords else 50
    experience = experience_match(profile_text, posting.experience)
    education = education_match(profile_text)

    strengths: list[str] = []
    weaknesses: list[str] = []
    recommendations: list[str] = []
    if len(matched) > 5:
        strengths.append("Strong keyword match with job requirements")
    if experience > 70:
        strengths.append("Experience level aligns with job requirements")
    if education > 70:
        strengths.append("Educational qualifications meet job standards")
    if len(missing) > 3:
        weaknesses.append(f"Missing {len(missing)} key skills from job requirements")
        recommendations.append(f"Consider adding: {', '.join(missing[:3])}")
    if experience < 50:
        weaknesses.append("Experience level may not fully meet requirements")
        recommendations.append("Highlight transferable skills and relevant projects")

    return ScoreAnalysis(
        skill_match_score=skill,
        experience_match_score=experience,
        education_match_score=education,
        matched_keywords=matched,
        missing_keywords=missing,
        strengths=strengths,
        weaknesses=weaknesses,
        recommendations=recommendations,
        source="rules",
    )


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _from_model(data: dict[str, Any]) -> ScoreAnalysis:
    skill = data.get("skill_match_score")
    if isinstance(skill, bool) or not isinstance(skill, (int, float)):
        raise AIServiceError("AI analysis had no numeric skill_match_score")

    def sub(key: str, default: int) -> int:
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return default
        return _clamp(value)

    return ScoreAnalysis(
        skill_match_score=_clamp(skill),
        experience_match_score=sub("experience_match_score", 75),
        education_match_score=sub("education_match_score", 40),
        matched_keywords=_str_list(data.get("matched_keywords")),
        missing_keywords=_str_list(data.get("missing_keywords")),
        strengths=_str_list(data.get("strengths")),
        weaknesses=_str_list(data.get("weaknesses")),
        recommendations=_str_list(data.get("recommendations")),
        source="model",
    )


def score(
    profile_text: str,
    posting: Any,
    client: TextService | None = None,
    timeout: float = 65.0,
) -> ScoreAnalysis:
    """Model analysis when a client is given and answers sensibly, else rules."""
    if client is not None:
        try:
            data = client.complete_json(ats_prompt(profile_text, posting), timeout=timeout, max_tokens=800)
            return _from_model(data)
        except AIServiceError as exc:
            log.warning("AI analysis failed, using rules: %s", exc)
    return analyze_with_rules(profile_text, posting)


def interpret_score(value: int) -> str:
    if value >= 85:
        return "Excellent match: your CV is highly compatible."
    if value >= 70:
        return "Good match: strong chance of passing ATS screening."
    if value >= 55:
        return "Fair match: consider updating your CV with more relevant keywords."
    return "Low match: significant gaps in requirements. Review the job description carefully."


class ScoringEngine:
    """Persists one ATSScore per application and computes it off the queue."""

    def __init__(self, db: Database, queue: WorkQueue, client: TextService | None = None, timeout: float = 65.0) -> None:
        self.db = db
        self.queue = queue
        self.client = client
        self.timeout = timeout

    def register(self) -> None:
        self.queue.register(SCORING_TASK, self._handle)

    def queue_scoring(self, application_id: str, owner_id: str, posting_id: str, profile_text: str) -> int:
        """Create the pending score row (once) and enqueue its calculation."""
        with self.db.session() as s:
            score_id = s.scalar(select(ATSScore.id).where(ATSScore.application_id == application_id))
        if score_id is None:
            try:
                with self.db.session() as s:
                    row = ATSScore(application_id=application_id, owner_id=owner_id, posting_id=posting_id)
                    s.add(row)
                    s.flush()
                    score_id = row.id
            except IntegrityError:
                with self.db.session() as s:
                    score_id = s.scalar(select(ATSScore.id).where(ATSScore.application_id == application_id))

        self.queue.enqueue(
            SCORING_TASK,
            {"score_id": score_id, "profile_text": profile_text},
            delay=5,
            priority=5,
            max_attempts=3,
            backoff=5.0,
            key=f"ats-{score_id}",
        )
        log.info("ATS scoring queued: score #%s application %s owner %s", score_id, application_id, mask(owner_id))
        return score_id

    def _handle(self, payload: dict) -> None:
        self.calculate(payload["score_id"], payload.get("profile_text"))

    def calculate(self, score_id: int, profile_text: str | None = None) -> ATSScore | None:
        started = time.monotonic()
        with self.db.session() as s:
            row = s.get(ATSScore, score_id)
            if row is None:
                log.warning("ATS score #%s vanished before calculation", score_id)
                return None
            if row.processing_status == "completed":
                return row
            row.processing_status = "processing"
            row.updated_at = utcnow()
            posting = s.get(Posting, row.posting_id)
            if posting is not None:
                s.expunge(posting)

        if posting is None:
            self._mark_failed(score_id, started)
            log.error("ATS score #%s failed: posting %s not found", score_id, row.posting_id)
            return None

        try:
            analysis = score(profile_text or "", posting, self.client, self.timeout)
            overall = overall_score(analysis)
            with self.db.session() as s:
                row = s.get(ATSScore, score_id)
                row.overall_score = overall
                row.skill_match_score = analysis.skill_match_score
                row.experience_match_score = analysis.experience_match_score
                row.education_match_score = analysis.education_match_score
                row.matched_keywords = analysis.matched_keywords
                row.missing_keywords = analysis.missing_keywords
                row.strengths = analysis.strengths
                row.weaknesses = analysis.weaknesses
                row.recommendations = analysis.recommendations
                row.scoring_source = analysis.source
                row.processing_status = "completed"
                row.processed_at = utcnow()
                row.processing_duration_ms = _elapsed_ms(started)
                row.updated_at = utcnow()
        except Exception:
            self._mark_failed(score_id, started)
            raise

        log.info(
            "ATS score #%s calculated: %d (%s) in %dms",
            score_id, overall, analysis.source, _elapsed_ms(started),
        )
        return row

    def _mark_failed(self, score_id: int, started: float) -> None:
        with self.db.session() as s:
            s.execute(
                update(ATSScore)
                .where(ATSScore.id == score_id)
                .values(processing_status="failed", processing_duration_ms=_elapsed_ms(started), updated_at=utcnow())
            )

    def get_score(self, application_id: str) -> dict[str, Any]:
        with self.db.session() as s:
            row = s.scalar(select(ATSScore).where(ATSScore.application_id == application_id))
        if row is None:
            return {"available": False, "status": "not_requested"}
        if row.processing_status != "completed":
            return {
                "available": False,
                "status": row.processing_status,
                "message": "Your ATS score is being calculated. Check back soon!",
            }
        return {
            "available": True,
            "status": "completed",
            "score": row.overall_score,
            "interpretation": interpret_score(row.overall_score or 0),
            "breakdown": {
                "skills": row.skill_match_score,
                "experience": row.experience_match_score,
                "education": row.education_match_score,
            },
            "matched": row.matched_keywords,
            "missing": row.missing_keywords,
            "strengths": row.strengths,
            "weaknesses": row.weaknesses,
            "recommendations": row.recommendations,
            "source": row.scoring_source,
            "processed_at": row.processed_at,
            "processing_ms": row.processing_duration_ms,
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

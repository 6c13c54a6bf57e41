from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from autoapply.db import Application, ATSScore, utcnow
from autoapply.errors import AIServiceError
from autoapply.models import ScoreAnalysis
from autoapply.queue import WorkQueue
from autoapply.scoring import (
    ScoringEngine,
    analyze_with_rules,
    education_match,
    experience_match,
    extract_keywords,
    interpret_score,
    overall_score,
    score,
)

from conftest import CV_TEXT, FakeAI


class _Posting:
    def __init__(self, title="", description="", requirements="", experience="", category=""):
        self.title = title
        self.description = description
        self.requirements = requirements
        self.experience = experience
        self.category = category


def test_keywords_in_discovery_order_without_duplicates():
    text = "Python and SQL. Python again, plus Docker, Excel and node.js; sales too."
    assert extract_keywords(text) == ["python", "node.js", "sql", "docker", "excel", "sales"]
    assert extract_keywords("React, Python, react") == ["react", "python"]
    assert extract_keywords("MySQL then AWS then Java") == ["java", "mysql", "aws"]


def test_five_years_meets_three_plus():
    assert experience_match("I have 5 years experience in sales", "3+ years") == 100


@pytest.mark.parametrize("cv, required, expected", [
    ("3 years experience", "4 - 6 years", 75),
    ("2 years experience", "4 to 6 years", 50),
    ("1 year experience", "5+ years", 30),
    ("no figures here", "", 75),
    ("no figures here", "Entry level", 100),
])
def test_experience_bands(cv, required, expected):
    assert experience_match(cv, required) == expected


@pytest.mark.parametrize("cv, expected", [
    ("PhD in Physics", 100),
    ("MBA, Lagos Business School", 90),
    ("B.Sc Accounting", 80),
    ("HND Marketing", 70),
    ("Attended Yaba College", 60),
    ("Self taught", 40),
])
def test_education_ladder(cv, expected):
    assert education_match(cv) == expected


def test_overall_is_weighted_and_bounded():
    analysis = ScoreAnalysis(skill_match_score=50, experience_match_score=100, education_match_score=80)
    assert overall_score(analysis) == 75
    top = ScoreAnalysis(skill_match_score=100, experience_match_score=100, education_match_score=100)
    assert overall_score(top) == 100


def test_rules_narrative():
    posting = _Posting(
        title="Backend Engineer",
        description="Python, Java, SQL, Docker, Kubernetes, AWS and Redis.",
        experience="5+ years",
    )
    analysis = analyze_with_rules("Python developer, 1 year experience. Self taught.", posting)
    assert analysis.matched_keywords == ["python"]
    assert analysis.missing_keywords == ["java", "sql", "redis", "docker", "kubernetes", "aws"]
    assert analysis.skill_match_score == 14
    assert analysis.experience_match_score == 30
    assert analysis.recommendations[0] == "Consider adding: java, sql, redis"
    assert "Experience level may not fully meet requirements" in analysis.weaknesses
    assert analysis.source == "rules"


def test_posting_without_keywords_scores_skills_neutral():
    analysis = analyze_with_rules(CV_TEXT, _Posting(title="Driver", description="Drive the van."))
    assert analysis.skill_match_score == 50


def test_model_reply_used_when_valid():
    client = FakeAI({"skill_match_score": 88, "experience_match_score": 140, "matched_keywords": ["react"]})
    analysis = score(CV_TEXT, _Posting(title="React Developer"), client)
    assert analysis.source == "model"
    assert analysis.skill_match_score == 88
    assert analysis.experience_match_score == 100
    assert analysis.matched_keywords == ["react"]


@pytest.mark.parametrize("reply", [AIServiceError("timed out"), {"skill_match_score": "high"}, {}])
def test_bad_model_reply_falls_back_to_rules(reply):
    analysis = score(CV_TEXT, _Posting(title="React Developer", description="React and TypeScript"), FakeAI(reply))
    assert analysis.source == "rules"
    assert analysis.matched_keywords == ["react", "typescript"]


def test_interpretation_bands():
    assert interpret_score(85).startswith("Excellent")
    assert interpret_score(70).startswith("Good")
    assert interpret_score(55).startswith("Fair")
    assert interpret_score(54).startswith("Low")


def _application(db, posting_id):
    app_id = str(uuid.uuid4())
    with db.session() as s:
        s.add(Application(id=app_id, owner_id="2348031234567", posting_id=posting_id, profile_text=CV_TEXT))
    return app_id


def test_ai_timeout_completes_with_rules(db, make_posting):
    posting = make_posting(experience="3+ years")
    app_id = _application(db, posting.id)
    queue = WorkQueue(db)
    engine = ScoringEngine(db, queue, FakeAI(AIServiceError("timed out after 65s")))
    engine.register()

    assert engine.get_score(app_id) == {"available": False, "status": "not_requested"}
    score_id = engine.queue_scoring(app_id, "2348031234567", posting.id, CV_TEXT)
    assert engine.queue_scoring(app_id, "2348031234567", posting.id, CV_TEXT) == score_id
    assert engine.get_score(app_id)["status"] == "pending"

    stats = queue.run_pending(now=utcnow() + timedelta(seconds=10))
    assert stats.completed == 1

    result = engine.get_score(app_id)
    assert result["available"] is True
    assert result["status"] == "completed"
    assert result["source"] == "rules"
    assert result["breakdown"]["experience"] == 100
    assert 0 <= result["score"] <= 100
    assert result["processing_ms"] is not None


def test_missing_posting_marks_score_failed(db):
    app_id = _application(db, "gone")
    engine = ScoringEngine(db, WorkQueue(db))
    with db.session() as s:
        s.add(ATSScore(application_id=app_id, owner_id="2348031234567", posting_id="gone"))
    with db.session() as s:
        score_id = s.scalar(select(ATSScore.id))

    assert engine.calculate(score_id, CV_TEXT) is None
    result = engine.get_score(app_id)
    assert result["status"] == "failed"
    assert result["available"] is False

"""Plain data passed between pipeline stages."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

FILTER_SOURCES = ("rule", "cache", "model", "fallback")


def _terms(values: Iterable[str] | None) -> tuple[str, ...]:
    """Lower-cased, stripped, de-duplicated; keeps first-seen order."""
    out: dict[str, None] = {}
    for v in values or ():
        term = str(v).strip().lower()
        if term:
            out.setdefault(term, None)
    return tuple(out)


@dataclass(frozen=True)
class StructuredFilter:
    must_include: tuple[str, ...] = ()
    must_exclude: tuple[str, ...] = ()
    related: tuple[str, ...] = ()
    boost_terms: tuple[str, ...] = ()
    confidence: float = 0.0
    source: str = "fallback"
    matched_term: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "must_include", _terms(self.must_include))
        object.__setattr__(self, "must_exclude", _terms(self.must_exclude))
        object.__setattr__(self, "related", _terms(self.related))
        object.__setattr__(self, "boost_terms", _terms(self.boost_terms))
        object.__setattr__(self, "confidence", max(0.0, min(1.0, float(self.confidence))))
        if self.source not in FILTER_SOURCES:
            raise ValueError(f"unknown filter source: {self.source!r}")

    def with_source(self, source: str, confidence: float | None = None) -> StructuredFilter:
        return replace(
            self,
            source=source,
            confidence=self.confidence if confidence is None else confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "must_include": list(self.must_include),
            "must_exclude": list(self.must_exclude),
            "related": list(self.related),
            "boost_terms": list(self.boost_terms),
            "confidence": self.confidence,
            "source": self.source,
            "matched_term": self.matched_term,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StructuredFilter:
        # Older rows were written with "related_terms" and "rule-based"/"ai" sources.
        source = data.get("source", "fallback")
        source = {"rule-based": "rule", "ai": "model"}.get(source, source)
        return cls(
            must_include=data.get("must_include") or (),
            must_exclude=data.get("must_exclude") or (),
            related=data.get("related") or data.get("related_terms") or (),
            boost_terms=data.get("boost_terms") or (),
            confidence=data.get("confidence", 0.0),
            source=source if source in FILTER_SOURCES else "fallback",
            matched_term=data.get("matched_term") or data.get("matched_keyword"),
        )


@dataclass
class ContactInfo:
    name: str = ""
    email: str = ""
    phone: str = ""


@dataclass
class ScoreAnalysis:
    skill_match_score: int
    experience_match_score: int
    education_match_score: int
    matched_keywords: list[str] = field(default_factory=list)
    missing_keywords: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    source: str = "rules"


@dataclass
class SearchResult:
    postings: list[dict[str, Any]]
    filter: StructuredFilter | None
    query: str
    cached: bool = False

    @property
    def confidence(self) -> float:
        return self.filter.confidence if self.filter else 0.0

"""Corpus queries built from a StructuredFilter, plus the interactive search entry point."""
from __future__ import annotations

import hashlib
import json
import operator
from dataclasses import dataclass, field
from datetime import datetime
from functools import reduce
from typing import Any, Iterable

from sqlalchemy import ColumnElement, and_, bindparam, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from autoapply.cache import KeyValueCache
from autoapply.db import Database, Posting, utcnow
from autoapply.expansion import QueryExpansionEngine, normalize_query
from autoapply.log import get_logger
from autoapply.models import SearchResult, StructuredFilter

log = get_logger(__name__)

INCLUDE_COLUMNS = (Posting.title, Posting.description, Posting.requirements, Posting.category, Posting.experience)
EXCLUDE_COLUMNS = (Posting.title, Posting.description, Posting.requirements)

# Both interactive search and auto-apply ask for two distinct include terms.
MIN_INCLUDE_MATCHES = 2


@dataclass
class SearchQuery:
    predicate: ColumnElement
    ordering: list[Any]
    parameters: dict[str, str] = field(default_factory=dict)


def _text(column) -> ColumnElement:
    return func.coalesce(column, "")


def _contains_any(columns: Iterable, pattern) -> ColumnElement:
    return or_(*(_text(c).ilike(pattern) for c in columns))


def _total(terms: list[ColumnElement]) -> ColumnElement:
    return reduce(operator.add, terms)


def freshness_clause(now: datetime | None = None) -> ColumnElement:
    now = now or utcnow()
    return or_(Posting.expires_at.is_(None), Posting.expires_at > now)


def recency_key() -> ColumnElement:
    return func.coalesce(Posting.last_updated, Posting.scraped_at)


def build_query(flt: StructuredFilter, location: str | None = None, now: datetime | None = None) -> SearchQuery:
    """Return ``(predicate, ordering, parameters)`` for the postings table.

    - at least ``min(2, len(must_include))`` include terms must appear in
      title, description, requirements, category or experience; no include
      terms means no inclusion clause
    - any exclude term in title, description or requirements disqualifies
    - a physical location must match location or state; "remote" needs the
      remote flag
    - expired postings never match
    - ordering: summed boost weight of the terms found in the title (the
      first boost term weighs ``len(boost_terms)``, the last weighs 1),
      then most recently updated
    """
    conditions: list[ColumnElement] = []
    params: dict[str, str] = {}

    include = list(flt.must_include)
    if include:
        hits = []
        for i, term in enumerate(include):
            key = f"include_{i}"
            params[key] = f"%{term}%"
            pattern = bindparam(key, params[key])
            hits.append(case((_contains_any(INCLUDE_COLUMNS, pattern), 1), else_=0))
        conditions.append(_total(hits) >= min(MIN_INCLUDE_MATCHES, len(include)))

    for i, term in enumerate(flt.must_exclude):
        key = f"exclude_{i}"
        params[key] = f"%{term}%"
        conditions.append(~_contains_any(EXCLUDE_COLUMNS, bindparam(key, params[key])))

    if location:
        if location.strip().lower() == "remote":
            conditions.append(Posting.is_remote.is_(True))
        else:
            params["location"] = f"%{location.strip()}%"
            pattern = bindparam("location", params["location"])
            conditions.append(or_(_text(Posting.location).ilike(pattern), _text(Posting.state).ilike(pattern)))

    conditions.append(freshness_clause(now))

    ordering: list[Any] = []
    boosts = list(flt.boost_terms)
    if boosts:
        weights = []
        for i, term in enumerate(boosts):
            key = f"boost_{i}"
            params[key] = f"%{term}%"
            weights.append(case((_text(Posting.title).ilike(bindparam(key, params[key])), len(boosts) - i), else_=0))
        ordering.append(_total(weights).desc())
    ordering.extend([recency_key().desc(), Posting.id])

    return SearchQuery(predicate=and_(*conditions), ordering=ordering, parameters=params)


def matches_strictly(posting: Posting, flt: StructuredFilter) -> bool:
    """Auto-apply bar: two distinct include terms and no exclude term in title + description."""
    text = f"{posting.title or ''} {posting.description or ''}".lower()
    present = {term for term in flt.must_include if term in text}
    if len(present) < MIN_INCLUDE_MATCHES:
        return False
    return not any(term in text for term in flt.must_exclude)


def filter_for_auto_apply(postings: list[Posting], flt: StructuredFilter) -> list[Posting]:
    kept = [p for p in postings if matches_strictly(p, flt)]
    log.info(
        "Auto-apply filter kept %d of %d postings (removed %d)",
        len(kept), len(postings), len(postings) - len(kept),
    )
    return kept


class JobSearch:
    """Interactive search for the front-end: expand, query, rank, cache."""

    def __init__(
        self,
        db: Database,
        expansion: QueryExpansionEngine,
        cache: KeyValueCache,
        result_ttl_hours: float = 6,
    ) -> None:
        self.db = db
        self.expansion = expansion
        self.cache = cache
        self.result_ttl = result_ttl_hours * 3600

    def search_jobs(self, query: str, filters: dict[str, Any] | None = None, limit: int = 50) -> SearchResult:
        filters = filters or {}
        category = filters.get("category")
        location = filters.get("location")

        key = self._cache_key(query, category, location, limit)
        raw = self.cache.get(key)
        if raw:
            data = json.loads(raw)
            return SearchResult(
                postings=data["postings"],
                filter=StructuredFilter.from_dict(data["filter"]),
                query=query,
                cached=True,
            )

        flt = self.expansion.expand(query, category)
        built = build_query(flt, location)
        stmt = select(Posting).where(built.predicate).order_by(*built.ordering).limit(limit)
        try:
            with self.db.session() as s:
                postings = [p.to_dict() for p in s.scalars(stmt)]
        except SQLAlchemyError as exc:
            log.error("Search failed for %r: %s", query, exc)
            return SearchResult(postings=[], filter=flt, query=query)

        log.info("Search %r → %d postings (filter via %s)", query, len(postings), flt.source)
        self.cache.set(key, json.dumps({"postings": postings, "filter": flt.to_dict()}), self.result_ttl)
        return SearchResult(postings=postings, filter=flt, query=query)

    @staticmethod
    def _cache_key(query: str, category: str | None, location: str | None, limit: int) -> str:
        raw = f"{normalize_query(query)}|{category or ''}|{(location or '').lower()}|{limit}"
        return "search:" + hashlib.md5(raw.encode("utf-8")).hexdigest()

"""Turn a free-text job query into a StructuredFilter.

Resolution order: relevance dictionary, fast cache, durable cache, AI
service, naive tokenizer. Each step is a strategy returning ``(filter, ok)``;
the first ``ok`` wins. ``expand`` never raises.
"""
from __future__ import annotations

import hashlib
import json
import re
from dataclasses import replace
from datetime import timedelta
from typing import Optional, Protocol, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from autoapply.cache import KeyValueCache
from autoapply.db import Database, ExpansionCacheEntry, utcnow
from autoapply.errors import AIServiceError
from autoapply.llm import TextService, expansion_prompt
from autoapply.log import get_logger
from autoapply.models import StructuredFilter
from autoapply.relevance import RelevanceDictionary

log = get_logger(__name__)

USABLE_CONFIDENCE = 0.8
MODEL_CONFIDENCE = 0.85
FALLBACK_CONFIDENCE = 0.5
FAST_TTL_SECONDS = 3600
DURABLE_TTL = timedelta(days=7)

Resolution = Tuple[Optional[StructuredFilter], bool]


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", (query or "").strip().lower())


def cache_key(query: str, category: str | None) -> str:
    key = f"{normalize_query(query)}-{category or 'any'}"
    return hashlib.md5(key.encode("utf-8")).hexdigest()


def tokenize_filter(query: str) -> StructuredFilter:
    words = [w for w in normalize_query(query).split(" ") if len(w) > 3]
    return StructuredFilter(
        must_include=words,
        boost_terms=words,
        confidence=FALLBACK_CONFIDENCE,
        source="fallback",
    )


class ExpansionStrategy(Protocol):
    name: str

    def resolve(self, query: str, category: str | None) -> Resolution: ...


class DictionaryStrategy:
    name = "dictionary"

    def __init__(self, dictionary: RelevanceDictionary) -> None:
        self.dictionary = dictionary

    def resolve(self, query: str, category: str | None) -> Resolution:
        found = self.dictionary.lookup(query)
        if found is None:
            return None, False
        return found, found.confidence >= USABLE_CONFIDENCE


class ExpansionCacheStore:
    """Durable tier: one row per (query, category), hit-counted, 7-day expiry."""

    def __init__(self, db: Database, ttl: timedelta = DURABLE_TTL) -> None:
        self.db = db
        self.ttl = ttl

    def get(self, query: str, category: str | None) -> StructuredFilter | None:
        now = utcnow()
        with self.db.session() as s:
            entry = s.scalar(
                select(ExpansionCacheEntry).where(
                    ExpansionCacheEntry.search_query == query,
                    ExpansionCacheEntry.job_category == (category or ""),
                    ExpansionCacheEntry.expires_at > now,
                )
            )
            if entry is None:
                return None
            entry.hit_count += 1
            entry.last_used_at = now
            return StructuredFilter.from_dict(entry.expanded_data)

    def save(self, query: str, category: str | None, found: StructuredFilter) -> None:
        now = utcnow()
        for _ in range(2):
            try:
                with self.db.session() as s:
                    entry = s.scalar(
                        select(ExpansionCacheEntry).where(
                            ExpansionCacheEntry.search_query == query,
                            ExpansionCacheEntry.job_category == (category or ""),
                        )
                    )
                    if entry is None:
                        entry = ExpansionCacheEntry(search_query=query, job_category=category or "")
                        s.add(entry)
                    entry.expanded_data = found.to_dict()
                    entry.expires_at = now + self.ttl
                    entry.last_used_at = now
                return
            except IntegrityError:
                # another worker inserted the same key first; update theirs
                continue

    def clean_expired(self) -> int:
        with self.db.session() as s:
            result = s.execute(delete(ExpansionCacheEntry).where(ExpansionCacheEntry.expires_at < utcnow()))
            return result.rowcount or 0


class CacheStrategy:
    name = "cache"

    def __init__(self, fast: KeyValueCache, durable: ExpansionCacheStore, fast_ttl: float = FAST_TTL_SECONDS) -> None:
        self.fast = fast
        self.durable = durable
        self.fast_ttl = fast_ttl

    def resolve(self, query: str, category: str | None) -> Resolution:
        key = f"query_exp:{cache_key(query, category)}"
        raw = self.fast.get(key)
        if raw:
            return StructuredFilter.from_dict(json.loads(raw)).with_source("cache"), True

        found = self.durable.get(query, category)
        if found is None:
            return None, False
        self.fast.set(key, json.dumps(found.to_dict()), self.fast_ttl)
        return found.with_source("cache"), True

    def store(self, query: str, category: str | None, found: StructuredFilter) -> None:
        self.fast.set(f"query_exp:{cache_key(query, category)}", json.dumps(found.to_dict()), self.fast_ttl)
        self.durable.save(query, category, found)


class ModelStrategy:
    name = "model"

    def __init__(self, client: TextService, timeout: float = 12.0) -> None:
        self.client = client
        self.timeout = timeout

    def resolve(self, query: str, category: str | None) -> Resolution:
        try:
            data = self.client.complete_json(expansion_prompt(query, category), timeout=self.timeout, max_tokens=400)
        except AIServiceError as exc:
            log.warning("AI expansion failed for %r: %s", query, exc)
            return None, False
        include = data.get("must_include")
        if not isinstance(include, list) or not include:
            log.warning("AI expansion for %r had no must_include terms", query)
            return None, False
        found = StructuredFilter(
            must_include=include,
            must_exclude=_as_list(data.get("must_exclude")),
            related=_as_list(data.get("related") or data.get("related_terms")),
            boost_terms=_as_list(data.get("boost_terms")),
            confidence=MODEL_CONFIDENCE,
            source="model",
        )
        # never let one term be both required and forbidden
        if set(found.must_include) & set(found.must_exclude):
            found = replace(found, must_exclude=[t for t in found.must_exclude if t not in found.must_include])
        return found, True


def _as_list(value) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value if isinstance(v, (str, int, float))]
    return []


class TokenizerStrategy:
    name = "fallback"

    def resolve(self, query: str, category: str | None) -> Resolution:
        return tokenize_filter(query), True


class QueryExpansionEngine:
    def __init__(self, strategies: list[ExpansionStrategy], cache: CacheStrategy | None = None) -> None:
        self.strategies = strategies
        self.cache = cache

    @classmethod
    def build(
        cls,
        dictionary: RelevanceDictionary,
        fast: KeyValueCache,
        db: Database,
        client: TextService,
        timeout: float = 12.0,
    ) -> QueryExpansionEngine:
        cache = CacheStrategy(fast, ExpansionCacheStore(db))
        strategies: list[ExpansionStrategy] = [
            DictionaryStrategy(dictionary),
            cache,
            ModelStrategy(client, timeout=timeout),
            TokenizerStrategy(),
        ]
        return cls(strategies, cache=cache)

    def expand(self, query: str, category: str | None = None) -> StructuredFilter:
        normalized = normalize_query(query)
        for strategy in self.strategies:
            try:
                found, ok = strategy.resolve(normalized, category)
            except Exception as exc:
                log.error("Expansion strategy %s failed for %r: %s", strategy.name, normalized, exc)
                continue
            if not ok or found is None:
                continue
            log.info(
                "Expanded %r via %s (confidence %.2f, %d include / %d exclude)",
                normalized, found.source, found.confidence,
                len(found.must_include), len(found.must_exclude),
            )
            if found.source in ("model", "fallback"):
                self._write_back(normalized, category, found)
            return found
        return tokenize_filter(normalized)

    def clean_expired_cache(self) -> int:
        if self.cache is None:
            return 0
        count = self.cache.durable.clean_expired()
        log.info("Removed %d expired query expansion cache entries", count)
        return count

    def _write_back(self, query: str, category: str | None, found: StructuredFilter) -> None:
        if self.cache is None:
            return
        try:
            self.cache.store(query, category, found)
        except Exception as exc:
            log.error("Could not cache expansion for %r: %s", query, exc)

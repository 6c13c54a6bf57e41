"""Domain knowledge: seed terms and the structured expansion each one implies.

Entries are matched by substring against the lower-cased query. The longest
seed wins; between seeds of equal length the one registered first wins.
Extra entries can be layered on from a YAML file shaped like::

    "quantity surveyor":
      includes: [quantity surveyor, surveying, construction]
      excludes: [land surveyor]
      related: [cost estimation, boq]
      boosts: [quantity surveyor]
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

import yaml

from autoapply.log import get_logger
from autoapply.models import StructuredFilter

log = get_logger(__name__)

RULE_CONFIDENCE = 0.9


@dataclass(frozen=True)
class RelevanceEntry:
    includes: tuple[str, ...]
    excludes: tuple[str, ...] = ()
    related: tuple[str, ...] = ()
    boosts: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: dict) -> RelevanceEntry:
        def _seq(key: str, alt: str) -> tuple[str, ...]:
            return tuple(data.get(key) or data.get(alt) or ())

        return cls(
            includes=_seq("includes", "must_include"),
            excludes=_seq("excludes", "must_exclude"),
            related=_seq("related", "related_terms"),
            boosts=_seq("boosts", "boost_terms"),
        )

    def to_filter(self, seed: str) -> StructuredFilter:
        return StructuredFilter(
            must_include=self.includes,
            must_exclude=self.excludes,
            related=self.related,
            boost_terms=self.boosts,
            confidence=RULE_CONFIDENCE,
            source="rule",
            matched_term=seed,
        )


class SeedMatcher(Protocol):
    def add(self, seed: str) -> None: ...

    def longest_match(self, text: str) -> str | None: ...


class SeedTrie:
    """Character trie answering "longest registered seed contained in text"."""

    _END = "\0"

    def __init__(self) -> None:
        self._root: dict = {}
        self._order: dict[str, int] = {}

    def add(self, seed: str) -> None:
        seed = seed.lower()
        if not seed:
            return
        node = self._root
        for ch in seed:
            node = node.setdefault(ch, {})
        node[self._END] = seed
        self._order.setdefault(seed, len(self._order))

    def longest_match(self, text: str) -> str | None:
        best: str | None = None
        for start in range(len(text)):
            node = self._root
            for ch in text[start:]:
                node = node.get(ch)
                if node is None:
                    break
                seed = node.get(self._END)
                if seed is not None and self._better(seed, best):
                    best = seed
        return best

    def _better(self, seed: str, best: str | None) -> bool:
        if best is None or len(seed) > len(best):
            return True
        return len(seed) == len(best) and self._order[seed] < self._order[best]


def _entry(includes, excludes, related, boosts) -> RelevanceEntry:
    return RelevanceEntry(tuple(includes), tuple(excludes), tuple(related), tuple(boosts))


_REACT = _entry(
    ["react", "frontend", "javascript", "web"],
    ["java developer", "backend only", "python only", "php only"],
    ["typescript", "next.js", "vue", "angular", "node.js"],
    ["react", "frontend developer", "javascript developer"],
)
_JAVA = _entry(
    ["java", "backend", "spring"],
    ["javascript", "react", "vue", "frontend only"],
    ["spring boot", "kotlin", "maven", "hibernate"],
    ["java developer", "java engineer", "backend java"],
)
_PYTHON = _entry(
    ["python", "developer"],
    ["javascript", "java only", "php only"],
    ["django", "flask", "fastapi", "data science"],
    ["python developer", "python engineer"],
)
_PHP = _entry(
    ["php", "web developer", "backend"],
    ["javascript only", "java only", "python only"],
    ["laravel", "wordpress", "mysql", "codeigniter"],
    ["php developer", "laravel developer"],
)
_DEVELOPER = _entry(
    ["developer", "software", "programming"],
    ["business developer", "sales developer"],
    ["engineer", "programmer", "coding"],
    ["software developer", "web developer", "application developer"],
)

DEFAULT_ENTRIES: dict[str, RelevanceEntry] = {
    # Software: kept apart so "java" never drags in javascript roles and vice versa
    "react": _REACT,
    "javascript": _entry(
        ["javascript", "frontend", "web developer"],
        ["java developer", "backend only"],
        ["react", "vue", "angular", "node.js", "typescript"],
        ["javascript", "js", "frontend"],
    ),
    "java": _JAVA,
    "python": _PYTHON,
    "php": _PHP,
    "developer": _DEVELOPER,
    # "<stack> developer" must beat the generic "developer" seed on length
    "react developer": _REACT,
    "frontend developer": _REACT,
    "java developer": _JAVA,
    "python developer": _PYTHON,
    "php developer": _PHP,
    "software developer": _DEVELOPER,
    "web developer": _entry(
        ["web", "developer", "frontend", "javascript"],
        ["business developer", "sales developer"],
        ["html", "css", "react", "php", "wordpress"],
        ["web developer", "frontend developer", "full stack"],
    ),
    # Accounting
    "accountant": _entry(
        ["accountant", "accounting", "finance"],
        ["account manager", "sales account"],
        ["bookkeeping", "audit", "financial reporting", "quickbooks"],
        ["accountant", "accounting officer", "finance accountant"],
    ),
    "accounting": _entry(
        ["accounting", "accountant", "finance"],
        ["account executive", "account manager"],
        ["bookkeeping", "audit", "financial statements"],
        ["accounting", "accounts", "financial accounting"],
    ),
    # Sales & marketing, distinct from account management
    "sales": _entry(
        ["sales", "business development", "marketing"],
        ["accounting", "technical sales engineer"],
        ["account manager", "business development", "client relations"],
        ["sales representative", "sales executive", "sales officer"],
    ),
    "marketing": _entry(
        ["marketing", "digital marketing", "brand"],
        ["market research only"],
        ["social media", "content", "advertising", "seo"],
        ["marketing manager", "digital marketing", "marketing executive"],
    ),
    # Physical engineering
    "engineer": _entry(
        ["engineer", "engineering"],
        ["software engineer only"],
        ["mechanical", "electrical", "civil", "project"],
        ["engineer", "engineering", "technical engineer"],
    ),
    "mechanical": _entry(
        ["mechanical", "engineer"],
        ["software", "electrical only"],
        ["maintenance", "industrial", "production"],
        ["mechanical engineer", "mechanical engineering"],
    ),
    # Healthcare
    "nurse": _entry(
        ["nurse", "nursing", "healthcare"],
        ["nursing assistant only"],
        ["registered nurse", "clinical", "patient care"],
        ["nurse", "registered nurse", "nursing"],
    ),
    "medical": _entry(
        ["medical", "healthcare", "clinical"],
        ["medical sales only"],
        ["doctor", "nurse", "hospital", "health"],
        ["medical officer", "medical doctor", "healthcare"],
    ),
    "manager": _entry(
        ["manager", "management"],
        ["account manager only"],
        ["supervisor", "team lead", "director"],
        ["manager", "management", "managing"],
    ),
    "admin": _entry(
        ["admin", "administrative", "office"],
        ["system admin", "database admin"],
        ["secretary", "receptionist", "assistant"],
        ["admin officer", "administrative", "office admin"],
    ),
    "hr": _entry(
        ["human resources", "hr", "recruitment"],
        [],
        ["talent", "payroll", "employee relations"],
        ["hr officer", "human resources", "hr manager"],
    ),
    "customer service": _entry(
        ["customer service", "support", "client"],
        ["technical support only"],
        ["call center", "help desk", "customer care"],
        ["customer service", "customer support", "client service"],
    ),
    "logistics": _entry(
        ["logistics", "supply chain", "warehouse"],
        [],
        ["procurement", "inventory", "distribution"],
        ["logistics officer", "logistics manager", "supply chain"],
    ),
    "driver": _entry(
        ["driver", "driving"],
        [],
        ["transport", "delivery", "logistics"],
        ["driver", "company driver", "delivery driver"],
    ),
}


class RelevanceDictionary:
    def __init__(
        self,
        entries: dict[str, RelevanceEntry] | None = None,
        matcher: SeedMatcher | None = None,
    ) -> None:
        self._entries: dict[str, RelevanceEntry] = {}
        self._matcher: SeedMatcher = matcher or SeedTrie()
        self.update(DEFAULT_ENTRIES if entries is None else entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, seed: str) -> bool:
        return seed.lower() in self._entries

    def add(self, seed: str, entry: RelevanceEntry) -> None:
        seed = seed.strip().lower()
        if not seed:
            raise ValueError("seed term must not be empty")
        self._entries[seed] = entry
        self._matcher.add(seed)

    def update(self, entries: dict[str, RelevanceEntry]) -> None:
        for seed, entry in entries.items():
            self.add(seed, entry)

    def seeds(self) -> Iterable[str]:
        return iter(self._entries)

    def lookup(self, query: str) -> StructuredFilter | None:
        """Structured filter for the longest seed contained in *query*, if any."""
        seed = self._matcher.longest_match(query.strip().lower())
        if seed is None:
            return None
        return self._entries[seed].to_filter(seed)

    def load_yaml(self, path: Path) -> int:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path.name}: expected a mapping of seed term -> entry")
        for seed, raw in data.items():
            self.add(str(seed), RelevanceEntry.from_mapping(raw or {}))
        log.info("Loaded %d relevance entries from %s", len(data), path.name)
        return len(data)


def build_dictionary(extra_path: str | Path | None = None) -> RelevanceDictionary:
    dictionary = RelevanceDictionary()
    if extra_path:
        path = Path(extra_path)
        if path.exists():
            dictionary.load_yaml(path)
        else:
            log.warning("Relevance dictionary file %s not found, using built-in entries", path)
    return dictionary

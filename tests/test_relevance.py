from __future__ import annotations

import pytest

from autoapply.relevance import RULE_CONFIDENCE, RelevanceDictionary, RelevanceEntry, SeedTrie, build_dictionary


def test_longest_seed_wins():
    found = RelevanceDictionary().lookup("Senior React Developer in Lagos")
    assert found is not None
    assert found.matched_term == "react developer"
    assert found.source == "rule"
    assert found.confidence == RULE_CONFIDENCE
    assert "java developer" in found.must_exclude


def test_java_query_excludes_javascript():
    found = RelevanceDictionary().lookup("java")
    assert found.matched_term == "java"
    assert "javascript" in found.must_exclude
    assert "java" in found.must_include


def test_equal_length_prefers_earlier_entry():
    d = RelevanceDictionary(entries={
        "alpha": RelevanceEntry(includes=("first",)),
        "omega": RelevanceEntry(includes=("second",)),
    })
    assert d.lookup("omega alpha").matched_term == "alpha"


def test_no_seed_returns_none():
    assert RelevanceDictionary().lookup("underwater basket weaving") is None


def test_lookup_is_deterministic():
    d = RelevanceDictionary()
    assert d.lookup("python developer") == d.lookup("  PYTHON developer ")


def test_trie_finds_seed_inside_words():
    trie = SeedTrie()
    trie.add("hr")
    trie.add("nurse")
    assert trie.longest_match("chrome nurse") == "nurse"
    assert trie.longest_match("chrome") == "hr"
    assert trie.longest_match("plumber") is None


def test_empty_seed_rejected():
    with pytest.raises(ValueError):
        RelevanceDictionary(entries={}).add("  ", RelevanceEntry(includes=("x",)))


def test_yaml_entries_extend_defaults(tmp_path):
    path = tmp_path / "relevance.yaml"
    path.write_text(
        '"quantity surveyor":\n'
        "  includes: [quantity surveyor, construction]\n"
        "  excludes: [land surveyor]\n"
        "  boost_terms: [quantity surveyor]\n",
        encoding="utf-8",
    )
    d = build_dictionary(path)
    found = d.lookup("quantity surveyor abuja")
    assert found.must_include == ("quantity surveyor", "construction")
    assert found.must_exclude == ("land surveyor",)
    assert found.boost_terms == ("quantity surveyor",)
    assert "react" in d


def test_missing_yaml_falls_back_to_builtins(tmp_path):
    d = build_dictionary(tmp_path / "nope.yaml")
    assert len(d) == len(RelevanceDictionary())

"""Tests for query term extraction and the shared relevance ranker."""

from datetime import datetime, timedelta, timezone

import pytest

from indexer.models import Document, DocumentType
from indexer.ranking import (
    SearchStage,
    extract_key_terms,
    extract_phrases,
    fuzzy_words,
    prefix_of,
    rank,
    score_document,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
OLD = NOW - timedelta(days=60)


def doc(content="", title="Untitled", url="https://example.org/page", doc_type=DocumentType.GENERAL,
        timestamp=OLD, doc_id=None):
    return Document(id=doc_id, url=url, title=title, content=content, type=doc_type, timestamp=timestamp)


class TestQueryTerms:

    def test_key_terms_drop_stop_words_and_sort_by_length(self):
        terms = extract_key_terms("Where can I find the best Bautzen summer events?")
        assert terms == ["bautzen", "summer", "events", "best"]

    def test_key_terms_are_distinct_and_capped(self):
        query = "alpha bravo charlie delta echoes foxtrot golfer hotels indigo juliet alpha"
        terms = extract_key_terms(query)
        assert len(terms) == 8
        assert len(set(terms)) == 8

    def test_key_terms_ignore_short_words(self):
        assert extract_key_terms("a an is ok") == []

    def test_phrases(self):
        assert extract_phrases("Visit Bautzen in summer") == [
            "Visit Bautzen", "Visit Bautzen in", "Visit Bautzen in summer",
        ]

    def test_single_word_has_no_phrases(self):
        assert extract_phrases("Bautzen") == []

    def test_fuzzy_words(self):
        assert fuzzy_words("An Old Town in Bautzen on the Spree river bank") == [
            "old", "town", "bautzen", "the", "spree",
        ]

    @pytest.mark.parametrize("word,prefix", [
        ("summers", "summer"),
        ("abcd", "abc"),
        ("abc", "abc"),
    ])
    def test_prefix(self, word, prefix):
        assert prefix_of(word) == prefix


class TestScoring:

    def test_stage_base_scores(self):
        candidate = doc(content="nothing relevant")
        scores = {stage: score_document(candidate, "zzz", stage, now=NOW)
                  for stage in (SearchStage.EXACT, SearchStage.SEMANTIC, SearchStage.TITLE, SearchStage.FUZZY)}
        assert scores == {
            SearchStage.EXACT: 100,
            SearchStage.SEMANTIC: 80,
            SearchStage.TITLE: 70,
            SearchStage.FUZZY: 50,
        }

    @pytest.mark.parametrize("lower,higher", [(0, 1), (1, 2), (2, 5), (5, 6), (6, 20)])
    def test_more_occurrences_never_lower_the_score(self, lower, higher):
        a = score_document(doc(content="bautzen " * lower), "bautzen", SearchStage.SEMANTIC, now=NOW)
        b = score_document(doc(content="bautzen " * higher), "bautzen", SearchStage.SEMANTIC, now=NOW)
        assert b >= a

    def test_content_occurrences_are_capped(self):
        five = score_document(doc(content="bautzen " * 5), "bautzen", SearchStage.SEMANTIC, now=NOW)
        fifty = score_document(doc(content="bautzen " * 50), "bautzen", SearchStage.SEMANTIC, now=NOW)
        assert five == fifty == 80 + 25

    def test_title_terms_and_full_query_bonus(self):
        partial = score_document(doc(title="Bautzen towers"), "bautzen summer", SearchStage.TITLE, now=NOW)
        full = score_document(doc(title="Bautzen summer guide"), "bautzen summer", SearchStage.TITLE, now=NOW)
        assert partial == 70 + 30
        assert full == 70 + 2 * (30 + 20)

    def test_recency_bonus(self):
        fresh = score_document(doc(timestamp=NOW), "zzz", SearchStage.FUZZY, now=NOW)
        week = score_document(doc(timestamp=NOW - timedelta(days=7)), "zzz", SearchStage.FUZZY, now=NOW)
        assert fresh == pytest.approx(50 + 20)
        assert week == pytest.approx(50 + 13)

    def test_type_and_url_bonuses(self):
        news = score_document(doc(doc_type=DocumentType.NEWS), "zzz", SearchStage.FUZZY, now=NOW)
        private = score_document(doc(doc_type=DocumentType.PRIVATE), "zzz", SearchStage.FUZZY, now=NOW)
        in_url = score_document(doc(url="https://example.org/bautzen"), "bautzen", SearchStage.FUZZY, now=NOW)
        assert news == 55
        assert private == 53
        assert in_url == 60


class TestRank:

    def test_orders_by_score_and_truncates(self):
        candidates = [doc(content="bautzen " * n, url=f"https://example.org/{n}", doc_id=n) for n in range(15)]
        ranked = rank(candidates, "bautzen", SearchStage.SEMANTIC, now=NOW)

        assert len(ranked) == 10
        assert ranked[0].id in {5, 6, 7, 8, 9, 10, 11, 12, 13, 14}
        assert 0 not in [d.id for d in ranked]

    def test_title_match_beats_content_match(self):
        in_title = doc(title="Bautzen", content="", doc_id=1)
        in_content = doc(title="Other", content="bautzen", doc_id=2)
        ranked = rank([in_content, in_title], "bautzen", SearchStage.SEMANTIC, now=NOW)
        assert [d.id for d in ranked] == [1, 2]

    def test_returns_documents_without_score(self):
        ranked = rank([doc(content="bautzen")], "bautzen", SearchStage.SEMANTIC, now=NOW)
        assert isinstance(ranked[0], Document)
        assert "score" not in ranked[0].public_dict()

    def test_empty_candidates(self):
        assert rank([], "bautzen", SearchStage.SEMANTIC) == []

"""Tests for hybrid keyword + vector catalog suggestions."""

import pytest

from app.core.classification import (
    HybridSuggestionEngine,
    clamp01,
    keyword_candidates,
    keyword_score,
    locale_key,
    merge_scores,
    to_catalog_entry,
)
from app.core.embedding_generator import EmbeddingGenerator
from app.core.exceptions import ProviderThrottled
from app.core.schemas_classification import ComponentScores, SuggestionResult
from app.core.schemas_embeddings import EntityKind
from tests.fakes.fake_provider import FakeProvider

QUERY = "Preciso de ajuda com estorno do cliente"


@pytest.fixture
def catalog(fake_db):
    fake_db.add_catalog(
        1, "Financeiro", "Solicitação de estorno", positive_terms=["estorno", "reembolso"], embedding=[1.0, 0.0, 0.0]
    )
    fake_db.add_catalog(2, "Financeiro", "Cobrança indevida", positive_terms=["cobrança"], embedding=[0.0, 1.0, 0.0])
    fake_db.add_catalog(
        3, "Suporte", "Ajuda geral", positive_terms=["ajuda"], negative_terms=["estorno"], embedding=[1.0, 0.0, 0.0]
    )
    fake_db.add_catalog(4, "Legado", "Inativo", positive_terms=["estorno"], active=False)
    return fake_db


def _engine(provider=None, enabled=True, **kwargs) -> HybridSuggestionEngine:
    provider = provider or FakeProvider(vectors={QUERY: [1.0, 0.0, 0.0]})
    return HybridSuggestionEngine(EmbeddingGenerator(provider, enabled=enabled), **kwargs)


def _result(catalog_id, macro, item, score) -> SuggestionResult:
    return SuggestionResult(
        catalog_id=catalog_id,
        macro=macro,
        item=item,
        score=score,
        component_scores=ComponentScores(keyword=score),
    )


class TestKeywordPass:
    def test_keyword_only_suggestion(self, catalog):
        entries = [to_catalog_entry(row) for row in catalog.list_active_catalog()]

        results = keyword_candidates(QUERY, entries, limit=5)

        assert len(results) == 1
        assert (results[0].macro, results[0].item) == ("Financeiro", "Solicitação de estorno")
        assert results[0].score == 20

    def test_negative_term_vetoes(self, catalog):
        entry = to_catalog_entry(catalog.tables[EntityKind.CATALOG][3])

        assert keyword_score("preciso de ajuda com estorno", entry) is None
        assert keyword_score("preciso de ajuda", entry) == 20

    def test_more_matches_score_higher(self, catalog):
        entry = to_catalog_entry(catalog.tables[EntityKind.CATALOG][1])

        one = keyword_score("quero estorno", entry)
        two = keyword_score("quero estorno e reembolso", entry)

        assert two > one

    def test_score_is_capped(self):
        entry = to_catalog_entry(
            {"id": 1, "macro": "M", "item": "I", "positive_terms": ["a", "b", "c", "d", "e", "f"]}
        )

        assert keyword_score("a b c d e f", entry, points_per_match=30) == 100

    def test_accents_are_ignored(self, catalog):
        entry = to_catalog_entry(catalog.tables[EntityKind.CATALOG][2])

        assert keyword_score("cobranca errada", entry) == 20

    def test_ties_sort_by_macro_then_item(self):
        entries = [
            to_catalog_entry({"id": 1, "macro": "Bravo", "item": "Z", "positive_terms": ["pedido"]}),
            to_catalog_entry({"id": 2, "macro": "Ágil", "item": "B", "positive_terms": ["pedido"]}),
            to_catalog_entry({"id": 3, "macro": "Ágil", "item": "a", "positive_terms": ["pedido"]}),
        ]

        results = keyword_candidates("meu pedido", entries, limit=5)

        assert [r.catalog_id for r in results] == [3, 2, 1]


class TestMergeScores:
    def test_weighted_merge(self):
        keyword = [_result(1, "Financeiro", "Estorno", 20)]
        vector = [{"id": 1, "macro": "Financeiro", "item": "Estorno", "similarity": 0.8}]

        merged = merge_scores(keyword, vector, weight=0.5)

        assert merged[0].score == 50.0
        assert merged[0].component_scores.vector == 80.0
        assert merged[0].component_scores.keyword == 20

    def test_rounds_to_two_decimals(self):
        merged = merge_scores([], [{"id": 1, "macro": "M", "item": "I", "similarity": 0.123456}], weight=1)

        assert merged[0].score == 12.35

    def test_zero_scores_are_dropped(self):
        merged = merge_scores([], [{"id": 1, "macro": "M", "item": "I", "similarity": 0}], weight=0.5)

        assert merged == []

    def test_vector_only_entries_are_merged(self):
        keyword = [_result(1, "Financeiro", "Estorno", 20)]
        vector = [{"id": 3, "macro": "Suporte", "item": "Ajuda geral", "similarity": 0.9}]

        merged = merge_scores(keyword, vector, weight=0.5)

        assert [(r.catalog_id, r.score) for r in merged] == [(3, 45.0), (1, 10.0)]
        assert merged[0].component_scores.keyword == 0

    def test_raising_weight_promotes_vector_strong_entries(self):
        keyword = [_result(1, "A", "Keyword forte", 100), _result(2, "B", "Vetor forte", 20)]
        vector = [
            {"id": 1, "macro": "A", "item": "Keyword forte", "similarity": 0.2},
            {"id": 2, "macro": "B", "item": "Vetor forte", "similarity": 0.9},
        ]

        low = merge_scores(keyword, vector, weight=0.1)
        high = merge_scores(keyword, vector, weight=0.9)

        assert [r.catalog_id for r in low] == [1, 2]
        assert [r.catalog_id for r in high] == [2, 1]

    def test_vector_only_weight_ignores_keywords(self):
        keyword = [_result(1, "A", "A", 100)]
        vector = [{"id": 2, "macro": "B", "item": "B", "similarity": 0.5}]

        merged = merge_scores(keyword, vector, weight=1)

        assert [(r.catalog_id, r.score) for r in merged] == [(2, 50.0)]


class TestHybridSuggestionEngine:
    @pytest.mark.asyncio
    async def test_keyword_only_when_vector_disabled(self, catalog):
        results = await _engine().suggest(QUERY, use_vector=False)

        assert [(r.macro, r.item) for r in results] == [("Financeiro", "Solicitação de estorno")]
        assert results[0].score == 20

    @pytest.mark.asyncio
    async def test_hybrid_ranking(self, catalog):
        results = await _engine().suggest(QUERY)

        assert [(r.catalog_id, r.score) for r in results] == [(1, 60.0), (3, 50.0)]
        assert results[0].component_scores.vector == 100.0
        assert results[1].component_scores.keyword == 0

    @pytest.mark.asyncio
    async def test_vetoed_entry_keeps_vector_score(self, fake_db):
        text = "nao quero estorno, preciso de ajuda"
        fake_db.add_catalog(
            1, "Suporte", "Ajuda geral", positive_terms=["ajuda"], negative_terms=["estorno"], embedding=[1.0, 0.0, 0.0]
        )
        engine = _engine(FakeProvider(vectors={text: [1.0, 0.0, 0.0]}))

        keyword_only = await engine.suggest(text, use_vector=False)
        hybrid = await engine.suggest(text)

        assert keyword_only == []
        assert [(r.catalog_id, r.score) for r in hybrid] == [(1, 50.0)]

    @pytest.mark.asyncio
    async def test_weight_override(self, catalog):
        results = await _engine().suggest(QUERY, vector_weight=1.0)

        assert results[0].score == 100.0

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_keywords(self, catalog):
        provider = FakeProvider(embed_error=ProviderThrottled("busy", status_code=503))

        results = await _engine(provider).suggest(QUERY)

        assert [(r.catalog_id, r.score) for r in results] == [(1, 20)]

    @pytest.mark.asyncio
    async def test_feature_disabled_falls_back_to_keywords(self, catalog):
        provider = FakeProvider()

        results = await _engine(provider, enabled=False).suggest(QUERY)

        assert [(r.catalog_id, r.score) for r in results] == [(1, 20)]
        assert provider.embed_calls == []

    @pytest.mark.asyncio
    async def test_inactive_vector_hits_are_dropped(self, catalog, monkeypatch):
        from app.db import catalog as catalog_db

        monkeypatch.setattr(
            catalog_db,
            "match_catalog_entries",
            lambda embedding, count: [{"id": 4, "macro": "Legado", "item": "Inativo", "similarity": 0.99}],
        )

        results = await _engine().suggest(QUERY)

        assert [(r.catalog_id, r.score) for r in results] == [(1, 20)]

    @pytest.mark.asyncio
    async def test_limit_and_empty_text(self, catalog):
        engine = _engine(default_limit=1)

        assert await engine.suggest("   ") == []
        assert len(await engine.suggest("estorno de cobrança", use_vector=False)) == 1
        assert len(await engine.suggest("estorno de cobrança", limit=5, use_vector=False)) == 2


def test_clamp01():
    assert clamp01("0.3") == 0.3
    assert clamp01(2) == 1.0
    assert clamp01(-1) == 0.0
    assert clamp01(float("nan")) == 0.0
    assert clamp01(None) == 0.0


def test_locale_key_folds_accents_and_case():
    assert sorted(["bravo", "Ágil", "alfa"], key=locale_key) == ["Ágil", "alfa", "bravo"]

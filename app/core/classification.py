"""Hybrid keyword + vector classification suggestions.

Ranks active catalog entries (macro/item) for a free-text input. The keyword
pass is always available; the vector pass is a soft dependency and any
failure there falls back to keyword-only ranking.
"""

import asyncio
import unicodedata
from typing import Any

from app.core.config import Settings
from app.core.embedding_generator import EmbeddingGenerator
from app.core.logging import get_logger
from app.core.schemas_classification import CatalogEntry, ComponentScores, SuggestionResult
from app.core.text_extraction import extract_term_list, normalize_text
from app.db import catalog as catalog_db

logger = get_logger(__name__)

# Keyword candidates kept per requested suggestion
KEYWORD_MULTIPLIER = 2
MAX_KEYWORD_SCORE = 100


def clamp01(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(1.0, number))


def locale_key(value: str | None) -> tuple[str, str]:
    """Accent- and case-insensitive sort key with a stable tiebreak on the raw value."""
    raw = value or ""
    decomposed = unicodedata.normalize("NFD", raw)
    folded = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn").casefold()
    return folded, raw


def _ranking_key(result: SuggestionResult) -> tuple:
    return (-result.score, locale_key(result.macro), locale_key(result.item))


def to_catalog_entry(row: dict[str, Any]) -> CatalogEntry:
    return CatalogEntry(
        id=row["id"],
        macro=row.get("macro") or "",
        item=row.get("item") or "",
        description=row.get("description"),
        positive_terms=extract_term_list(row.get("positive_terms")),
        negative_terms=extract_term_list(row.get("negative_terms")),
        active=bool(row.get("active", True)),
    )


def keyword_score(normalized_text: str, entry: CatalogEntry, points_per_match: int = 20) -> float | None:
    """
    Score an entry against already-normalized text.

    Returns:
        None when a negative term vetoes the entry, else 0-100
    """
    if any(term and term in normalized_text for term in entry.negative_terms):
        return None
    matches = sum(1 for term in entry.positive_terms if term and term in normalized_text)
    return float(min(matches * points_per_match, MAX_KEYWORD_SCORE))


def keyword_candidates(
    text: str,
    entries: list[CatalogEntry],
    limit: int,
    points_per_match: int = 20,
) -> list[SuggestionResult]:
    """Keyword-only ranking; zero-score and vetoed entries are dropped."""
    normalized = normalize_text(text)
    results = []
    for entry in entries:
        score = keyword_score(normalized, entry, points_per_match)
        if not score:
            continue
        results.append(
            SuggestionResult(
                catalog_id=entry.id,
                macro=entry.macro,
                item=entry.item,
                score=score,
                component_scores=ComponentScores(keyword=score, vector=0),
            )
        )
    results.sort(key=_ranking_key)
    return results[:limit]


def merge_scores(
    keyword_results: list[SuggestionResult],
    vector_rows: list[dict[str, Any]],
    weight: float,
) -> list[SuggestionResult]:
    """
    Combine both passes by catalog id.

    merged = (weight * vector + (1 - weight) * keyword / 100) * 100, rounded
    to 2 decimals; entries scoring zero are dropped. Negative terms only veto
    the keyword pass, so a vetoed entry can still rank on its vector score.
    """
    weight = clamp01(weight)
    combined: dict[int, dict[str, Any]] = {}

    for result in keyword_results:
        combined[result.catalog_id] = {
            "macro": result.macro,
            "item": result.item,
            "keyword": result.component_scores.keyword,
            "vector": 0.0,
        }

    for row in vector_rows:
        catalog_id = row.get("id")
        if catalog_id is None:
            continue
        similarity = clamp01(row.get("similarity"))
        entry = combined.setdefault(
            catalog_id,
            {"macro": row.get("macro") or "", "item": row.get("item") or "", "keyword": 0.0, "vector": 0.0},
        )
        entry["vector"] = max(entry["vector"], similarity)

    merged = []
    for catalog_id, entry in combined.items():
        score = round((weight * entry["vector"] + (1 - weight) * entry["keyword"] / 100) * 100, 2)
        if score <= 0:
            continue
        merged.append(
            SuggestionResult(
                catalog_id=catalog_id,
                macro=entry["macro"],
                item=entry["item"],
                score=min(score, 100.0),
                component_scores=ComponentScores(
                    keyword=entry["keyword"],
                    vector=round(entry["vector"] * 100, 2),
                ),
            )
        )

    merged.sort(key=_ranking_key)
    return merged


class HybridSuggestionEngine:
    """Suggests catalog entries for free text."""

    def __init__(
        self,
        generator: EmbeddingGenerator,
        vector_weight: float = 0.5,
        points_per_match: int = 20,
        default_limit: int = 5,
    ):
        self.generator = generator
        self.vector_weight = clamp01(vector_weight)
        self.points_per_match = points_per_match
        self.default_limit = default_limit

    @classmethod
    def from_settings(cls, generator: EmbeddingGenerator, settings: Settings) -> "HybridSuggestionEngine":
        return cls(
            generator=generator,
            vector_weight=settings.CLASSIFICATION_VECTOR_WEIGHT,
            points_per_match=settings.CLASSIFICATION_KEYWORD_POINTS_PER_MATCH,
            default_limit=settings.CLASSIFICATION_DEFAULT_LIMIT,
        )

    async def _load_catalog(self) -> list[CatalogEntry]:
        rows = await asyncio.to_thread(catalog_db.list_active_catalog)
        return [to_catalog_entry(row) for row in rows]

    async def _vector_rows(self, text: str, match_count: int) -> list[dict[str, Any]]:
        """Vector pass; returns [] on any failure."""
        if not self.generator.enabled:
            return []
        try:
            embedding = await self.generator.embed_text(text)
            return await asyncio.to_thread(catalog_db.match_catalog_entries, embedding, match_count)
        except Exception as e:
            logger.warning(f"Vector pass unavailable, using keyword ranking only: {e}")
            return []

    async def suggest(
        self,
        text: str,
        limit: int | None = None,
        use_vector: bool = True,
        vector_weight: float | None = None,
    ) -> list[SuggestionResult]:
        """
        Rank catalog entries for a text.

        Args:
            text: Free text (a message, a ticket description)
            limit: Maximum suggestions (default from settings)
            use_vector: Run the vector pass when the feature is available
            vector_weight: Override of the configured vector weight

        Returns:
            Suggestions ordered by score desc, then macro and item
        """
        limit = max(limit or self.default_limit, 1)
        if not text or not text.strip():
            return []

        entries = await self._load_catalog()
        keyword_results = keyword_candidates(
            text, entries, limit * KEYWORD_MULTIPLIER, self.points_per_match
        )

        if not use_vector:
            return keyword_results[:limit]

        # Vector hits must still be active catalog entries
        active_ids = {e.id for e in entries}
        vector_rows = [
            row
            for row in await self._vector_rows(text, limit * KEYWORD_MULTIPLIER)
            if row.get("id") in active_ids
        ]
        if not vector_rows:
            return keyword_results[:limit]

        weight = self.vector_weight if vector_weight is None else clamp01(vector_weight)
        merged = merge_scores(keyword_results, vector_rows, weight)
        if not merged:
            return keyword_results[:limit]
        return merged[:limit]

"""Pydantic schemas for classification catalog suggestions."""

from pydantic import BaseModel, Field


class CatalogEntry(BaseModel):
    """Active classification catalog entry, term lists already normalized."""

    id: int
    macro: str
    item: str
    positive_terms: list[str] = Field(default_factory=list)
    negative_terms: list[str] = Field(default_factory=list)
    description: str | None = None
    active: bool = True


class ComponentScores(BaseModel):
    """Per-pass scores, both on a 0-100 scale."""

    keyword: float = 0
    vector: float = 0


class SuggestionResult(BaseModel):
    """One ranked catalog suggestion."""

    catalog_id: int
    macro: str
    item: str
    score: float = Field(..., ge=0, le=100)
    component_scores: ComponentScores = Field(default_factory=ComponentScores)


class SuggestRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=10_000)
    limit: int | None = Field(default=None, ge=1, le=50)
    use_vector: bool = True
    vector_weight: float | None = Field(default=None, ge=0, le=1)


class SuggestResponse(BaseModel):
    suggestions: list[SuggestionResult]
    count: int

"""Pydantic schemas for conversation context windows and RAG retrieval."""

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class WindowSummary(BaseModel):
    """Structured summary returned by the chat provider: {resumo, topicos[]}."""

    resumo: str
    topicos: list[str] = Field(default_factory=list)

    @field_validator("resumo")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("summary is empty")
        return value

    @field_validator("topicos", mode="before")
    @classmethod
    def _clean_topics(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [t.strip() for t in value if isinstance(t, str) and t.strip()]


class ContextWindow(BaseModel):
    """A stored summary of a contiguous range of conversation messages."""

    id: int
    conversation_id: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    message_count: int = 0
    first_message_id: int | None = None
    last_message_id: int | None = None
    summary: str
    topics: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    distance: float | None = None

    @field_validator("topics", mode="before")
    @classmethod
    def _parse_topics(cls, value: Any) -> list[str]:
        return parse_topics(value)


class ContextPage(BaseModel):
    """A page of context windows in recency or similarity order."""

    items: list[ContextWindow]
    count: int
    limit: int
    offset: int
    has_more: bool
    duration_ms: int
    embedding_ms: int | None = None
    sort: Literal["recent", "oldest", "similar"]
    degraded: bool = False


class SummaryRunStats(BaseModel):
    """Counters for one summarizer cycle."""

    processed: int = 0
    total_messages: int = 0
    conversations_checked: int = 0
    deferred: int = 0
    discarded: int = 0
    without_embedding: int = 0


class ConversationContextSummary(BaseModel):
    conversation_id: int
    context_count: int
    last_period_end: datetime | None = None


class KnowledgeSnippet(BaseModel):
    id: int | None = None
    title: str | None = None
    content: str
    source: str | None = None
    similarity: float | None = None


class RagRetrieval(BaseModel):
    contexts: list[ContextWindow]
    knowledge_snippets: list[KnowledgeSnippet] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RagPrompt(BaseModel):
    messages: list[dict[str, str]]
    prompt: str
    context_blocks: list[str]
    knowledge_blocks: list[str]
    sanitized_question: str


class RagRequest(BaseModel):
    question: str = Field(default="", max_length=4000)
    k: int | None = Field(default=None, ge=1)
    strategy: Literal["recent", "similar"] = "recent"
    from_: datetime | None = Field(default=None, alias="from")
    to: datetime | None = None

    model_config = {"populate_by_name": True}


def parse_topics(value: Any) -> list[str]:
    """Normalize topics stored as an array, JSON string, delimited string or object."""
    if not value:
        return []
    if isinstance(value, list):
        return [t.strip() for t in value if isinstance(t, str) and t.strip()]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return [t.strip() for t in value.replace(";", ",").split(",") if t.strip()]
        return parse_topics(parsed) if isinstance(parsed, (list, dict)) else []
    if isinstance(value, dict):
        flat: list[Any] = []
        for v in value.values():
            flat.extend(v if isinstance(v, list) else [v])
        return parse_topics(flat)
    return []

"""Recency and similarity retrieval over conversation context windows."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

from app.core.embedding_generator import EmbeddingGenerator
from app.core.exceptions import (
    ConfigurationError,
    DimensionMismatchError,
    InvalidQueryError,
    ProviderError,
)
from app.core.logging import get_logger, log_with_context
from app.core.schemas_context import ContextPage, ContextWindow, ConversationContextSummary
from app.db import conversation_contexts as contexts_db

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def clamp_limit(limit: Any) -> int:
    try:
        numeric = int(limit)
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE
    if numeric <= 0:
        return DEFAULT_PAGE_SIZE
    return min(numeric, MAX_PAGE_SIZE)


def clamp_offset(offset: Any) -> int:
    try:
        numeric = int(offset)
    except (TypeError, ValueError):
        return 0
    return max(numeric, 0)


def parse_timestamp(value: Any, field_name: str) -> datetime | None:
    """
    Parse an optional ISO timestamp filter.

    Raises:
        InvalidQueryError: If the value is not a valid timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    raise InvalidQueryError("invalid_date", f"Invalid {field_name} parameter")


def _validate_conversation_id(conversation_id: Any) -> int:
    try:
        numeric = int(conversation_id)
    except (TypeError, ValueError):
        numeric = 0
    if numeric <= 0:
        raise InvalidQueryError("invalid_conversation_id", "conversation_id is required")
    return numeric


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ContextRetrievalService:
    """Reads context windows by recency or by similarity to a query.

    Owns the cache of the stored embedding width, detected on the first
    similarity search that finds stored vectors.
    """

    def __init__(self, generator: EmbeddingGenerator):
        self.generator = generator
        self._embedding_dimension: int | None = None

    @property
    def embedding_dimension(self) -> int | None:
        return self._embedding_dimension

    def reset_dimension_cache(self) -> None:
        self._embedding_dimension = None

    async def _stored_dimension(self) -> int | None:
        if self._embedding_dimension is None:
            dimension = await asyncio.to_thread(contexts_db.get_embedding_dimension)
            if dimension:
                self._embedding_dimension = dimension
        return self._embedding_dimension

    async def list_windows(
        self,
        conversation_id: int,
        limit: Any = DEFAULT_PAGE_SIZE,
        offset: Any = 0,
        from_: Any = None,
        to: Any = None,
        sort: str = "recent",
    ) -> ContextPage:
        """
        Page through windows newest-first ("recent") or oldest-first ("oldest").

        Raises:
            InvalidQueryError: For a missing conversation, bad dates or sort="similar"
        """
        conversation_id = _validate_conversation_id(conversation_id)
        if sort == "similar":
            raise InvalidQueryError("invalid_sort", "Use search_similar for similarity ordering")
        sort = "oldest" if sort == "oldest" else "recent"

        limit = clamp_limit(limit)
        offset = clamp_offset(offset)
        from_ts = parse_timestamp(from_, "from")
        to_ts = parse_timestamp(to, "to")

        return await self._recency_page(conversation_id, limit, offset, from_ts, to_ts, sort)

    async def _recency_page(
        self,
        conversation_id: int,
        limit: int,
        offset: int,
        from_ts: datetime | None,
        to_ts: datetime | None,
        sort: str,
        degraded: bool = False,
    ) -> ContextPage:
        started = time.monotonic()
        rows = await asyncio.to_thread(
            contexts_db.list_context_windows, conversation_id, limit, offset, from_ts, to_ts, sort
        )
        count = await asyncio.to_thread(contexts_db.count_context_windows, conversation_id, from_ts, to_ts)
        duration_ms = _elapsed_ms(started)

        items = [ContextWindow.model_validate(row) for row in rows]
        log_with_context(
            logger,
            logging.INFO,
            "Listed context windows",
            conversation_id=conversation_id,
            sort=sort,
            limit=limit,
            offset=offset,
            returned=len(items),
            total=count,
            duration_ms=duration_ms,
            degraded=degraded,
        )
        return ContextPage(
            items=items,
            count=count,
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < count,
            duration_ms=duration_ms,
            sort=sort,
            degraded=degraded,
        )

    async def search_similar(
        self,
        conversation_id: int,
        query: str | None,
        limit: Any = DEFAULT_PAGE_SIZE,
        offset: Any = 0,
        from_: Any = None,
        to: Any = None,
    ) -> ContextPage:
        """
        Page through windows ordered by cosine distance to a query (ascending).

        Falls back to recency ordering, flagged ``degraded``, when the query
        cannot be embedded.

        Raises:
            InvalidQueryError: For a missing conversation or query, or bad dates
            DimensionMismatchError: If the query width differs from the stored width
        """
        conversation_id = _validate_conversation_id(conversation_id)
        query = query.strip() if isinstance(query, str) else ""
        if not query:
            raise InvalidQueryError("missing_query", "A query is required for similarity search")

        limit = clamp_limit(limit)
        offset = clamp_offset(offset)
        from_ts = parse_timestamp(from_, "from")
        to_ts = parse_timestamp(to, "to")

        embedding_started = time.monotonic()
        try:
            embedding = await self.generator.embed_text(query)
        except InvalidQueryError:
            raise
        except (ConfigurationError, ProviderError) as e:
            logger.warning(f"Similarity search degraded to recency for conversation {conversation_id}: {e}")
            return await self._recency_page(
                conversation_id, limit, offset, from_ts, to_ts, "recent", degraded=True
            )

        dimension = await self._stored_dimension()
        if dimension and len(embedding) != dimension:
            raise DimensionMismatchError(expected=dimension, actual=len(embedding))
        embedding_ms = _elapsed_ms(embedding_started)

        started = time.monotonic()
        rows = await asyncio.to_thread(
            contexts_db.match_context_windows, conversation_id, embedding, limit, offset, from_ts, to_ts
        )
        count = await asyncio.to_thread(contexts_db.count_context_windows, conversation_id, from_ts, to_ts)
        duration_ms = _elapsed_ms(started)

        items = [ContextWindow.model_validate(row) for row in rows]
        log_with_context(
            logger,
            logging.INFO,
            "Searched context windows by similarity",
            conversation_id=conversation_id,
            limit=limit,
            offset=offset,
            returned=len(items),
            total=count,
            duration_ms=duration_ms,
            embedding_ms=embedding_ms,
        )
        return ContextPage(
            items=items,
            count=count,
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < count,
            duration_ms=duration_ms,
            embedding_ms=embedding_ms,
            sort="similar",
        )

    async def list_conversations_with_context(self) -> list[ConversationContextSummary]:
        rows = await asyncio.to_thread(contexts_db.list_conversations_with_context)
        return [ConversationContextSummary.model_validate(row) for row in rows]

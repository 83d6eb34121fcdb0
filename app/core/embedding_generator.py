"""Embedding generation for stored entities.

Turns a message, catalog entry, knowledge snippet or context window into a
stored vector. Every call ends in one of three outcomes (ok, skipped,
error); only ``ok`` writes the embedding column, and it writes it exactly
once.
"""

import asyncio
import logging
from typing import Any

from app.core.exceptions import (
    ConfigurationError,
    EntityNotFound,
    InvalidQueryError,
    ProviderError,
    ProviderMalformedResponse,
    ProviderThrottled,
)
from app.core.logging import get_logger, log_with_context
from app.core.providers import ModelProvider
from app.core.schemas_embeddings import (
    PERSISTENT_SKIP_REASONS,
    EmbeddingResult,
    EntityKind,
    SkipReason,
)
from app.core.text_extraction import TEXT_EXTRACTORS, is_too_short
from app.db import embeddables as embeddables_db

logger = get_logger(__name__)


class EmbeddingGenerator:
    """Generates and stores embeddings through an injected provider."""

    def __init__(
        self,
        provider: ModelProvider | None,
        enabled: bool = True,
        mark_skips: bool = True,
    ):
        """
        Args:
            provider: Embedding provider, None when it could not be configured
            enabled: Feature flag (FEATURE_EMBEDDING)
            mark_skips: Persist skip markers for rows with no usable text
        """
        self.provider = provider
        self._enabled = enabled
        self.mark_skips = mark_skips

    @property
    def enabled(self) -> bool:
        return self._enabled and self.provider is not None

    def disable(self, reason: str) -> None:
        """Turn the feature off for the rest of the process lifetime."""
        if self._enabled:
            logger.error(f"Embedding generation disabled: {reason}")
        self._enabled = False

    async def embed_text(self, text: str) -> list[float]:
        """
        Embed free text (queries, summaries) without touching storage.

        Raises:
            ConfigurationError: If the feature is disabled
            InvalidQueryError: If the text is too short to embed
            ProviderError: If the provider call fails
        """
        if not self.enabled:
            raise ConfigurationError("Embedding generation is disabled")
        if is_too_short(text):
            raise InvalidQueryError(SkipReason.EMPTY_TEXT.value, "Text is too short to embed")
        return await self.provider.embed(text.strip())

    async def generate(
        self,
        kind: EntityKind,
        entity_id: int,
        text: str | None = None,
    ) -> EmbeddingResult:
        """
        Generate and store the embedding of one entity.

        Args:
            kind: Entity kind
            entity_id: Row id
            text: Text supplied by the producer; extracted from the row when absent

        Returns:
            EmbeddingResult (ok, skipped or error)
        """
        if not self.enabled:
            return EmbeddingResult.skipped(SkipReason.FEATURE_DISABLED.value)

        try:
            row = await asyncio.to_thread(embeddables_db.fetch_entity, kind, entity_id)
        except Exception as e:
            return EmbeddingResult.failed(f"Failed to load {kind.value} {entity_id}: {e}")

        if row is None:
            logger.warning(str(EntityNotFound(kind.value, entity_id)), extra={"kind": kind.value})
            return EmbeddingResult.skipped(SkipReason.ENTITY_NOT_FOUND.value)

        return await self.generate_for_row(kind, row, text=text)

    async def generate_for_row(
        self,
        kind: EntityKind,
        row: dict[str, Any],
        text: str | None = None,
    ) -> EmbeddingResult:
        """Generate and store the embedding of a row the caller already loaded."""
        if not self.enabled:
            return EmbeddingResult.skipped(SkipReason.FEATURE_DISABLED.value)

        entity_id = row["id"]

        if row.get("embedding") is not None:
            return EmbeddingResult.skipped(SkipReason.ALREADY_EMBEDDED.value)

        marker = row.get("embedding_skip")
        if isinstance(marker, dict) and marker.get("skipped"):
            return EmbeddingResult.skipped(marker.get("reason") or SkipReason.NO_CONTENT.value)

        content = text.strip() if isinstance(text, str) and text.strip() else None
        if content is None:
            content = TEXT_EXTRACTORS[EntityKind(kind).value](row)

        if content is None:
            return await self._skip(kind, entity_id, SkipReason.NO_CONTENT)
        if is_too_short(content):
            return await self._skip(kind, entity_id, SkipReason.EMPTY_TEXT)

        try:
            vector = await self.provider.embed(content)
        except ProviderMalformedResponse:
            logger.warning(f"Empty embedding received for {kind.value} {entity_id}")
            return await self._skip(kind, entity_id, SkipReason.EMPTY_VECTOR)
        except ProviderError as e:
            log_with_context(
                logger,
                logging.ERROR,
                f"Embedding failed for {kind.value} {entity_id}: {e}",
                kind=kind.value,
                provider=e.provider or self.provider.name,
                status_code=e.status_code,
            )
            return EmbeddingResult.failed(
                str(e),
                status_code=e.status_code,
                retryable=e.retryable,
                throttled=isinstance(e, ProviderThrottled),
                provider=e.provider or self.provider.name,
            )

        try:
            await asyncio.to_thread(embeddables_db.update_embedding, kind, entity_id, vector)
        except Exception as e:
            return EmbeddingResult.failed(f"Failed to store embedding: {e}")

        log_with_context(
            logger,
            logging.DEBUG,
            f"Embedded {kind.value} {entity_id}",
            kind=kind.value,
            provider=self.provider.name,
            dimension=len(vector),
        )
        return EmbeddingResult.ok(dimension=len(vector), provider=self.provider.name)

    async def _skip(self, kind: EntityKind, entity_id: int, reason: SkipReason) -> EmbeddingResult:
        if self.mark_skips and reason.value in PERSISTENT_SKIP_REASONS:
            try:
                await asyncio.to_thread(embeddables_db.mark_skipped, kind, entity_id, reason.value)
            except Exception as e:
                logger.warning(f"Could not persist skip marker for {kind.value} {entity_id}: {e}")
        return EmbeddingResult.skipped(reason.value)

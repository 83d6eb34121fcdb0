"""Embedding column storage for every embeddable table.

Each embeddable table has a nullable ``embedding`` vector column and a
nullable ``embedding_skip`` JSON marker. Writes are single-row,
single-column updates; nothing here opens a multi-row transaction.
"""

from dataclasses import dataclass
from typing import Any

from app.core.logging import get_logger
from app.core.schemas_embeddings import EntityKind, SkipMarker
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmbeddableTable:
    table: str
    columns: str
    # PostgREST or_ filter for "has text worth enqueueing"
    text_filter: str | None = None
    active_only: bool = False


ENTITY_TABLES: dict[EntityKind, EmbeddableTable] = {
    EntityKind.MESSAGE: EmbeddableTable(
        table="messages",
        columns="id, conversation_id, message_type, text, caption, media_mime_type, metadata, embedding, embedding_skip",
        text_filter="text.not.is.null,caption.not.is.null",
    ),
    EntityKind.KNOWLEDGE: EmbeddableTable(
        table="knowledge_base",
        columns="id, title, content, source, embedding, embedding_skip",
        text_filter="content.not.is.null",
    ),
    EntityKind.CATALOG: EmbeddableTable(
        table="classification_catalog",
        columns="id, macro, item, description, positive_terms, negative_terms, active, embedding, embedding_skip",
        active_only=True,
    ),
    EntityKind.CONTEXT: EmbeddableTable(
        table="conversation_contexts",
        columns="id, conversation_id, summary, topics, embedding, embedding_skip",
    ),
}


def _table(kind: EntityKind) -> EmbeddableTable:
    return ENTITY_TABLES[EntityKind(kind)]


def fetch_entity(kind: EntityKind, entity_id: int) -> dict[str, Any] | None:
    """
    Get one embeddable row by id.

    Args:
        kind: Entity kind
        entity_id: Row id

    Returns:
        Row dict or None if not found

    Raises:
        Exception: If database operation fails
    """
    target = _table(kind)
    supabase = get_supabase()

    try:
        response = supabase.table(target.table).select(target.columns).eq("id", entity_id).limit(1).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to fetch {kind} {entity_id}: {e}")
        raise


def update_embedding(kind: EntityKind, entity_id: int, embedding: list[float]) -> None:
    """Write the embedding column of a single row."""
    target = _table(kind)
    supabase = get_supabase()

    try:
        supabase.table(target.table).update({"embedding": embedding}).eq("id", entity_id).execute()
        logger.debug(f"Stored embedding for {kind} {entity_id}", extra={"kind": str(kind)})

    except Exception as e:
        logger.error(f"Failed to store embedding for {kind} {entity_id}: {e}")
        raise


def mark_skipped(kind: EntityKind, entity_id: int, reason: str) -> None:
    """Persist a skip marker so the row is never enqueued again."""
    target = _table(kind)
    supabase = get_supabase()
    marker = SkipMarker(reason=reason)

    try:
        supabase.table(target.table).update({"embedding_skip": marker.to_column()}).eq("id", entity_id).execute()
        logger.debug(f"Marked {kind} {entity_id} as skipped ({reason})")

    except Exception as e:
        logger.error(f"Failed to mark {kind} {entity_id} as skipped: {e}")
        raise


def list_missing_embeddings(
    kind: EntityKind,
    after_id: int = 0,
    limit: int = 50,
    require_text: bool = False,
) -> list[dict[str, Any]]:
    """
    List rows with no embedding and no skip marker, in ascending id order.

    Args:
        kind: Entity kind
        after_id: Keyset cursor, only ids strictly greater are returned
        limit: Page size
        require_text: Only rows whose text-bearing columns are non-null

    Returns:
        List of row dicts
    """
    target = _table(kind)
    supabase = get_supabase()

    try:
        query = (
            supabase.table(target.table)
            .select(target.columns)
            .is_("embedding", "null")
            .is_("embedding_skip", "null")
            .gt("id", after_id)
        )
        if require_text and target.text_filter:
            query = query.or_(target.text_filter)
        if target.active_only:
            query = query.eq("active", True)

        response = query.order("id").limit(limit).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list {kind} rows missing embeddings: {e}")
        raise


def count_missing_embeddings(kind: EntityKind) -> int:
    """Count rows still waiting for an embedding (excluding skipped rows)."""
    target = _table(kind)
    response = (
        get_supabase()
        .table(target.table)
        .select("id", count="exact")
        .is_("embedding", "null")
        .is_("embedding_skip", "null")
        .limit(1)
        .execute()
    )
    return response.count or 0

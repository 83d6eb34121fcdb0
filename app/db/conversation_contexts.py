"""Conversation context window storage and queries."""

from datetime import datetime
from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

WINDOW_COLUMNS = (
    "id, conversation_id, period_start, period_end, message_count, first_message_id, "
    "last_message_id, summary, topics, created_at"
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def list_pending_conversations(limit: int) -> list[dict[str, Any]]:
    """
    List conversations with messages newer than their last context window.

    The watermark is the last window's ``last_message_id`` (0 when the
    conversation has no window yet), never a timestamp.

    Returns:
        Rows with conversation_id, last_message_id, last_period_end
    """
    supabase = get_supabase()

    try:
        response = supabase.rpc("pending_context_conversations", {"p_limit": limit}).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list pending conversations: {e}")
        raise


def fetch_message_window(
    conversation_id: int,
    after_message_id: int,
    window_size: int,
) -> list[dict[str, Any]]:
    """Messages strictly after the watermark, ascending by id."""
    supabase = get_supabase()

    try:
        response = (
            supabase.table("messages")
            .select("id, text, caption, message_type, timestamp, is_from_me")
            .eq("conversation_id", conversation_id)
            .gt("id", after_message_id)
            .order("id")
            .limit(window_size)
            .execute()
        )
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to fetch message window for conversation {conversation_id}: {e}")
        raise


def count_messages_after(conversation_id: int, message_id: int) -> int:
    """Count messages in a conversation with id greater than message_id."""
    response = (
        get_supabase()
        .table("messages")
        .select("id", count="exact")
        .eq("conversation_id", conversation_id)
        .gt("id", message_id)
        .limit(1)
        .execute()
    )
    return response.count or 0


def insert_context_window(row: dict[str, Any]) -> dict[str, Any]:
    """
    Insert a complete context window in a single statement.

    Raises:
        ValueError: If no data is returned
    """
    supabase = get_supabase()

    try:
        response = supabase.table("conversation_contexts").insert(row).execute()
        if not response.data:
            raise ValueError("No data returned from insert_context_window")
        return response.data[0]

    except Exception as e:
        logger.error(f"Failed to insert context window for {row.get('conversation_id')}: {e}")
        raise


def _apply_period_filter(query: Any, from_: datetime | None, to: datetime | None) -> Any:
    if from_:
        query = query.gte("period_start", _iso(from_))
    if to:
        query = query.lte("period_end", _iso(to))
    return query


def list_context_windows(
    conversation_id: int,
    limit: int,
    offset: int,
    from_: datetime | None = None,
    to: datetime | None = None,
    sort: str = "recent",
) -> list[dict[str, Any]]:
    """List windows newest-first (period_end desc) or oldest-first (period_start asc)."""
    supabase = get_supabase()

    query = supabase.table("conversation_contexts").select(WINDOW_COLUMNS).eq(
        "conversation_id", conversation_id
    )
    query = _apply_period_filter(query, from_, to)

    if sort == "oldest":
        query = query.order("period_start").order("id")
    else:
        query = query.order("period_end", desc=True).order("id", desc=True)

    response = query.range(offset, offset + limit - 1).execute()
    return response.data or []


def count_context_windows(
    conversation_id: int,
    from_: datetime | None = None,
    to: datetime | None = None,
) -> int:
    query = (
        get_supabase()
        .table("conversation_contexts")
        .select("id", count="exact")
        .eq("conversation_id", conversation_id)
    )
    query = _apply_period_filter(query, from_, to)
    response = query.limit(1).execute()
    return response.count or 0


def get_embedding_dimension() -> int | None:
    """Width of stored context embeddings, or None when none are stored yet."""
    try:
        response = get_supabase().rpc("context_embedding_dimension", {}).execute()
    except Exception as e:
        logger.warning(f"Failed to detect context embedding dimension: {e}")
        return None

    data = response.data
    if isinstance(data, list):
        data = data[0] if data else None
        if isinstance(data, dict):
            data = next(iter(data.values()), None)
    return int(data) if data else None


def match_context_windows(
    conversation_id: int,
    query_embedding: list[float],
    limit: int,
    offset: int,
    from_: datetime | None = None,
    to: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Windows of one conversation ordered by cosine distance to the query.

    Returns:
        Window rows plus ``distance`` (smaller is more similar)
    """
    supabase = get_supabase()

    try:
        response = supabase.rpc(
            "match_context_windows",
            {
                "p_conversation_id": conversation_id,
                "query_embedding": query_embedding,
                "p_from": _iso(from_),
                "p_to": _iso(to),
                "p_limit": limit,
                "p_offset": offset,
            },
        ).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to match context windows for conversation {conversation_id}: {e}")
        raise


def list_conversations_with_context() -> list[dict[str, Any]]:
    """Conversations that have at least one window, with window counts."""
    response = get_supabase().rpc("conversations_with_context", {}).execute()
    return response.data or []

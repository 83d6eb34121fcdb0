"""Knowledge base snippet lookups."""

from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


def match_knowledge_snippets(query_embedding: list[float], match_count: int = 3) -> list[dict[str, Any]]:
    """
    Find knowledge base snippets closest to a query embedding.

    Returns:
        Rows with id, title, content, source, similarity
    """
    try:
        response = get_supabase().rpc(
            "match_knowledge_snippets",
            {"query_embedding": query_embedding, "match_count": match_count},
        ).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to match knowledge snippets: {e}")
        raise

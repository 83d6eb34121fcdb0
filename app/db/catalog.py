"""Classification catalog reads for the suggestion engine.

The catalog is maintained by an administrative CRUD surface elsewhere; this
module only reads it.
"""

from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)


def list_active_catalog() -> list[dict[str, Any]]:
    """
    List active catalog entries with their term lists.

    Returns:
        List of catalog row dicts

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table("classification_catalog")
            .select("id, macro, item, description, positive_terms, negative_terms, active")
            .eq("active", True)
            .is_("deleted_at", "null")
            .execute()
        )
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list classification catalog: {e}")
        raise


def match_catalog_entries(query_embedding: list[float], match_count: int) -> list[dict[str, Any]]:
    """
    Rank active catalog entries by cosine similarity to a query embedding.

    Backed by the match_catalog_entries RPC, which orders by
    ``embedding <=> query`` and returns ``1 - distance`` as similarity.

    Returns:
        Rows with id, macro, item, similarity
    """
    supabase = get_supabase()

    try:
        response = supabase.rpc(
            "match_catalog_entries",
            {"query_embedding": query_embedding, "match_count": match_count},
        ).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to match catalog entries: {e}")
        raise

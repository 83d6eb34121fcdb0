"""API endpoints for conversation context windows and RAG retrieval."""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.exceptions import DimensionMismatchError, InvalidQueryError
from app.core.logging import get_logger
from app.core.pipeline import Pipeline, get_pipeline
from app.core.rag import build_prompt
from app.core.schemas_context import ContextPage, ConversationContextSummary, RagRequest

logger = get_logger(__name__)

router = APIRouter()


def _query_error(e: InvalidQueryError) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})


def _dimension_error(e: DimensionMismatchError) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"code": "embedding_dimension_mismatch", "message": str(e)},
    )


@router.get("/contexts", response_model=list[ConversationContextSummary])
async def list_conversations_with_context(
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[ConversationContextSummary]:
    """List conversations that have at least one context window."""
    try:
        return await pipeline.retrieval.list_conversations_with_context()

    except Exception:
        logger.exception("Failed to list conversations with context")
        raise HTTPException(status_code=500, detail="Failed to list conversations")


@router.get("/{conversation_id}/contexts", response_model=ContextPage)
async def list_conversation_contexts(
    conversation_id: int,
    sort: Literal["recent", "oldest", "similar"] = Query("recent"),
    q: str | None = Query(None, description="Query text, required for sort=similar"),
    limit: int = Query(20, description="Page size (clamped to 1-100)"),
    offset: int = Query(0, description="Number of windows to skip"),
    from_: str | None = Query(None, alias="from", description="ISO timestamp, period_start >= from"),
    to: str | None = Query(None, description="ISO timestamp, period_end <= to"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> ContextPage:
    """
    Page through a conversation's context windows by recency or similarity.

    Raises:
        HTTPException 400: Invalid parameters or missing query for sort=similar
        HTTPException 500: Embedding dimension mismatch or database error
    """
    try:
        if sort == "similar":
            return await pipeline.retrieval.search_similar(
                conversation_id, q, limit=limit, offset=offset, from_=from_, to=to
            )
        return await pipeline.retrieval.list_windows(
            conversation_id, limit=limit, offset=offset, from_=from_, to=to, sort=sort
        )

    except InvalidQueryError as e:
        raise _query_error(e)
    except DimensionMismatchError as e:
        raise _dimension_error(e)
    except Exception:
        logger.exception(f"Failed to list contexts for conversation {conversation_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve context windows")


@router.post("/{conversation_id}/rag/retrieve")
async def retrieve_rag_context(
    conversation_id: int,
    request: RagRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """
    Retrieve context windows and knowledge snippets, and build a grounded prompt.

    Returns:
        Dict with contexts, knowledge_snippets, metadata and prompt
    """
    try:
        retrieval = await pipeline.rag.retrieve_context(
            conversation_id,
            query=request.question,
            k=request.k,
            from_=request.from_,
            to=request.to,
            strategy=request.strategy,
        )
        prompt = build_prompt(request.question, retrieval.contexts, retrieval.knowledge_snippets)

        return {
            **retrieval.model_dump(mode="json"),
            "prompt": prompt.model_dump(mode="json"),
        }

    except InvalidQueryError as e:
        raise _query_error(e)
    except DimensionMismatchError as e:
        raise _dimension_error(e)
    except Exception:
        logger.exception(f"Failed RAG retrieval for conversation {conversation_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve context")

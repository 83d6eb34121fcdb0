"""API endpoints for classification catalog suggestions."""

from fastapi import APIRouter, Depends, HTTPException

from app.core.logging import get_logger
from app.core.pipeline import Pipeline, get_pipeline
from app.core.schemas_classification import SuggestRequest, SuggestResponse

logger = get_logger(__name__)

router = APIRouter()


@router.post("/suggest", response_model=SuggestResponse)
async def suggest_classification(
    request: SuggestRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> SuggestResponse:
    """
    Rank catalog entries (macro/item) for a free-text input.

    The vector pass is optional; when it is unavailable the ranking is
    keyword-only and the endpoint still answers 200.

    Raises:
        HTTPException 500: If the catalog cannot be read
    """
    try:
        suggestions = await pipeline.suggestions.suggest(
            request.text,
            limit=request.limit,
            use_vector=request.use_vector,
            vector_weight=request.vector_weight,
        )
        return SuggestResponse(suggestions=suggestions, count=len(suggestions))

    except Exception:
        logger.exception("Failed to suggest classification")
        raise HTTPException(status_code=500, detail="Failed to suggest classification")

"""API endpoints for embedding jobs and reconciliation."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.exceptions import IngestChannelFull
from app.core.logging import get_logger
from app.core.pipeline import Pipeline, get_pipeline
from app.core.providers import list_available_providers
from app.core.schemas_embeddings import EnqueueEmbeddingRequest, EntityKind
from app.db import embedding_jobs as jobs_db

logger = get_logger(__name__)

router = APIRouter()


@router.post("/enqueue", status_code=202)
async def enqueue_embedding(
    request: EnqueueEmbeddingRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """
    Hand an entity to the ingest channel without waiting for the queue.

    Raises:
        HTTPException 503: If the channel is full and the policy rejects
    """
    try:
        pipeline.ingest_channel.submit(request.entity_id, request.kind, request.text)
    except IngestChannelFull as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {"accepted": True, "pending": pipeline.ingest_channel.stats["pending"]}


@router.post("/reconcile")
async def reconcile_embeddings(
    kinds: list[EntityKind] | None = Query(None, description="Kinds to reconcile (default: all)"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """
    Run the standalone reconciler inline and return its report.

    Raises:
        HTTPException 409: If a reconciliation is already running
        HTTPException 500: If the run fails unexpectedly
    """
    try:
        report = await pipeline.reconciler.run(kinds)
    except Exception:
        logger.exception("Reconciliation failed")
        raise HTTPException(status_code=500, detail="Reconciliation failed")

    if report is None:
        raise HTTPException(status_code=409, detail="Reconciliation already running")

    return report.model_dump(mode="json")


@router.get("/jobs/failed")
async def list_failed_jobs(
    kind: EntityKind | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> dict:
    """List embedding jobs that exhausted their attempts."""
    try:
        jobs = await asyncio.to_thread(jobs_db.list_failed_jobs, kind, limit, offset)
        return {"jobs": jobs, "limit": limit, "offset": offset, "count": len(jobs)}

    except Exception:
        logger.exception("Failed to list failed embedding jobs")
        raise HTTPException(status_code=500, detail="Failed to retrieve jobs")


@router.post("/jobs/requeue")
async def requeue_failed_jobs(kind: EntityKind | None = Query(None)) -> dict:
    """Give failed jobs a fresh attempt budget."""
    try:
        count = await asyncio.to_thread(jobs_db.requeue_failed_jobs, kind)
        return {"requeued": count}

    except Exception:
        logger.exception("Failed to requeue embedding jobs")
        raise HTTPException(status_code=500, detail="Failed to requeue jobs")


@router.get("/stats")
async def embedding_stats(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    """Worker pool and ingest channel statistics for this process."""
    return {
        "feature_enabled": pipeline.generator.enabled,
        "workers": pipeline.workers.stats,
        "ingest_channel": pipeline.ingest_channel.stats,
        "reconciling": pipeline.reconciler.guard.running,
        "providers": list_available_providers(pipeline.settings),
    }

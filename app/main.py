"""FastAPI application entry point."""

import asyncio
import contextlib
from collections.abc import AsyncIterator

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.pipeline import Pipeline, get_pipeline
from app.services.context_scheduler import start_context_scheduler
from app.services.embedding_scheduler import start_embedding_scheduler

logger = get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Validate the embedding provider and start background loops when enabled."""
    settings = get_settings()
    pipeline = get_pipeline()
    await pipeline.validate()

    tasks: list[asyncio.Task] = []
    if settings.BACKGROUND_TASKS_ENABLED:
        tasks.append(asyncio.create_task(pipeline.ingest_channel.run_forever()))
        if pipeline.generator.enabled:
            tasks.append(asyncio.create_task(pipeline.workers.run_forever()))
            if settings.EMBEDDING_SCHEDULER_ENABLED:
                tasks.append(asyncio.create_task(start_embedding_scheduler(pipeline)))
        if settings.CONTEXT_SCHEDULER_ENABLED:
            tasks.append(asyncio.create_task(start_context_scheduler(pipeline)))
        logger.info(f"Started {len(tasks)} background tasks")

    try:
        yield
    finally:
        pipeline.workers.stop()
        pipeline.ingest_channel.stop()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        # Anything submitted after the flusher stopped still reaches the queue
        await pipeline.ingest_channel.flush()
        await pipeline.aclose()


app = FastAPI(
    title="Support Retrieval Engine",
    description="Embedding and hybrid retrieval pipeline for customer-service chat",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check(pipeline: Pipeline = Depends(get_pipeline)) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "ok",
            "embedding_enabled": pipeline.generator.enabled,
            "embedding_provider": pipeline.embedding_provider.name if pipeline.embedding_provider else None,
        },
        status_code=200,
    )


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])

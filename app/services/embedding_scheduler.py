"""Background loops that backfill missing embeddings on a fixed cadence."""

import asyncio

from app.core.logging import get_logger
from app.core.pipeline import Pipeline
from app.core.schemas_embeddings import EntityKind

logger = get_logger(__name__)


async def run_backfill_cycle(pipeline: Pipeline, kind: EntityKind) -> int | None:
    """Enqueue one sweep of missing embeddings for a kind."""
    try:
        return await pipeline.backfill.enqueue_missing(kind)
    except Exception:
        logger.exception(f"[embedding_scheduler] {kind.value} backfill cycle failed")
        return None


async def _every(pipeline: Pipeline, kind: EntityKind, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        await run_backfill_cycle(pipeline, kind)


async def start_embedding_scheduler(pipeline: Pipeline) -> None:
    """
    Long-running coroutine for periodic backfill.

    Catalog entries are swept once on start, messages every
    EMBEDDING_BACKFILL_INTERVAL_SECONDS and knowledge snippets every
    EMBEDDING_KB_INTERVAL_SECONDS.
    """
    settings = pipeline.settings
    logger.info("[embedding_scheduler] Starting background embedding backfill")

    await run_backfill_cycle(pipeline, EntityKind.CATALOG)
    await asyncio.gather(
        _every(pipeline, EntityKind.MESSAGE, settings.EMBEDDING_BACKFILL_INTERVAL_SECONDS),
        _every(pipeline, EntityKind.KNOWLEDGE, settings.EMBEDDING_KB_INTERVAL_SECONDS),
    )

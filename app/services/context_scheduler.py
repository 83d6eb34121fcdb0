"""Background scheduler that turns new conversation messages into context windows."""

import asyncio

from app.core.logging import get_logger
from app.core.pipeline import Pipeline

logger = get_logger(__name__)


async def start_context_scheduler(pipeline: Pipeline) -> None:
    """Long-running coroutine that summarizes pending conversations every interval."""
    interval = pipeline.settings.CONTEXT_SUMMARY_INTERVAL_SECONDS
    logger.info(f"[context_scheduler] Starting context summarization every {interval}s")
    while True:
        try:
            stats = await pipeline.summarizer.process_pending()
            if stats.processed:
                logger.info(
                    f"[context_scheduler] Stored {stats.processed} windows "
                    f"({stats.total_messages} messages, {stats.deferred} deferred, {stats.discarded} discarded)"
                )
        except Exception:
            logger.exception("[context_scheduler] Error in summarization cycle")
        await asyncio.sleep(interval)

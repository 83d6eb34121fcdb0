#!/usr/bin/env python3
"""
Run the embedding worker pools and periodic schedulers outside the API process.

Usage:
    python scripts/run_embedding_worker.py [--no-schedulers]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.pipeline import build_pipeline
from app.services.context_scheduler import start_context_scheduler
from app.services.embedding_scheduler import start_embedding_scheduler

logger = get_logger(__name__)


async def run(with_schedulers: bool) -> int:
    settings = get_settings()
    pipeline = build_pipeline(settings)

    if not await pipeline.validate():
        logger.error("Embedding provider unavailable; workers not started")
        await pipeline.aclose()
        return 1

    coroutines = [pipeline.workers.run_forever()]
    if with_schedulers and settings.EMBEDDING_SCHEDULER_ENABLED:
        coroutines.append(start_embedding_scheduler(pipeline))
    if with_schedulers and settings.CONTEXT_SCHEDULER_ENABLED:
        coroutines.append(start_context_scheduler(pipeline))

    try:
        await asyncio.gather(*coroutines)
    finally:
        pipeline.workers.stop()
        await pipeline.aclose()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run embedding workers")
    parser.add_argument("--no-schedulers", action="store_true", help="Run worker pools only")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(with_schedulers=not args.no_schedulers)))
    except KeyboardInterrupt:
        logger.info("Embedding workers interrupted")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Embed rows that are missing an embedding.

Runs the standalone reconciler inline (default) or only enqueues jobs for
the worker pools (--enqueue). Exits non-zero when the run aborts on bad
credentials or the stall circuit breaker.

Usage:
    python scripts/backfill_embeddings.py [--kind message] [--batch-size 50] [--enqueue]
    python scripts/backfill_embeddings.py --diagnose

Options:
    --kind: Restrict to one or more kinds (catalog, message, knowledge, context)
    --batch-size: Rows per batch (default: RECONCILE_BATCH_SIZE)
    --max-stall-cycles: Batches without progress before aborting
    --enqueue: Submit jobs to the queue instead of embedding inline
    --diagnose: Validate setup and print pending counts, embed nothing
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.backfill import RECONCILE_ORDER, BatchReconciler
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.pipeline import build_pipeline
from app.core.schemas_embeddings import QUEUE_KINDS, EntityKind
from app.db.embeddables import count_missing_embeddings

logger = get_logger(__name__)


async def diagnose(reconciler: BatchReconciler, kinds: list[EntityKind]) -> int:
    ok, message = await reconciler.validate_setup()
    print(f"Setup: {'OK' if ok else 'FAILED'} - {message}")
    for kind in kinds:
        pending = await asyncio.to_thread(count_missing_embeddings, kind)
        print(f"  {kind.value:<10} {pending} rows missing embeddings")
    return 0 if ok else 1


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    pipeline = build_pipeline(settings)
    kinds = [EntityKind(k) for k in args.kind] if args.kind else list(RECONCILE_ORDER)

    reconciler = pipeline.reconciler
    if args.batch_size:
        reconciler.batch_size = args.batch_size
    if args.max_stall_cycles:
        reconciler.max_stall_cycles = args.max_stall_cycles

    try:
        if args.diagnose:
            return await diagnose(reconciler, kinds)

        if args.enqueue:
            total = 0
            for kind in kinds:
                if kind not in QUEUE_KINDS:
                    print(f"Skipping {kind.value}: no queue worker for this kind")
                    continue
                total += await pipeline.backfill.enqueue_missing(kind) or 0
            print(f"Enqueued {total} embedding jobs")
            return 0

        report = await reconciler.run(kinds)
        if report is None:
            print("A reconciliation is already running")
            return 1

        for kind_report in report.kinds:
            print(
                f"{kind_report.kind.value:<10} batches={kind_report.batches} "
                f"embedded={kind_report.embedded} skipped={kind_report.skipped} failed={kind_report.failed}"
            )
            for message_type, counts in sorted(kind_report.by_type.items()):
                print(f"    {message_type:<24} embedded={counts['embedded']} skipped={counts['skipped']}")

        if report.aborted:
            print(f"Aborted: {report.abort_reason}")
            return 1
        return 0

    finally:
        await pipeline.aclose()


def main():
    """Main backfill function."""
    parser = argparse.ArgumentParser(description="Embed rows missing embeddings")
    parser.add_argument(
        "--kind",
        action="append",
        choices=[k.value for k in EntityKind],
        help="Kind to process; repeat for several (default: all)",
    )
    parser.add_argument("--batch-size", type=int, help="Rows per batch")
    parser.add_argument("--max-stall-cycles", type=int, help="Batches without progress before aborting")
    parser.add_argument("--enqueue", action="store_true", help="Only enqueue jobs for the workers")
    parser.add_argument("--diagnose", action="store_true", help="Validate setup and print pending counts")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()

"""Backfill of missing embeddings.

Two mechanisms share one batch iterator (``iter_missing_batches``):

- ``BackfillScheduler`` enqueues jobs for rows that slipped past ingestion
  and lets the worker pools do the work.
- ``BatchReconciler`` embeds rows inline, bypassing the queue, with manual
  retry and a stall circuit breaker. Operators run it from the CLI or the
  API when the queue is not an option.

A row with an embedding or a skip marker is never returned by the iterator,
so skip markers are permanent until cleared.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from app.core.config import Settings
from app.core.embedding_generator import EmbeddingGenerator
from app.core.embedding_queue import EmbeddingJobQueue
from app.core.exceptions import (
    AUTH_STATUS_CODES,
    CircuitBreakerOpen,
    ProviderAuthError,
    ProviderError,
    ProviderThrottled,
)
from app.core.logging import get_logger, log_with_context
from app.core.providers import validate_provider
from app.core.schemas_embeddings import (
    EmbeddingResult,
    EntityKind,
    KindReconcileReport,
    ReconcileReport,
)
from app.db import embeddables as embeddables_db

logger = get_logger(__name__)

# Catalog first: suggestions depend on it and it is small
RECONCILE_ORDER = (EntityKind.CATALOG, EntityKind.MESSAGE, EntityKind.KNOWLEDGE, EntityKind.CONTEXT)

SleepFn = Callable[[float], Awaitable[Any]]


async def iter_missing_batches(
    kind: EntityKind,
    batch_size: int,
    require_text: bool = False,
    max_rows: int | None = None,
) -> AsyncIterator[list[dict[str, Any]]]:
    """
    Yield pages of rows missing an embedding, keyset-paginated by id.

    The cursor always advances past the last row of a page, so rows that stay
    un-embedded (failures) are not re-read within the same sweep.

    Args:
        kind: Entity kind
        batch_size: Page size
        require_text: Only rows with non-null text-bearing columns
        max_rows: Stop after yielding this many rows
    """
    after_id = 0
    yielded = 0

    while True:
        limit = batch_size if max_rows is None else min(batch_size, max_rows - yielded)
        if limit <= 0:
            return

        rows = await asyncio.to_thread(
            embeddables_db.list_missing_embeddings,
            kind,
            after_id,
            limit,
            require_text,
        )
        if not rows:
            return

        yield rows
        yielded += len(rows)
        after_id = rows[-1]["id"]

        if len(rows) < limit:
            return


class SingleFlight:
    """In-process "already running" flag. Not a distributed lock."""

    def __init__(self, name: str):
        self.name = name
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        if self._running:
            logger.info(f"{self.name} already running, skipping this trigger")
            return False
        self._running = True
        return True

    def release(self) -> None:
        self._running = False


class BackfillScheduler:
    """Periodic enqueuer for rows missing embeddings."""

    def __init__(
        self,
        queue: EmbeddingJobQueue,
        generator: EmbeddingGenerator,
        batch_size: int = 50,
        max_per_run: int = 500,
    ):
        self.queue = queue
        self.generator = generator
        self.batch_size = batch_size
        self.max_per_run = max_per_run
        self.guards = {kind: SingleFlight(f"Embedding backfill ({kind.value})") for kind in EntityKind}

    async def enqueue_missing(self, kind: EntityKind) -> int | None:
        """
        Enqueue jobs for up to max_per_run rows of one kind.

        Returns:
            Number of jobs submitted, or None when disabled or already running
        """
        if not self.generator.enabled:
            logger.debug(f"Backfill for {kind.value} skipped: embedding feature disabled")
            return None
        guard = self.guards[kind]
        if not guard.try_acquire():
            return None

        total = 0
        try:
            # Messages without text or caption are left to the reconciler
            require_text = kind == EntityKind.MESSAGE
            async for rows in iter_missing_batches(
                kind, self.batch_size, require_text=require_text, max_rows=self.max_per_run
            ):
                total += await self.queue.enqueue_many(kind, [row["id"] for row in rows])

            log_with_context(
                logger,
                logging.INFO,
                f"Backfill enqueued {total} {kind.value} jobs",
                kind=kind.value,
                enqueued=total,
            )
            return total
        finally:
            guard.release()


class BatchReconciler:
    """Standalone reconciler that embeds missing rows inline."""

    def __init__(
        self,
        generator: EmbeddingGenerator,
        batch_size: int = 50,
        max_retries: int = 3,
        backoff_cap_seconds: float = 60.0,
        retry_delay_seconds: float = 1.0,
        max_stall_cycles: int = 3,
        sleep_between_batches: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.generator = generator
        self.batch_size = batch_size
        self.max_retries = max(max_retries, 1)
        self.backoff_cap_seconds = backoff_cap_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.max_stall_cycles = max(max_stall_cycles, 1)
        self.sleep_between_batches = sleep_between_batches
        self._sleep = sleep
        self.guard = SingleFlight("Embedding reconciliation")

    @classmethod
    def from_settings(cls, generator: EmbeddingGenerator, settings: Settings) -> "BatchReconciler":
        return cls(
            generator=generator,
            batch_size=settings.RECONCILE_BATCH_SIZE,
            max_retries=settings.RECONCILE_MAX_RETRIES,
            backoff_cap_seconds=settings.RECONCILE_BACKOFF_CAP_SECONDS,
            retry_delay_seconds=settings.RECONCILE_RETRY_DELAY_SECONDS,
            max_stall_cycles=settings.RECONCILE_MAX_STALL_CYCLES,
            sleep_between_batches=settings.RECONCILE_SLEEP_BETWEEN_BATCHES_SECONDS,
        )

    async def validate_setup(self) -> tuple[bool, str]:
        """
        Check the feature flag, the model and a probe embedding.

        Returns:
            (ok, message) where message explains a failure
        """
        provider = self.generator.provider
        if not self.generator.enabled or provider is None:
            return False, "Embedding feature is disabled (FEATURE_EMBEDDING=false or no provider)"
        if not provider.embedding_model:
            return False, "No embedding model configured"

        try:
            dimension = await validate_provider(provider)
        except ProviderAuthError as e:
            return False, f"Invalid API key or insufficient permissions ({e.status_code}): {e}"
        except ProviderThrottled as e:
            return False, f"Provider is rate limiting or unavailable ({e.status_code}): {e}"
        except ProviderError as e:
            return False, f"Provider probe failed: {e}"

        return True, f"{provider.name}/{provider.embedding_model} ({dimension} dimensions)"

    async def process_with_retry(self, kind: EntityKind, row: dict[str, Any]) -> EmbeddingResult:
        """
        Embed one row, retrying transient failures.

        Raises:
            ProviderAuthError: On 401/403, which aborts the run
        """
        result = EmbeddingResult.failed("not attempted")

        for attempt in range(1, self.max_retries + 1):
            result = await self.generator.generate_for_row(kind, row)
            if not result.is_error:
                return result

            if result.status_code in AUTH_STATUS_CODES:
                raise ProviderAuthError(
                    result.error or "Provider rejected credentials",
                    status_code=result.status_code,
                    provider=result.provider,
                )

            if not result.retryable or attempt == self.max_retries:
                break

            if result.throttled:
                delay = min(2**attempt, self.backoff_cap_seconds)
            else:
                delay = self.retry_delay_seconds

            logger.warning(
                f"Retrying {kind.value} {row['id']} in {delay}s "
                f"(attempt {attempt}/{self.max_retries}): {result.error}"
            )
            await self._sleep(delay)

        return result

    async def reconcile_kind(
        self,
        kind: EntityKind,
        run_id: str,
        report: KindReconcileReport | None = None,
    ) -> KindReconcileReport:
        """
        Embed every missing row of one kind.

        Raises:
            ProviderAuthError: On 401/403
            CircuitBreakerOpen: After max_stall_cycles batches with no progress
        """
        report = report or KindReconcileReport(kind=kind)
        stalled = 0

        async for rows in iter_missing_batches(kind, self.batch_size):
            report.batches += 1
            progress = 0

            for row in rows:
                result = await self.process_with_retry(kind, row)
                message_type = row.get("message_type") if kind == EntityKind.MESSAGE else None

                if result.is_ok:
                    report.embedded += 1
                    progress += 1
                    if kind == EntityKind.MESSAGE:
                        report.count_type(message_type, "embedded")
                elif result.is_skipped:
                    report.skipped += 1
                    progress += 1
                    if kind == EntityKind.MESSAGE:
                        report.count_type(message_type, "skipped")
                else:
                    report.failed += 1

            log_with_context(
                logger,
                logging.INFO,
                f"Batch {report.batches} of {kind.value}: {progress}/{len(rows)} rows settled",
                run_id=run_id,
                kind=kind.value,
                embedded=report.embedded,
                skipped=report.skipped,
                failed=report.failed,
            )

            if progress == 0:
                stalled += 1
                if stalled >= self.max_stall_cycles:
                    raise CircuitBreakerOpen(stalled)
            else:
                stalled = 0

            if self.sleep_between_batches:
                await self._sleep(self.sleep_between_batches)

        return report

    async def run(self, kinds: list[EntityKind] | None = None) -> ReconcileReport | None:
        """
        Run a reconciliation over the given kinds (all, in catalog-first order, by default).

        Returns:
            ReconcileReport, or None if a run is already in progress
        """
        if not self.guard.try_acquire():
            return None

        run_id = str(uuid.uuid4())
        report = ReconcileReport(run_id=run_id, started_at=datetime.now(timezone.utc))
        selected = [k for k in RECONCILE_ORDER if kinds is None or k in kinds]

        try:
            ok, message = await self.validate_setup()
            if not ok:
                report.aborted = True
                report.abort_reason = message
                logger.error(f"Reconciliation aborted before start: {message}", extra={"run_id": run_id})
                return report

            logger.info(f"Reconciliation started with {message}", extra={"run_id": run_id})

            for kind in selected:
                kind_report = KindReconcileReport(kind=kind)
                report.kinds.append(kind_report)
                try:
                    await self.reconcile_kind(kind, run_id, kind_report)
                except (ProviderAuthError, CircuitBreakerOpen) as e:
                    report.aborted = True
                    report.abort_reason = str(e)
                    logger.error(f"Reconciliation aborted on {kind.value}: {e}", extra={"run_id": run_id})
                    break

            return report

        finally:
            report.finished_at = datetime.now(timezone.utc)
            self.guard.release()
            log_with_context(
                logger,
                logging.INFO,
                f"Reconciliation finished: {report.total_embedded} embedded",
                run_id=run_id,
                aborted=report.aborted,
            )

"""Embedding job queue producers and worker pools.

Jobs live in the ``embedding_jobs`` table. Producers (the ingestion channel
and the backfill scheduler) insert them keyed by ``<kind>:<id>``, so
duplicate submissions collapse. One worker pool per kind claims due jobs,
runs the Embedding Generator and either deletes the job (ok/skipped) or
reschedules it with exponential backoff (error).
"""

import asyncio
import time
from typing import Any

from app.core.config import Settings
from app.core.embedding_generator import EmbeddingGenerator
from app.core.exceptions import IngestChannelFull
from app.core.logging import get_logger
from app.core.schemas_embeddings import QUEUE_KINDS, EmbeddingJob, EntityKind, require_queue_kind
from app.db import embedding_jobs as jobs_db

logger = get_logger(__name__)

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_REJECT = "reject"


def backoff_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: base * 2^(attempts-1), capped."""
    return min(base_seconds * (2 ** max(attempts - 1, 0)), max_seconds)


class EmbeddingJobQueue:
    """Producer side of the durable queue."""

    def __init__(self, max_attempts: int = 3):
        self.max_attempts = max_attempts

    async def enqueue(self, kind: EntityKind, entity_id: int, text: str | None = None) -> str:
        """Submit one job; returns its job id."""
        row = jobs_db.build_job_row(kind, entity_id, text=text, max_attempts=self.max_attempts)
        await asyncio.to_thread(jobs_db.enqueue_jobs, [row])
        return row["job_id"]

    async def enqueue_many(self, kind: EntityKind, entity_ids: list[int]) -> int:
        rows = [
            jobs_db.build_job_row(kind, entity_id, max_attempts=self.max_attempts)
            for entity_id in entity_ids
        ]
        return await asyncio.to_thread(jobs_db.enqueue_jobs, rows)


class IngestChannel:
    """Bounded, non-blocking hand-off from message ingestion to the queue.

    ``submit`` never awaits. When the channel is full the overflow policy
    either drops the oldest pending item or rejects the new one.
    """

    def __init__(
        self,
        queue: EmbeddingJobQueue,
        maxsize: int = 1000,
        overflow_policy: str = OVERFLOW_DROP_OLDEST,
        flush_batch: int = 50,
    ):
        if overflow_policy not in (OVERFLOW_DROP_OLDEST, OVERFLOW_REJECT):
            raise ValueError(f"Unknown overflow policy: {overflow_policy}")

        self.queue = queue
        self.overflow_policy = overflow_policy
        self.flush_batch = flush_batch
        self._items: asyncio.Queue[tuple[EntityKind, int, str | None]] = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0
        self._rejected = 0
        self._flushed = 0
        self._running = False

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "pending": self._items.qsize(),
            "dropped": self._dropped,
            "rejected": self._rejected,
            "flushed": self._flushed,
            "running": self._running,
        }

    def submit(self, entity_id: int, kind: EntityKind, text: str | None = None) -> bool:
        """
        Hand an entity to the queue without blocking.

        Returns:
            True if accepted

        Raises:
            ValueError: If the kind has no worker pool
            IngestChannelFull: If full and the policy is "reject"
        """
        item = (require_queue_kind(kind), entity_id, text)
        try:
            self._items.put_nowait(item)
            return True
        except asyncio.QueueFull:
            if self.overflow_policy == OVERFLOW_REJECT:
                self._rejected += 1
                logger.warning(f"Ingest channel full, rejected {kind}:{entity_id}")
                raise IngestChannelFull(f"Ingest channel full ({self._items.maxsize} items)")

        dropped_kind, dropped_id, _ = self._items.get_nowait()
        self._items.task_done()
        self._dropped += 1
        logger.warning(
            f"Ingest channel full, dropped oldest {dropped_kind.value}:{dropped_id}; "
            "backfill will pick it up"
        )
        self._items.put_nowait(item)
        return True

    def _drain(self) -> list[tuple[EntityKind, int, str | None]]:
        batch = []
        while len(batch) < self.flush_batch:
            try:
                batch.append(self._items.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def flush(self) -> int:
        """Move everything currently buffered into the durable queue."""
        total = 0
        while batch := self._drain():
            rows = [
                jobs_db.build_job_row(kind, entity_id, text=text, max_attempts=self.queue.max_attempts)
                for kind, entity_id, text in batch
            ]
            try:
                await asyncio.to_thread(jobs_db.enqueue_jobs, rows)
                total += len(rows)
                self._flushed += len(rows)
            except Exception as e:
                # Rows stay NULL in storage, the periodic backfill re-discovers them
                logger.error(f"Failed to flush {len(rows)} ingest items: {e}")
            finally:
                for _ in batch:
                    self._items.task_done()
        return total

    async def run_forever(self, interval: float = 1.0) -> None:
        """Flush buffered items until stop() is called."""
        self._running = True
        logger.info("Starting ingest channel flusher")
        while self._running:
            if self._items.empty():
                await asyncio.sleep(interval)
                continue
            await self.flush()
        await self.flush()

    def stop(self) -> None:
        self._running = False


class EmbeddingWorkerPool:
    """Worker pool for one job kind.

    Claims up to ``concurrency`` jobs at a time and processes them
    concurrently. Restart-safe: a crashed worker's jobs become visible again
    when their lock expires, and the generator's already-embedded check
    turns the redelivery into a no-op.
    """

    def __init__(
        self,
        kind: EntityKind,
        generator: EmbeddingGenerator,
        concurrency: int,
        poll_interval: float = 2.0,
        lock_seconds: int = 300,
        backoff_seconds: float = 10.0,
        backoff_max_seconds: float = 600.0,
    ):
        self.kind = EntityKind(kind)
        self.generator = generator
        self.concurrency = max(concurrency, 1)
        self.poll_interval = poll_interval
        self.lock_seconds = lock_seconds
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._running = False
        self._completed_count = 0
        self._error_count = 0
        self._start_time: float | None = None

    @property
    def stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            "kind": self.kind.value,
            "running": self._running,
            "concurrency": self.concurrency,
            "in_flight": len(self._in_flight),
            "completed_count": self._completed_count,
            "error_count": self._error_count,
            "uptime_seconds": round(uptime, 1),
        }

    async def process_job(self, job: EmbeddingJob) -> bool:
        """
        Process one claimed job.

        Returns:
            True if the job finished (ok/skipped), False if it will be retried or failed
        """
        try:
            result = await self.generator.generate(self.kind, job.entity_id, text=job.text)
        except Exception as e:
            logger.exception(f"Unexpected error processing job {job.job_id}", extra={"job_id": job.job_id})
            result = None
            error = str(e)
        else:
            error = result.error if result.is_error else None

        if result is not None and not result.is_error:
            await asyncio.to_thread(jobs_db.complete_job, job.job_id)
            self._completed_count += 1
            logger.debug(
                f"Embedding job {job.job_id} finished: {result.status.value}"
                + (f" ({result.reason})" if result.reason else ""),
                extra={"job_id": job.job_id, "kind": self.kind.value},
            )
            return True

        self._error_count += 1
        error = error or "embedding-failed"
        retryable = result.retryable if result is not None else True
        if not retryable or job.attempts >= job.max_attempts:
            await asyncio.to_thread(jobs_db.fail_job, job.job_id, error)
        else:
            delay = backoff_delay(job.attempts, self.backoff_seconds, self.backoff_max_seconds)
            await asyncio.to_thread(jobs_db.reschedule_job, job.job_id, error, delay)
        return False

    async def _run_job(self, job: EmbeddingJob) -> None:
        try:
            await self.process_job(job)
        except Exception:
            # Queue bookkeeping failed; the lock expiry redelivers the job
            logger.exception(f"Failed to settle job {job.job_id}", extra={"job_id": job.job_id})
        finally:
            self._semaphore.release()

    async def poll_once(self) -> int:
        """Claim as many jobs as there are free slots and start them."""
        free_slots = self.concurrency - len(self._in_flight)
        if free_slots <= 0:
            return 0

        rows = await asyncio.to_thread(jobs_db.claim_jobs, self.kind, free_slots, self.lock_seconds)
        for row in rows:
            await self._semaphore.acquire()
            task = asyncio.create_task(self._run_job(EmbeddingJob.model_validate(row)))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(rows)

    async def run_forever(self) -> None:
        """Poll and process jobs until stop() is called."""
        self._running = True
        self._start_time = time.time()

        logger.info(
            f"Starting {self.kind.value} embedding workers "
            f"(concurrency={self.concurrency}, poll_interval={self.poll_interval}s)"
        )

        while self._running:
            try:
                claimed = await self.poll_once()
                if not claimed:
                    await asyncio.sleep(self.poll_interval)
                else:
                    # Let started jobs make progress before claiming more
                    await asyncio.sleep(0)
            except Exception as e:
                logger.exception(f"Error in {self.kind.value} worker loop: {e}")
                await asyncio.sleep(self.poll_interval)

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info(f"{self.kind.value} embedding workers stopped")

    def stop(self) -> None:
        """Stop the pool gracefully."""
        logger.info(f"Stopping {self.kind.value} embedding workers...")
        self._running = False


class EmbeddingWorkers:
    """All per-kind worker pools of one process."""

    def __init__(self, generator: EmbeddingGenerator, settings: Settings):
        concurrency = {
            EntityKind.MESSAGE: settings.QUEUE_MESSAGE_CONCURRENCY,
            EntityKind.KNOWLEDGE: settings.QUEUE_KNOWLEDGE_CONCURRENCY,
            EntityKind.CATALOG: settings.QUEUE_CATALOG_CONCURRENCY,
        }
        self.pools = {
            kind: EmbeddingWorkerPool(
                kind=kind,
                generator=generator,
                concurrency=concurrency[kind],
                poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
                lock_seconds=settings.QUEUE_LOCK_SECONDS,
                backoff_seconds=settings.EMBEDDING_JOB_BACKOFF_SECONDS,
                backoff_max_seconds=settings.EMBEDDING_JOB_BACKOFF_MAX_SECONDS,
            )
            for kind in QUEUE_KINDS
        }

    @property
    def stats(self) -> list[dict[str, Any]]:
        return [pool.stats for pool in self.pools.values()]

    async def run_forever(self) -> None:
        await asyncio.gather(*(pool.run_forever() for pool in self.pools.values()))

    def stop(self) -> None:
        for pool in self.pools.values():
            pool.stop()

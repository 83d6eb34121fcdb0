"""Behavioral tests for the backfill scheduler and the batch reconciler."""

import asyncio

import pytest

from app.core.backfill import (
    BackfillScheduler,
    BatchReconciler,
    iter_missing_batches,
)
from app.core.embedding_generator import EmbeddingGenerator
from app.core.embedding_queue import EmbeddingJobQueue, EmbeddingWorkerPool
from app.core.exceptions import (
    CircuitBreakerOpen,
    ProviderAuthError,
    ProviderError,
    ProviderThrottled,
)
from app.core.schemas_embeddings import EntityKind, KindReconcileReport
from tests.fakes.fake_provider import FakeProvider


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ProbeOnlyProvider(FakeProvider):
    """Answers the validation probe, then returns 503 for every row."""

    async def embed(self, text: str) -> list[float]:
        if text == "embedding provider validation":
            return [1.0, 0.0, 0.0]
        self.embed_calls.append(text)
        raise ProviderThrottled("service unavailable", status_code=503, provider=self.name)


def _reconciler(generator, sleep=None, **kwargs) -> BatchReconciler:
    kwargs.setdefault("batch_size", 2)
    kwargs.setdefault("sleep_between_batches", 0)
    return BatchReconciler(generator, sleep=sleep or RecordingSleep(), **kwargs)


@pytest.mark.asyncio
async def test_iter_missing_batches_pages_by_id(fake_db):
    for message_id in range(1, 6):
        fake_db.add_message(message_id, text=f"message {message_id}")

    pages = [[row["id"] for row in rows] async for rows in iter_missing_batches(EntityKind.MESSAGE, 2)]

    assert pages == [[1, 2], [3, 4], [5]]


@pytest.mark.asyncio
async def test_iter_missing_batches_respects_max_rows(fake_db):
    for message_id in range(1, 6):
        fake_db.add_message(message_id, text=f"message {message_id}")

    pages = [
        [row["id"] for row in rows]
        async for rows in iter_missing_batches(EntityKind.MESSAGE, 2, max_rows=3)
    ]

    assert pages == [[1, 2], [3]]


class TestBackfillScheduler:
    @pytest.mark.asyncio
    async def test_enqueues_only_messages_with_text(self, fake_db, generator):
        fake_db.add_message(1, text="hello there")
        fake_db.add_message(2, message_type="imageMessage", media_mime_type="image/png")
        fake_db.add_message(3, caption="nota fiscal", message_type="imageMessage")
        fake_db.add_message(4, text="already done", embedding=[1.0, 0.0, 0.0])
        scheduler = BackfillScheduler(EmbeddingJobQueue(), generator, batch_size=2)

        enqueued = await scheduler.enqueue_missing(EntityKind.MESSAGE)

        assert enqueued == 2
        assert set(fake_db.jobs) == {"message:1", "message:3"}

    @pytest.mark.asyncio
    async def test_caps_jobs_per_run(self, fake_db, generator):
        for knowledge_id in range(1, 8):
            fake_db.add_knowledge(knowledge_id, f"Article body {knowledge_id}")
        scheduler = BackfillScheduler(EmbeddingJobQueue(), generator, batch_size=2, max_per_run=5)

        assert await scheduler.enqueue_missing(EntityKind.KNOWLEDGE) == 5

    @pytest.mark.asyncio
    async def test_disabled_feature_does_nothing(self, fake_db, fake_provider):
        fake_db.add_message(1, text="hello there")
        scheduler = BackfillScheduler(EmbeddingJobQueue(), EmbeddingGenerator(fake_provider, enabled=False))

        assert await scheduler.enqueue_missing(EntityKind.MESSAGE) is None
        assert fake_db.jobs == {}

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_skipped(self, fake_db, generator):
        fake_db.add_message(1, text="hello there")
        scheduler = BackfillScheduler(EmbeddingJobQueue(), generator)
        scheduler.guards[EntityKind.MESSAGE].try_acquire()

        assert await scheduler.enqueue_missing(EntityKind.MESSAGE) is None
        assert fake_db.jobs == {}

    @pytest.mark.asyncio
    async def test_knowledge_sweep_runs_during_message_sweep(self, fake_db, generator):
        fake_db.add_message(1, text="hello there")
        fake_db.add_knowledge(1, "Prazo de 7 dias")
        scheduler = BackfillScheduler(EmbeddingJobQueue(), generator)
        scheduler.guards[EntityKind.MESSAGE].try_acquire()

        assert await scheduler.enqueue_missing(EntityKind.KNOWLEDGE) == 1
        assert list(fake_db.jobs) == ["knowledge:1"]
        assert scheduler.guards[EntityKind.KNOWLEDGE].running is False

    @pytest.mark.asyncio
    async def test_skipped_rows_are_never_reenqueued(self, fake_db, fake_provider, generator):
        fake_db.add_message(1, text="a")
        fake_db.add_knowledge(1, "   ")
        scheduler = BackfillScheduler(EmbeddingJobQueue(), generator)

        for kind in (EntityKind.MESSAGE, EntityKind.KNOWLEDGE):
            assert await scheduler.enqueue_missing(kind) == 1
            pool = EmbeddingWorkerPool(kind=kind, generator=generator, concurrency=1)
            assert await pool.poll_once() == 1
            await asyncio.gather(*list(pool._in_flight))

        assert fake_db.jobs == {}
        assert {(kind, entity_id) for kind, entity_id, _ in fake_db.skip_writes} == {
            (EntityKind.MESSAGE, 1),
            (EntityKind.KNOWLEDGE, 1),
        }

        for _ in range(2):
            assert await scheduler.enqueue_missing(EntityKind.MESSAGE) == 0
            assert await scheduler.enqueue_missing(EntityKind.KNOWLEDGE) == 0

        assert fake_db.jobs == {}
        assert fake_provider.embed_calls == []


class TestBatchReconciler:
    @pytest.mark.asyncio
    async def test_embeds_everything_in_catalog_first_order(self, fake_db, fake_provider, generator):
        fake_db.add_message(1, text="Quero meu dinheiro de volta")
        fake_db.add_catalog(1, "Financeiro", "Solicitação de estorno", positive_terms=["estorno"])
        fake_db.add_knowledge(1, "Estornos levam 7 dias")

        report = await _reconciler(generator).run()

        assert report.aborted is False
        assert [k.kind for k in report.kinds] == [
            EntityKind.CATALOG,
            EntityKind.MESSAGE,
            EntityKind.KNOWLEDGE,
            EntityKind.CONTEXT,
        ]
        assert report.total_embedded == 3
        # Probe first, then catalog text before message text
        assert fake_provider.embed_calls[1].startswith("Financeiro: Solicitação de estorno")
        assert fake_provider.embed_calls[2] == "Quero meu dinheiro de volta"

    @pytest.mark.asyncio
    async def test_skips_are_permanent_across_sweeps(self, fake_db, fake_provider, generator):
        fake_db.add_message(1, message_type="reactionMessage")
        fake_db.add_message(2, text="hello there")
        reconciler = _reconciler(generator)

        first = await reconciler.run([EntityKind.MESSAGE])
        calls_after_first = len(fake_provider.embed_calls)
        second = await reconciler.run([EntityKind.MESSAGE])

        assert first.kinds[0].embedded == 1
        assert first.kinds[0].skipped == 1
        assert first.kinds[0].by_type["reactionMessage"] == {"embedded": 0, "skipped": 1}
        assert second.kinds[0].batches == 0
        assert second.kinds[0].embedded == 0
        # Only the validation probe on the second run
        assert len(fake_provider.embed_calls) == calls_after_first + 1

    @pytest.mark.asyncio
    async def test_circuit_breaker_trips_after_stalled_batches(self, fake_db):
        provider = ProbeOnlyProvider()
        for message_id in range(1, 21):
            fake_db.add_message(message_id, text=f"message number {message_id}")
        reconciler = _reconciler(
            EmbeddingGenerator(provider), batch_size=2, max_retries=1, max_stall_cycles=3
        )

        report = await reconciler.run([EntityKind.MESSAGE])

        assert report.aborted is True
        assert "3 consecutive batches" in report.abort_reason
        assert report.kinds[0].batches == 3
        assert report.kinds[0].failed == 6
        assert len(provider.embed_calls) == 6

    @pytest.mark.asyncio
    async def test_reconcile_kind_raises_circuit_breaker(self, fake_db):
        for message_id in range(1, 5):
            fake_db.add_message(message_id, text=f"message number {message_id}")
        reconciler = _reconciler(
            EmbeddingGenerator(ProbeOnlyProvider()), batch_size=1, max_retries=1, max_stall_cycles=2
        )

        with pytest.raises(CircuitBreakerOpen) as exc_info:
            await reconciler.reconcile_kind(EntityKind.MESSAGE, "run-1")

        assert exc_info.value.stalled_batches == 2

    @pytest.mark.asyncio
    async def test_progress_resets_stall_counter(self, fake_db):
        provider = FakeProvider(
            embed_error=[
                None,  # probe
                ProviderThrottled("busy", status_code=503),
                ProviderThrottled("busy", status_code=503),
                None,
                ProviderThrottled("busy", status_code=503),
                ProviderThrottled("busy", status_code=503),
                None,
            ]
        )
        for message_id in range(1, 7):
            fake_db.add_message(message_id, text=f"message number {message_id}")
        reconciler = _reconciler(
            EmbeddingGenerator(provider), batch_size=1, max_retries=1, max_stall_cycles=3
        )

        report = await reconciler.run([EntityKind.MESSAGE])

        assert report.aborted is False
        assert report.kinds[0].failed == 4
        assert report.kinds[0].embedded == 2

    @pytest.mark.asyncio
    async def test_throttled_rows_back_off_exponentially(self, fake_db):
        provider = FakeProvider(
            embed_error=[
                ProviderThrottled("slow down", status_code=429),
                ProviderThrottled("slow down", status_code=429),
                None,
            ]
        )
        sleep = RecordingSleep()
        reconciler = _reconciler(EmbeddingGenerator(provider), sleep=sleep, max_retries=3)
        fake_db.add_message(1, text="hello there")
        row = fake_db.fetch_entity(EntityKind.MESSAGE, 1)

        result = await reconciler.process_with_retry(EntityKind.MESSAGE, row)

        assert result.is_ok
        assert sleep.calls == [2, 4]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, fake_db):
        provider = FakeProvider(embed_error=ProviderThrottled("slow down", status_code=429))
        sleep = RecordingSleep()
        reconciler = _reconciler(
            EmbeddingGenerator(provider), sleep=sleep, max_retries=4, backoff_cap_seconds=5
        )
        fake_db.add_message(1, text="hello there")

        result = await reconciler.process_with_retry(
            EntityKind.MESSAGE, fake_db.fetch_entity(EntityKind.MESSAGE, 1)
        )

        assert result.is_error
        assert sleep.calls == [2, 4, 5]

    @pytest.mark.asyncio
    async def test_other_errors_use_fixed_delay(self, fake_db):
        provider = FakeProvider(embed_error=[ProviderError("bad gateway", status_code=502), None])
        sleep = RecordingSleep()
        reconciler = _reconciler(EmbeddingGenerator(provider), sleep=sleep, retry_delay_seconds=1.5)
        fake_db.add_message(1, text="hello there")

        result = await reconciler.process_with_retry(
            EntityKind.MESSAGE, fake_db.fetch_entity(EntityKind.MESSAGE, 1)
        )

        assert result.is_ok
        assert sleep.calls == [1.5]

    @pytest.mark.asyncio
    async def test_auth_error_aborts_run(self, fake_db):
        provider = FakeProvider(embed_error=[None, ProviderAuthError("invalid key", status_code=401)])
        fake_db.add_catalog(1, "Financeiro", "Cobrança indevida")
        fake_db.add_message(1, text="hello there")

        report = await _reconciler(EmbeddingGenerator(provider)).run()

        assert report.aborted is True
        assert "invalid key" in report.abort_reason
        assert [k.kind for k in report.kinds] == [EntityKind.CATALOG]
        assert report.kinds[0].batches == 1
        assert fake_db.tables[EntityKind.MESSAGE][1]["embedding"] is None

    @pytest.mark.asyncio
    async def test_failed_probe_aborts_before_start(self, fake_db):
        provider = FakeProvider(embed_error=ProviderAuthError("invalid key", status_code=403))
        fake_db.add_message(1, text="hello there")

        report = await _reconciler(EmbeddingGenerator(provider)).run()

        assert report.aborted is True
        assert "403" in report.abort_reason
        assert report.kinds == []

    @pytest.mark.asyncio
    async def test_disabled_feature_aborts(self, fake_db, fake_provider):
        report = await _reconciler(EmbeddingGenerator(fake_provider, enabled=False)).run()

        assert report.aborted is True
        assert "disabled" in report.abort_reason

    @pytest.mark.asyncio
    async def test_concurrent_run_returns_none(self, fake_db, generator):
        reconciler = _reconciler(generator)
        reconciler.guard.try_acquire()

        assert await reconciler.run() is None

    @pytest.mark.asyncio
    async def test_sleeps_between_batches(self, fake_db, generator):
        for knowledge_id in range(1, 4):
            fake_db.add_knowledge(knowledge_id, f"Article body {knowledge_id}")
        sleep = RecordingSleep()
        reconciler = _reconciler(generator, sleep=sleep, batch_size=2, sleep_between_batches=0.5)

        report = KindReconcileReport(kind=EntityKind.KNOWLEDGE)
        await reconciler.reconcile_kind(EntityKind.KNOWLEDGE, "run-1", report)

        assert report.batches == 2
        assert report.embedded == 3
        assert sleep.calls == [0.5, 0.5]

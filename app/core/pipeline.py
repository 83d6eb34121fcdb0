"""Explicit construction of the pipeline's components.

Providers are built once from settings and injected into every component;
nothing else in the package constructs a provider client. API routes get the
container through ``Depends(get_pipeline)``, so tests can override it.
"""

from dataclasses import dataclass
from functools import lru_cache

from app.core.backfill import BackfillScheduler, BatchReconciler
from app.core.classification import HybridSuggestionEngine
from app.core.config import Settings, get_settings
from app.core.context_retrieval import ContextRetrievalService
from app.core.context_windows import ContextWindowSummarizer
from app.core.embedding_generator import EmbeddingGenerator
from app.core.embedding_queue import EmbeddingJobQueue, EmbeddingWorkers, IngestChannel
from app.core.exceptions import ConfigurationError, ProviderError
from app.core.logging import get_logger
from app.core.providers import ModelProvider, build_provider, validate_provider
from app.core.rag import RagRetriever

logger = get_logger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    embedding_provider: ModelProvider | None
    chat_provider: ModelProvider | None
    generator: EmbeddingGenerator
    job_queue: EmbeddingJobQueue
    ingest_channel: IngestChannel
    workers: EmbeddingWorkers
    backfill: BackfillScheduler
    reconciler: BatchReconciler
    suggestions: HybridSuggestionEngine
    summarizer: ContextWindowSummarizer
    retrieval: ContextRetrievalService
    rag: RagRetriever

    async def validate(self) -> bool:
        """
        Probe the embedding provider once at startup.

        A failure disables the embedding feature for this process instead
        of crash-looping; keyword suggestions and recency retrieval keep working.
        """
        if not self.generator.enabled:
            logger.info("Embedding feature disabled, skipping provider validation")
            return False

        try:
            dimension = await validate_provider(self.embedding_provider)
        except ProviderError as e:
            self.generator.disable(f"provider validation failed: {e}")
            return False

        if dimension != self.settings.EMBEDDING_DIM:
            logger.warning(
                f"Provider returns {dimension}-dimension vectors, EMBEDDING_DIM is {self.settings.EMBEDDING_DIM}"
            )
        return True

    async def aclose(self) -> None:
        for provider in {self.embedding_provider, self.chat_provider} - {None}:
            await provider.aclose()


def _try_build_provider(settings: Settings, purpose: str) -> ModelProvider | None:
    try:
        return build_provider(settings, purpose)
    except ConfigurationError as e:
        logger.error(f"No {purpose} provider: {e}")
        return None


def build_pipeline(
    settings: Settings,
    embedding_provider: ModelProvider | None = None,
    chat_provider: ModelProvider | None = None,
) -> Pipeline:
    """Wire every component from settings, building providers not passed in."""
    if embedding_provider is None and settings.FEATURE_EMBEDDING:
        embedding_provider = _try_build_provider(settings, "embedding")
    if chat_provider is None:
        chat_provider = _try_build_provider(settings, "chat")

    generator = EmbeddingGenerator(
        embedding_provider,
        enabled=settings.FEATURE_EMBEDDING,
        mark_skips=settings.RECONCILE_MARK_EMPTY_AS_SKIPPED,
    )
    job_queue = EmbeddingJobQueue(max_attempts=settings.EMBEDDING_JOB_ATTEMPTS)
    retrieval = ContextRetrievalService(generator)

    return Pipeline(
        settings=settings,
        embedding_provider=embedding_provider,
        chat_provider=chat_provider,
        generator=generator,
        job_queue=job_queue,
        ingest_channel=IngestChannel(
            job_queue,
            maxsize=settings.INGEST_CHANNEL_SIZE,
            overflow_policy=settings.INGEST_OVERFLOW_POLICY,
            flush_batch=settings.INGEST_FLUSH_BATCH,
        ),
        workers=EmbeddingWorkers(generator, settings),
        backfill=BackfillScheduler(
            job_queue,
            generator,
            batch_size=settings.EMBEDDING_BACKFILL_BATCH,
            max_per_run=settings.EMBEDDING_BACKFILL_MAX_PER_RUN,
        ),
        reconciler=BatchReconciler.from_settings(generator, settings),
        suggestions=HybridSuggestionEngine.from_settings(generator, settings),
        summarizer=ContextWindowSummarizer.from_settings(chat_provider, generator, settings),
        retrieval=retrieval,
        rag=RagRetriever(
            retrieval,
            generator,
            max_k=settings.RAG_MAX_K,
            knowledge_k=settings.RAG_KNOWLEDGE_K,
        ),
    )


@lru_cache
def get_pipeline() -> Pipeline:
    """
    Get the process-wide pipeline (cached).

    Returns:
        Pipeline built from get_settings()
    """
    return build_pipeline(get_settings())

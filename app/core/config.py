"""Configuration management for the retrieval engine."""

import logging
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Environment
    APP_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")
    LOG_LEVEL: str | None = Field(default=None, description="Override log level (DEBUG, INFO, ...)")
    BACKGROUND_TASKS_ENABLED: bool = Field(
        default=True, description="Start schedulers and queue workers inside the API process"
    )

    # Provider configuration
    EMBEDDING_PROVIDER: str = Field(default="openai", description="openai or ollama")
    CHAT_PROVIDER: str = Field(default="openai", description="openai or ollama")
    OPENAI_API_KEY: str | None = Field(default=None, description="OpenAI API key")
    OPENAI_BASE_URL: str = Field(
        default="https://api.openai.com/v1", description="OpenAI-compatible base URL"
    )
    OLLAMA_ENDPOINT: str = Field(default="http://localhost:11434", description="Ollama endpoint")
    OLLAMA_EMBEDDING_MODEL: str = Field(default="nomic-embed-text", description="Ollama embedding model")
    OLLAMA_CHAT_MODEL: str = Field(default="llama3.1", description="Ollama chat model")
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=30.0, description="Provider call timeout")

    # Embedding configuration
    FEATURE_EMBEDDING: bool = Field(default=False, description="Enable embedding generation")
    EMBEDDING_MODEL: str | None = Field(default=None, description="Embedding model")
    OPENAI_MODEL_EMBEDDING: str | None = Field(
        default=None, description="Deprecated alias of EMBEDDING_MODEL"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")
    CHAT_MODEL: str = Field(default="gpt-4o-mini", description="Chat completion model")

    # Job queue
    EMBEDDING_JOB_ATTEMPTS: int = Field(default=3, description="Max attempts per embedding job")
    EMBEDDING_JOB_BACKOFF_SECONDS: float = Field(default=10.0, description="Base retry backoff")
    EMBEDDING_JOB_BACKOFF_MAX_SECONDS: float = Field(default=600.0, description="Retry backoff cap")
    QUEUE_MESSAGE_CONCURRENCY: int = Field(default=5, description="Message worker concurrency")
    QUEUE_KNOWLEDGE_CONCURRENCY: int = Field(default=3, description="Knowledge worker concurrency")
    QUEUE_CATALOG_CONCURRENCY: int = Field(default=2, description="Catalog worker concurrency")
    QUEUE_POLL_INTERVAL_SECONDS: float = Field(default=2.0, description="Idle poll interval")
    QUEUE_LOCK_SECONDS: int = Field(
        default=300, description="Seconds a claimed job stays invisible before redelivery"
    )
    INGEST_CHANNEL_SIZE: int = Field(default=1000, description="Bounded ingestion channel size")
    INGEST_OVERFLOW_POLICY: str = Field(default="drop_oldest", description="drop_oldest or reject")
    INGEST_FLUSH_BATCH: int = Field(default=50, description="Jobs flushed per queue insert")

    # Periodic backfill
    EMBEDDING_SCHEDULER_ENABLED: bool = Field(default=True, description="Run periodic backfill")
    EMBEDDING_BACKFILL_BATCH: int = Field(default=50, description="Rows per backfill page")
    EMBEDDING_BACKFILL_MAX_PER_RUN: int = Field(default=500, description="Max jobs per sweep")
    EMBEDDING_BACKFILL_INTERVAL_SECONDS: int = Field(default=3600, description="Message sweep cadence")
    EMBEDDING_KB_INTERVAL_SECONDS: int = Field(default=86400, description="Knowledge sweep cadence")

    # Standalone reconciler
    RECONCILE_BATCH_SIZE: int = Field(default=50, description="Rows per reconciliation batch")
    RECONCILE_MAX_RETRIES: int = Field(default=3, description="Attempts per row")
    RECONCILE_BACKOFF_CAP_SECONDS: float = Field(default=60.0, description="Backoff cap")
    RECONCILE_RETRY_DELAY_SECONDS: float = Field(default=1.0, description="Delay for other errors")
    RECONCILE_MAX_STALL_CYCLES: int = Field(
        default=3, description="Consecutive zero-progress batches before aborting"
    )
    RECONCILE_SLEEP_BETWEEN_BATCHES_SECONDS: float = Field(default=1.0, description="Pause between batches")
    RECONCILE_MARK_EMPTY_AS_SKIPPED: bool = Field(default=True, description="Persist skip markers")

    # Hybrid suggestion
    CLASSIFICATION_VECTOR_WEIGHT: float = Field(default=0.5, description="Vector weight in [0,1]")
    CLASSIFICATION_KEYWORD_POINTS_PER_MATCH: int = Field(
        default=20, description="Keyword points per matched positive term"
    )
    CLASSIFICATION_DEFAULT_LIMIT: int = Field(default=5, description="Default suggestion count")

    # Context windows
    CONTEXT_SCHEDULER_ENABLED: bool = Field(default=True, description="Run context summarization")
    CONTEXT_SUMMARY_INTERVAL_SECONDS: int = Field(default=900, description="Summarizer cadence")
    CONTEXT_SUMMARY_WINDOW_SIZE: int = Field(default=40, description="Messages per window")
    CONTEXT_SUMMARY_MIN_MESSAGES: int = Field(default=5, description="Minimum messages per window")
    CONTEXT_SUMMARY_CONVERSATION_LIMIT: int = Field(default=5, description="Conversations per cycle")
    CONTEXT_SUMMARY_MAX_TOKENS: int = Field(default=450, description="Summary max tokens")

    # RAG
    RAG_MAX_K: int = Field(default=5, description="Max context windows per RAG retrieval")
    RAG_KNOWLEDGE_K: int = Field(default=3, description="Knowledge snippets per RAG retrieval")

    @field_validator("CLASSIFICATION_VECTOR_WEIGHT")
    @classmethod
    def _clamp_weight(cls, value: float) -> float:
        return min(max(value, 0.0), 1.0)

    @field_validator("RAG_MAX_K")
    @classmethod
    def _clamp_rag_k(cls, value: int) -> int:
        return min(max(value, 1), 10)

    @field_validator("INGEST_OVERFLOW_POLICY", "EMBEDDING_PROVIDER", "CHAT_PROVIDER")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _resolve_embedding_model(self) -> "Settings":
        if not self.EMBEDDING_MODEL:
            if self.OPENAI_MODEL_EMBEDDING:
                logging.getLogger(__name__).warning(
                    "OPENAI_MODEL_EMBEDDING is deprecated, use EMBEDDING_MODEL"
                )
            self.EMBEDDING_MODEL = self.OPENAI_MODEL_EMBEDDING or "text-embedding-3-small"
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()

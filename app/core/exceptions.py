"""Error taxonomy for the embedding and retrieval pipeline."""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(PipelineError):
    """Raised when credentials, models or providers are missing or invalid."""


class ProviderError(PipelineError):
    """Raised when a model provider call fails.

    Carries the provider name and, when the failure came from an HTTP
    response, its status code so callers can tell fatal from transient.
    """

    retryable = True

    def __init__(self, message: str, status_code: int | None = None, provider: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class ProviderAuthError(ProviderError):
    """401/403 from the provider. Never retried."""

    retryable = False


class ProviderThrottled(ProviderError):
    """429/503 from the provider. Retried with exponential backoff."""


class ProviderTimeout(ProviderThrottled):
    """Provider call exceeded its timeout."""


class ProviderMalformedResponse(ProviderError):
    """Provider answered but the vector or JSON payload is empty or invalid."""

    retryable = False


class DimensionMismatchError(PipelineError):
    """Query embedding width differs from the stored embedding width."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension ({actual}) differs from stored dimension ({expected})"
        )
        self.expected = expected
        self.actual = actual


class EntityNotFound(PipelineError):
    """Referenced row vanished between enqueue and processing."""

    def __init__(self, kind: str, entity_id: int):
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class InvalidQueryError(PipelineError):
    """Invalid retrieval or suggestion parameters."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class CircuitBreakerOpen(PipelineError):
    """Reconciler made no progress for too many consecutive batches."""

    def __init__(self, stalled_batches: int):
        super().__init__(
            f"No progress after {stalled_batches} consecutive batches; check the embedding provider"
        )
        self.stalled_batches = stalled_batches


class IngestChannelFull(PipelineError):
    """Ingestion channel is full and the overflow policy rejects new items."""


# HTTP status codes worth distinguishing at the provider boundary
AUTH_STATUS_CODES = frozenset({401, 403})
THROTTLE_STATUS_CODES = frozenset({429, 503})


def provider_error_for_status(
    status_code: int | None, message: str, provider: str | None = None
) -> ProviderError:
    """Map an HTTP status code to the matching provider error class."""
    if status_code in AUTH_STATUS_CODES:
        return ProviderAuthError(message, status_code=status_code, provider=provider)
    if status_code in THROTTLE_STATUS_CODES:
        return ProviderThrottled(message, status_code=status_code, provider=provider)
    return ProviderError(message, status_code=status_code, provider=provider)

"""Supabase client shared by the embeddables, queue and retrieval tables."""

from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from app.core.config import get_settings
from app.core.exceptions import ConfigurationError
from app.core.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get the service-role Supabase client (cached singleton).

    PostgREST calls share the provider timeout so a stuck database call
    cannot hold a queue worker longer than an embedding request would.

    Raises:
        ConfigurationError: If the URL or key is missing or rejected
    """
    settings = get_settings()
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")

    try:
        client = create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
            options=ClientOptions(postgrest_client_timeout=int(settings.PROVIDER_TIMEOUT_SECONDS)),
        )
    except Exception as e:
        raise ConfigurationError(f"Failed to initialize Supabase client: {e}") from e

    logger.info("Supabase client initialized", extra={"extra_data": {"env": settings.APP_ENV}})
    return client

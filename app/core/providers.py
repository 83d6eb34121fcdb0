"""Model provider adapters for embeddings and chat completions.

Every provider exposes the same two calls (``embed`` and ``chat``), reports
its own name for logging and raises the taxonomy in ``app.core.exceptions``
with the HTTP status attached, so callers can tell bad credentials
(401/403) from throttling (429/503).
"""

from dataclasses import dataclass
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from app.core.config import Settings
from app.core.exceptions import (
    ConfigurationError,
    ProviderError,
    ProviderMalformedResponse,
    ProviderTimeout,
    provider_error_for_status,
)
from app.core.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "ollama")
VALIDATION_PROBE_TEXT = "embedding provider validation"


@dataclass
class ChatResult:
    """Normalized chat completion response."""

    text: str
    token_usage: int
    model: str
    provider: str


def _coerce_vector(raw: Any, provider: str) -> list[float]:
    """Validate a raw embedding payload and return it as a list of floats."""
    if not isinstance(raw, list) or not raw:
        raise ProviderMalformedResponse("Empty embedding vector", provider=provider)
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError) as e:
        raise ProviderMalformedResponse(f"Invalid embedding vector: {e}", provider=provider) from e


class ModelProvider:
    """Base class for embedding/chat providers."""

    name = "base"

    def __init__(self, embedding_model: str | None, chat_model: str | None, timeout: float):
        self.embedding_model = embedding_model
        self.chat_model = chat_model
        self.timeout = timeout

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> ChatResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OpenAIProvider(ModelProvider):
    """OpenAI-compatible provider using the async SDK.

    SDK-level retries are disabled: retry policy belongs to the queue and the
    reconciler, which need to see every 429/503.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        embedding_model: str | None,
        chat_model: str | None,
        timeout: float,
        client: AsyncOpenAI | None = None,
    ):
        super().__init__(embedding_model, chat_model, timeout)
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    def _map_error(self, e: Exception) -> ProviderError:
        if isinstance(e, openai.APITimeoutError):
            return ProviderTimeout(f"OpenAI request timed out after {self.timeout}s", provider=self.name)
        if isinstance(e, openai.APIStatusError):
            return provider_error_for_status(e.status_code, f"OpenAI error: {e.message}", self.name)
        if isinstance(e, openai.APIConnectionError):
            return ProviderError(f"OpenAI connection error: {e}", provider=self.name)
        return ProviderError(f"OpenAI call failed: {e}", provider=self.name)

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self._client.embeddings.create(
                model=self.embedding_model,
                input=text,
            )
        except openai.OpenAIError as e:
            raise self._map_error(e) from e

        data = getattr(response, "data", None) or []
        if not data:
            raise ProviderMalformedResponse("No embedding returned", provider=self.name)

        vector = _coerce_vector(data[0].embedding, self.name)
        logger.debug(
            f"Generated embedding with {self.name}/{self.embedding_model}",
            extra={"provider": self.name, "dimension": len(vector)},
        )
        return vector

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> ChatResult:
        try:
            response = await self._client.chat.completions.create(
                model=model or self.chat_model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise self._map_error(e) from e

        if not response.choices:
            raise ProviderMalformedResponse("No chat choices returned", provider=self.name)

        usage = getattr(response, "usage", None)
        return ChatResult(
            text=response.choices[0].message.content or "",
            token_usage=getattr(usage, "total_tokens", 0) or 0,
            model=response.model,
            provider=self.name,
        )

    async def aclose(self) -> None:
        await self._client.close()


class OllamaProvider(ModelProvider):
    """Local Ollama provider over plain HTTP."""

    name = "ollama"

    def __init__(
        self,
        endpoint: str,
        embedding_model: str | None,
        chat_model: str | None,
        timeout: float,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(embedding_model, chat_model, timeout)
        self.endpoint = endpoint.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(f"{self.endpoint}{path}", json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Ollama request timed out after {self.timeout}s", provider=self.name) from e
        except httpx.HTTPStatusError as e:
            raise provider_error_for_status(
                e.response.status_code, f"Ollama error: {e.response.text[:200]}", self.name
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama connection error: {e}", provider=self.name) from e

        try:
            return response.json()
        except ValueError as e:
            raise ProviderMalformedResponse("Ollama returned non-JSON body", provider=self.name) from e

    async def embed(self, text: str) -> list[float]:
        data = await self._post("/api/embed", {"model": self.embedding_model, "input": text})

        # Ollama has shipped several response shapes over time
        if isinstance(data.get("embedding"), list):
            raw = data["embedding"]
        elif isinstance(data.get("embeddings"), list) and data["embeddings"]:
            raw = data["embeddings"][0]
        elif isinstance(data.get("data"), list) and data["data"]:
            raw = (data["data"][0] or {}).get("embedding")
        else:
            raise ProviderMalformedResponse("Invalid embedding response from Ollama", provider=self.name)

        return _coerce_vector(raw, self.name)

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> ChatResult:
        data = await self._post(
            "/api/chat",
            {
                "model": model or self.chat_model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
        )
        message = data.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise ProviderMalformedResponse("Invalid chat response from Ollama", provider=self.name)

        return ChatResult(
            text=content,
            token_usage=int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0),
            model=data.get("model") or model or self.chat_model or "",
            provider=self.name,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_provider(settings: Settings, purpose: str = "embedding") -> ModelProvider:
    """
    Build the provider configured for a purpose.

    Args:
        settings: Application settings
        purpose: "embedding" or "chat"

    Returns:
        Configured provider

    Raises:
        ConfigurationError: If the provider is unknown or misconfigured
    """
    provider_name = settings.EMBEDDING_PROVIDER if purpose == "embedding" else settings.CHAT_PROVIDER

    if provider_name == "openai":
        if not settings.OPENAI_API_KEY:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        if purpose == "embedding" and not settings.EMBEDDING_MODEL:
            raise ConfigurationError("EMBEDDING_MODEL is not configured")
        return OpenAIProvider(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            embedding_model=settings.EMBEDDING_MODEL,
            chat_model=settings.CHAT_MODEL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    if provider_name in ("ollama", "local"):
        if not settings.OLLAMA_ENDPOINT:
            raise ConfigurationError("OLLAMA_ENDPOINT is not configured")
        return OllamaProvider(
            endpoint=settings.OLLAMA_ENDPOINT,
            embedding_model=settings.OLLAMA_EMBEDDING_MODEL,
            chat_model=settings.OLLAMA_CHAT_MODEL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    raise ConfigurationError(
        f"Unknown {purpose} provider '{provider_name}', expected one of {SUPPORTED_PROVIDERS}"
    )


async def validate_provider(provider: ModelProvider) -> int:
    """Run a probe embedding and return its dimension.

    Raises whatever the provider raises; callers decide whether to disable
    the feature.
    """
    vector = await provider.embed(VALIDATION_PROBE_TEXT)
    logger.info(
        f"Embedding provider {provider.name} validated ({len(vector)} dimensions)",
        extra={"provider": provider.name},
    )
    return len(vector)


def list_available_providers(settings: Settings) -> list[dict[str, Any]]:
    """List configured providers and whether they can be used."""
    return [
        {
            "name": "openai",
            "embedding_model": settings.EMBEDDING_MODEL,
            "chat_model": settings.CHAT_MODEL,
            "available": bool(settings.OPENAI_API_KEY),
        },
        {
            "name": "ollama",
            "embedding_model": settings.OLLAMA_EMBEDDING_MODEL,
            "chat_model": settings.OLLAMA_CHAT_MODEL,
            "available": bool(settings.OLLAMA_ENDPOINT),
        },
    ]

"""Conversation context window summarizer.

Each cycle picks conversations with messages past their last window, takes
up to ``window_size`` messages after the watermark, asks the chat provider
for a JSON summary and stores the window in a single insert. The watermark
is the previous window's ``last_message_id``, so windows of one
conversation never overlap and never skip a message.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from app.core.config import Settings
from app.core.embedding_generator import EmbeddingGenerator
from app.core.exceptions import ProviderError
from app.core.llm import parse_llm_json
from app.core.logging import get_logger, log_with_context
from app.core.providers import ModelProvider
from app.core.schemas_context import SummaryRunStats, WindowSummary
from app.db import conversation_contexts as contexts_db

logger = get_logger(__name__)

SUMMARY_TEMPERATURE = 0.2
MAX_TOPICS = 5

SUMMARY_SYSTEM_PROMPT = (
    "You summarize WhatsApp customer-service conversations between agents and customers. "
    'Reply with JSON only, in the format {"resumo": "...", "topicos": ["..."]}. '
    "Write the summary in the language of the conversation. Be objective and include "
    "up to 5 short topics."
)


def _format_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc).isoformat()
        except ValueError:
            return value
    return ""


def format_message_line(row: dict[str, Any]) -> str:
    """One transcript line: ``[ISO ts] Agent|Customer: text``."""
    author = "Agent" if row.get("is_from_me") else "Customer"
    text = row.get("text")
    caption = row.get("caption")
    if isinstance(text, str) and text.strip():
        content = text.strip()
    elif isinstance(caption, str) and caption.strip():
        content = caption.strip()
    else:
        content = f"[{row.get('message_type') or 'message'} without text]"
    return f"[{_format_timestamp(row.get('timestamp'))}] {author}: {content}"


def format_transcript(rows: list[dict[str, Any]]) -> str:
    return "\n".join(format_message_line(row) for row in rows)


def build_metadata(
    rows: list[dict[str, Any]],
    raw_summary: str | None,
    duration_ms: int,
) -> dict[str, Any]:
    return {
        "first_message_id": rows[0]["id"],
        "last_message_id": rows[-1]["id"],
        "message_ids": [row["id"] for row in rows],
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "duration_ms": duration_ms,
        "summary_raw": raw_summary,
        "window_size": len(rows),
    }


class ContextWindowSummarizer:
    """Builds context windows for conversations with unprocessed messages."""

    def __init__(
        self,
        chat_provider: ModelProvider | None,
        generator: EmbeddingGenerator,
        window_size: int = 40,
        min_messages: int = 5,
        conversation_limit: int = 5,
        max_tokens: int = 450,
    ):
        self.chat_provider = chat_provider
        self.generator = generator
        self.window_size = window_size
        self.min_messages = min_messages
        self.conversation_limit = conversation_limit
        self.max_tokens = max_tokens
        self._running = False

    @classmethod
    def from_settings(
        cls,
        chat_provider: ModelProvider | None,
        generator: EmbeddingGenerator,
        settings: Settings,
    ) -> "ContextWindowSummarizer":
        return cls(
            chat_provider=chat_provider,
            generator=generator,
            window_size=settings.CONTEXT_SUMMARY_WINDOW_SIZE,
            min_messages=settings.CONTEXT_SUMMARY_MIN_MESSAGES,
            conversation_limit=settings.CONTEXT_SUMMARY_CONVERSATION_LIMIT,
            max_tokens=settings.CONTEXT_SUMMARY_MAX_TOKENS,
        )

    async def summarize_window(self, transcript: str) -> tuple[WindowSummary, str]:
        """
        Ask the chat provider for a {resumo, topicos} summary.

        Returns:
            (summary, raw model text)

        Raises:
            ProviderError: If the provider call fails
            ValueError: If the answer is not valid JSON or the summary is empty
        """
        result = await self.chat_provider.chat(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": transcript},
            ],
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=self.max_tokens,
        )
        try:
            summary = parse_llm_json(result.text or "", WindowSummary)
        except ValidationError as e:
            raise ValueError(f"summary-invalid: {e.error_count()} validation errors") from e
        summary.topicos = summary.topicos[:MAX_TOPICS]
        return summary, result.text

    async def _should_defer(self, conversation_id: int, rows: list[dict[str, Any]]) -> bool:
        if len(rows) >= self.min_messages:
            return False
        remaining = await asyncio.to_thread(
            contexts_db.count_messages_after, conversation_id, rows[-1]["id"]
        )
        return remaining > 0

    async def _embed_summary(self, conversation_id: int, text: str) -> list[float] | None:
        """Best effort: a window without an embedding is still stored."""
        if not self.generator.enabled:
            return None
        try:
            return await self.generator.embed_text(text)
        except Exception as e:
            logger.warning(f"Failed to embed summary for conversation {conversation_id}: {e}")
            return None

    async def process_conversation(self, pending: dict[str, Any], stats: SummaryRunStats) -> dict[str, Any] | None:
        """Build at most one window for a conversation. Returns the stored row."""
        conversation_id = pending["conversation_id"]
        watermark = pending.get("last_message_id") or 0

        rows = await asyncio.to_thread(
            contexts_db.fetch_message_window, conversation_id, watermark, self.window_size
        )
        if not rows:
            return None

        if await self._should_defer(conversation_id, rows):
            stats.deferred += 1
            logger.debug(f"Deferring conversation {conversation_id}: only {len(rows)} messages ready")
            return None

        started = time.monotonic()
        try:
            summary, raw = await self.summarize_window(format_transcript(rows))
        except (ProviderError, ValueError) as e:
            stats.discarded += 1
            logger.warning(f"Discarded window for conversation {conversation_id}: {e}")
            return None

        embedding = await self._embed_summary(conversation_id, summary.resumo)
        duration_ms = int((time.monotonic() - started) * 1000)

        row = {
            "conversation_id": conversation_id,
            "period_start": rows[0].get("timestamp"),
            "period_end": rows[-1].get("timestamp"),
            "message_count": len(rows),
            "first_message_id": rows[0]["id"],
            "last_message_id": rows[-1]["id"],
            "summary": summary.resumo,
            "topics": summary.topicos,
            "embedding": embedding,
            "metadata": build_metadata(rows, raw, duration_ms),
        }
        stored = await asyncio.to_thread(contexts_db.insert_context_window, row)

        stats.processed += 1
        stats.total_messages += len(rows)
        if embedding is None:
            stats.without_embedding += 1

        log_with_context(
            logger,
            logging.INFO,
            f"Stored context window for conversation {conversation_id}",
            conversation_id=conversation_id,
            messages=len(rows),
            duration_ms=duration_ms,
            embedding=embedding is not None,
        )
        return stored

    async def process_pending(self) -> SummaryRunStats:
        """Run one summarization cycle over pending conversations."""
        stats = SummaryRunStats()
        if self.chat_provider is None:
            logger.warning("Context summarization skipped: no chat provider configured")
            return stats
        if self._running:
            logger.info("Context summarization already running, skipping this trigger")
            return stats

        self._running = True
        try:
            pending = await asyncio.to_thread(contexts_db.list_pending_conversations, self.conversation_limit)
            if not pending:
                logger.debug("No conversations pending summarization")
                return stats

            for conversation in pending:
                stats.conversations_checked += 1
                try:
                    await self.process_conversation(conversation, stats)
                except Exception:
                    # Storage failure for one conversation does not stop the cycle
                    logger.exception(
                        f"Failed to build context window for conversation {conversation.get('conversation_id')}"
                    )
            return stats
        finally:
            self._running = False

"""Text extraction rules for embeddable entities.

Each entity kind has its own rule for turning a row into the text that gets
embedded. Returning None means the row carries no useful signal.
"""

import json
import unicodedata
from typing import Any

# Minimum normalized length worth embedding
MIN_TEXT_LENGTH = 2

TYPE_LABELS = {
    "imageMessage": "[Image]",
    "audioMessage": "[Audio]",
    "videoMessage": "[Video]",
    "documentMessage": "[Document]",
    "contactMessage": "[Contact]",
    "contactsArrayMessage": "[Contacts]",
    "albumMessage": "[Album]",
    "stickerMessage": "[Sticker]",
    "conversation": "",
    "extendedTextMessage": "",
}

# Placeholders for media without text; "{mime}" is filled when known
MEDIA_PLACEHOLDERS = {
    "imageMessage": ("[Image sent]", "[Image sent - {mime}]"),
    "audioMessage": ("[Audio message]", "[Audio message]"),
    "videoMessage": ("[Video sent]", "[Video sent - {mime}]"),
    "documentMessage": ("[Document sent]", "[Document sent - {mime}]"),
    "contactMessage": ("[Contact shared]", "[Contact shared]"),
    "contactsArrayMessage": ("[Multiple contacts shared]", "[Multiple contacts shared]"),
    "albumMessage": ("[Media album]", "[Media album]"),
    "stickerMessage": ("[Sticker sent]", "[Sticker sent]"),
}

# Types with no useful signal on their own
NO_SIGNAL_TYPES = frozenset({"reactionMessage", "conversation", "extendedTextMessage", "protocolMessage"})


def normalize_text(value: Any) -> str:
    """Strip diacritics and lower-case a value for keyword comparison."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", str(value))
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return stripped.lower()


def is_too_short(text: str | None) -> bool:
    """True when text is missing or shorter than MIN_TEXT_LENGTH after trimming."""
    return not text or len(text.strip()) < MIN_TEXT_LENGTH


def type_label(message_type: str | None) -> str:
    """Human-readable prefix for a message type."""
    if not message_type:
        return ""
    return TYPE_LABELS.get(message_type, f"[{message_type}]")


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def extract_message_text(row: dict[str, Any]) -> str | None:
    """
    Extract embeddable text from a chat message row.

    Priority: literal text, caption with a type prefix, a placeholder for
    known media types, a metadata digest for unknown types. Reactions and
    empty conversational turns yield None.
    """
    text = _clean(row.get("text"))
    if text:
        return text

    message_type = row.get("message_type")
    caption = _clean(row.get("caption"))
    if caption:
        label = type_label(message_type)
        return f"{label} {caption}".strip()

    if message_type in MEDIA_PLACEHOLDERS:
        plain, with_mime = MEDIA_PLACEHOLDERS[message_type]
        mime = _clean(row.get("media_mime_type"))
        return with_mime.format(mime=mime) if mime else plain

    if message_type in NO_SIGNAL_TYPES:
        return None

    metadata = row.get("metadata")
    if isinstance(metadata, dict) and metadata:
        meta_text = json.dumps(metadata, ensure_ascii=False, default=str)
        if len(meta_text) > 10:
            return f"[{message_type or 'Message'}]: {meta_text[:200]}"

    return None


def extract_term_list(raw: Any) -> list[str]:
    """Normalize catalog term lists stored as arrays, objects or delimited strings."""
    if not raw:
        return []
    if isinstance(raw, list):
        terms = [normalize_text(item).strip() for item in raw]
    elif isinstance(raw, dict):
        flat: list[Any] = []
        for value in raw.values():
            flat.extend(value if isinstance(value, list) else [value])
        terms = [normalize_text(item).strip() for item in flat]
    elif isinstance(raw, str):
        terms = [t.strip() for t in normalize_text(raw).replace(";", ",").split(",")]
    else:
        return []
    return [t for t in terms if t]


def extract_catalog_text(row: dict[str, Any]) -> str | None:
    macro = _clean(row.get("macro"))
    item = _clean(row.get("item"))
    if not macro and not item:
        return None

    parts = [f"{macro}: {item}" if macro and item else macro or item]
    description = _clean(row.get("description"))
    if description:
        parts.append(description)
    terms = row.get("positive_terms")
    if isinstance(terms, list) and terms:
        parts.append("Related terms: " + ", ".join(str(t) for t in terms if t))
    return ". ".join(parts)


def extract_knowledge_text(row: dict[str, Any]) -> str | None:
    return _clean(row.get("content")) or None


def extract_context_text(row: dict[str, Any]) -> str | None:
    summary = _clean(row.get("summary"))
    if not summary:
        return None
    topics = row.get("topics") or []
    if isinstance(topics, list) and topics:
        return f"{summary}\nTopics: {', '.join(str(t) for t in topics)}"
    return summary


TEXT_EXTRACTORS = {
    "message": extract_message_text,
    "knowledge": extract_knowledge_text,
    "catalog": extract_catalog_text,
    "context": extract_context_text,
}

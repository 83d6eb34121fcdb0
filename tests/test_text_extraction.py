"""Tests for per-kind text extraction rules."""

from app.core.text_extraction import (
    extract_catalog_text,
    extract_context_text,
    extract_knowledge_text,
    extract_message_text,
    extract_term_list,
    is_too_short,
    normalize_text,
)


class TestMessageText:
    def test_literal_text_wins(self):
        row = {"text": "  Olá, preciso de ajuda  ", "caption": "ignored", "message_type": "imageMessage"}

        assert extract_message_text(row) == "Olá, preciso de ajuda"

    def test_caption_gets_type_prefix(self):
        row = {"text": None, "caption": "nota fiscal", "message_type": "imageMessage"}

        assert extract_message_text(row) == "[Image] nota fiscal"

    def test_caption_of_plain_message_has_no_prefix(self):
        row = {"caption": "oi", "message_type": "conversation"}

        assert extract_message_text(row) == "oi"

    def test_media_placeholder_with_mime(self):
        row = {"message_type": "documentMessage", "media_mime_type": "application/pdf"}

        assert extract_message_text(row) == "[Document sent - application/pdf]"

    def test_media_placeholder_without_mime(self):
        assert extract_message_text({"message_type": "audioMessage"}) == "[Audio message]"

    def test_reaction_has_no_signal(self):
        assert extract_message_text({"message_type": "reactionMessage", "metadata": {"emoji": "👍"}}) is None

    def test_empty_conversation_turn_has_no_signal(self):
        assert extract_message_text({"message_type": "conversation", "text": "   "}) is None

    def test_unknown_type_uses_metadata_digest(self):
        row = {"message_type": "pollMessage", "metadata": {"question": "Qual horário?"}}

        text = extract_message_text(row)

        assert text.startswith("[pollMessage]: ")
        assert "Qual horário?" in text

    def test_unknown_type_without_metadata(self):
        assert extract_message_text({"message_type": "pollMessage"}) is None


class TestCatalogText:
    def test_joins_fields(self):
        row = {
            "macro": "Financeiro",
            "item": "Solicitação de estorno",
            "description": "Cliente pede devolução",
            "positive_terms": ["estorno", "reembolso"],
        }

        assert extract_catalog_text(row) == (
            "Financeiro: Solicitação de estorno. Cliente pede devolução. Related terms: estorno, reembolso"
        )

    def test_missing_macro_and_item(self):
        assert extract_catalog_text({"description": "orphan"}) is None


def test_knowledge_text_is_content():
    assert extract_knowledge_text({"content": " Prazo de 7 dias "}) == "Prazo de 7 dias"
    assert extract_knowledge_text({"content": ""}) is None


def test_context_text_appends_topics():
    row = {"summary": "Cliente pediu estorno", "topics": ["estorno", "pix"]}

    assert extract_context_text(row) == "Cliente pediu estorno\nTopics: estorno, pix"


class TestTermLists:
    def test_normalizes_arrays(self):
        assert extract_term_list(["Estorno", " REEMBOLSO ", ""]) == ["estorno", "reembolso"]

    def test_flattens_objects(self):
        assert extract_term_list({"a": ["Cobrança"], "b": "Fatura"}) == ["cobranca", "fatura"]

    def test_splits_delimited_strings(self):
        assert extract_term_list("boleto; pix, cartão") == ["boleto", "pix", "cartao"]

    def test_unknown_shapes(self):
        assert extract_term_list(42) == []
        assert extract_term_list(None) == []


def test_normalize_strips_diacritics():
    assert normalize_text("Solicitação É") == "solicitacao e"


def test_too_short():
    assert is_too_short(None)
    assert is_too_short(" a ")
    assert not is_too_short("ok")

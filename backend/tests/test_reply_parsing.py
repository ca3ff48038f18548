from datetime import datetime, timezone

import pytest

from secure_booking.domain.confirmations.parsing import normalize_reply, parse_reply
from secure_booking.domain.confirmations.templates import (
    CODE_ALPHABET,
    CODE_LENGTH,
    generate_confirmation_code,
    render_confirmation_message,
)


@pytest.mark.parametrize(
    "text",
    ["SI", "sí", "Si!", "Sí, confirmo", "yes", "OK", "claro que sí", "Ahí estaré"],
)
def test_positive_replies(text):
    assert parse_reply(text).intent == "confirmed"


@pytest.mark.parametrize(
    "text",
    ["NO", "no puedo", "Cancelar", "cancel please", "No podré ir"],
)
def test_negative_replies(text):
    assert parse_reply(text).intent == "declined"


@pytest.mark.parametrize(
    "text",
    ["", "   ", "?", "quizás", "si, pero no puedo", "hola"],
)
def test_unclear_replies(text):
    assert parse_reply(text).intent == "unknown"


def test_normalize_strips_accents_and_punctuation():
    assert normalize_reply("¡Sí, CONFIRMO!") == "si confirmo"


def test_reply_code_is_extracted():
    parsed = parse_reply("si ab3k9z")
    assert parsed.intent == "confirmed"
    assert parsed.code == "AB3K9Z"


def test_reply_words_are_not_mistaken_for_codes_of_other_length():
    assert parse_reply("confirmado").code is None


def test_generated_codes_use_unambiguous_alphabet():
    for _ in range(50):
        code = generate_confirmation_code()
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)


def test_rendered_message_carries_code():
    slot_start = datetime(2026, 10, 20, 19, 30, tzinfo=timezone.utc)
    message = render_confirmation_message(
        channel="sms_reply",
        code="AB3K9Z",
        slot_start=slot_start,
        expires_at=slot_start,
        locale="en",
    )
    assert "AB3K9Z" in message
    assert "Reply YES" in message

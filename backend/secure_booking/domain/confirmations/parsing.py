"""Classify free-text SMS/WhatsApp replies to a confirmation request."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

from secure_booking.domain.confirmations.templates import CODE_ALPHABET, CODE_LENGTH

POSITIVE_TERMS = frozenset(
    {
        "si",
        "sip",
        "yes",
        "y",
        "yeah",
        "yep",
        "ok",
        "okay",
        "confirmo",
        "confirmar",
        "confirmado",
        "confirmada",
        "confirm",
        "confirmed",
        "claro",
        "listo",
        "va",
        "asistire",
        "alli estare",
        "ahi estare",
        "de acuerdo",
    }
)

NEGATIVE_TERMS = frozenset(
    {
        "no",
        "nop",
        "n",
        "cancel",
        "cancelar",
        "cancelo",
        "cancela",
        "cancelado",
        "cancelada",
        "decline",
        "no puedo",
        "no podre",
        "no asistire",
        "cant",
        "cannot",
    }
)

_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_SPACES_RE = re.compile(r"\s+")
_CODE_RE = re.compile(rf"\b[{CODE_ALPHABET.lower()}]{{{CODE_LENGTH}}}\b")


@dataclass(frozen=True)
class ParsedReply:
    intent: str
    code: str | None = None


def normalize_reply(text: str) -> str:
    """Lower-case, strip accents and punctuation: ``"¡Sí, confirmo!"`` -> ``"si confirmo"``."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    ascii_text = "".join(char for char in decomposed if not unicodedata.combining(char))
    cleaned = _NON_WORD_RE.sub(" ", ascii_text.lower().replace("'", ""))
    return _SPACES_RE.sub(" ", cleaned).strip()


def _matches(normalized: str, terms: frozenset[str]) -> bool:
    padded = f" {normalized} "
    return any(f" {term} " in padded for term in terms)


def parse_reply(text: str) -> ParsedReply:
    normalized = normalize_reply(text)
    code_match = _CODE_RE.search(normalized)
    code = code_match.group(0).upper() if code_match else None
    if not normalized:
        return ParsedReply(intent="unknown", code=code)

    # Mixed replies ("si, pero no puedo") stay unknown.
    negative = _matches(normalized, NEGATIVE_TERMS)
    positive = _matches(normalized, POSITIVE_TERMS)
    if positive and not negative:
        return ParsedReply(intent="confirmed", code=code)
    if negative and not positive:
        return ParsedReply(intent="declined", code=code)
    return ParsedReply(intent="unknown", code=code)

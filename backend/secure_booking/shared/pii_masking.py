"""Customer fingerprint helpers for API responses and lookups."""

import re
from typing import Optional

_PHONE_CHARS_RE = re.compile(r"[\s().\-]")
_PHONE_RE = re.compile(r"^\+?\d{7,15}$")


def normalize_fingerprint(value: str) -> str:
    """Canonical form used as the lookup key.

    Phone numbers lose their separators (``+52 (55) 1234-5678`` -> ``+525512345678``);
    anything else (an identity hash) is trimmed and lower-cased.
    """
    stripped = value.strip()
    compact = _PHONE_CHARS_RE.sub("", stripped)
    if _PHONE_RE.match(compact):
        return compact
    return stripped.lower()


def is_phone_fingerprint(value: str) -> bool:
    return bool(_PHONE_RE.match(value))


def mask_fingerprint(fingerprint: Optional[str]) -> Optional[str]:
    """Mask a fingerprint: +525512345678 -> +52***5678, hashes keep 6 leading chars."""
    if not fingerprint:
        return fingerprint
    if is_phone_fingerprint(fingerprint):
        digits = fingerprint.lstrip("+")
        prefix = "+" if fingerprint.startswith("+") else ""
        if len(digits) <= 4:
            return prefix + "***"
        return f"{prefix}{digits[:2]}***{digits[-4:]}"
    if len(fingerprint) <= 6:
        return "***"
    return fingerprint[:6] + "***"

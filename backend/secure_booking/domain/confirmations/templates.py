from __future__ import annotations

import secrets
from datetime import datetime

# No I, O, 0 or 1: codes get read aloud and retyped from SMS.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6

CONFIRMATION_TYPES = ("sms_reply", "whatsapp_reply", "link_click")

_MESSAGES = {
    "es": {
        "reply": (
            "Tienes una reservación el {slot}. Responde SI para confirmar o NO para cancelar. "
            "Código: {code}. Vence a las {expires}."
        ),
        "link": (
            "Tienes una reservación el {slot}. Confirma aquí: {link} "
            "Código: {code}. Vence a las {expires}."
        ),
    },
    "en": {
        "reply": (
            "You have a booking on {slot}. Reply YES to confirm or NO to cancel. "
            "Code: {code}. Expires at {expires}."
        ),
        "link": (
            "You have a booking on {slot}. Confirm here: {link} "
            "Code: {code}. Expires at {expires}."
        ),
    },
}


def generate_confirmation_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def confirmation_link(base_url: str, confirmation_id: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/confirm/{confirmation_id}?code={code}"


def render_confirmation_message(
    *,
    channel: str,
    code: str,
    slot_start: datetime,
    expires_at: datetime,
    locale: str = "es",
    link: str | None = None,
) -> str:
    templates = _MESSAGES.get(locale, _MESSAGES["es"])
    template = templates["link"] if channel == "link_click" and link else templates["reply"]
    return template.format(
        slot=slot_start.strftime("%Y-%m-%d %H:%M UTC"),
        code=code,
        expires=expires_at.strftime("%H:%M UTC"),
        link=link,
    )

"""Outbound delivery of confirmation requests over SMS and WhatsApp.

The confirmation coordinator never talks to a provider directly: it builds an
``OutboundConfirmationCommand`` and hands it to whichever dispatcher the app
was wired with.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import httpx

from secure_booking.infra.metrics import metrics
from secure_booking.settings import settings
from secure_booking.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundConfirmationCommand:
    confirmation_id: str
    tenant_id: str
    hold_id: str
    channel: str
    recipient: str | None
    code: str
    message: str
    expires_at: datetime


@dataclass(frozen=True)
class DispatchResult:
    status: str
    provider_message_id: str | None = None
    error_code: str | None = None


class ConfirmationDispatcher(Protocol):
    async def send(self, command: OutboundConfirmationCommand) -> DispatchResult: ...


@dataclass
class NoopConfirmationDispatcher:
    """Keeps commands in memory; used when no provider is configured and in tests."""

    sent: list[OutboundConfirmationCommand] = field(default_factory=list)

    async def send(self, command: OutboundConfirmationCommand) -> DispatchResult:
        self.sent.append(command)
        logger.info(
            "confirmation_send_skipped",
            extra={"extra": {"mode": "noop", "channel": command.channel, "confirmation_id": command.confirmation_id}},
        )
        return DispatchResult(status="skipped", error_code="dispatch_disabled")


class TwilioConfirmationDispatcher:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.http_client = http_client
        self.breaker = breaker or CircuitBreaker(
            name="twilio",
            failure_threshold=settings.twilio_circuit_failure_threshold,
            recovery_time=settings.twilio_circuit_recovery_seconds,
            window_seconds=settings.twilio_circuit_window_seconds,
            half_open_max_calls=settings.twilio_circuit_half_open_max_calls,
        )

    async def send(self, command: OutboundConfirmationCommand) -> DispatchResult:
        if not command.recipient:
            return DispatchResult(status="failed", error_code="missing_recipient")
        sender = _sender_for_channel(command.channel)
        if not _twilio_configured() or not sender:
            logger.warning("confirmation_send_not_configured", extra={"extra": {"channel": command.channel}})
            return DispatchResult(status="failed", error_code="twilio_not_configured")

        to_number = command.recipient
        if command.channel == "whatsapp_reply":
            to_number = f"whatsapp:{to_number}"
            sender = sender if sender.startswith("whatsapp:") else f"whatsapp:{sender}"
        payload = {"To": to_number, "From": sender, "Body": command.message}
        try:
            result = await self.breaker.call(self._post_twilio, _twilio_messages_url(), payload)
        except CircuitBreakerOpenError:
            logger.warning("twilio_circuit_open", extra={"extra": {"channel": command.channel}})
            result = DispatchResult(status="failed", error_code="twilio_circuit_open")
        except _TwilioTransportError as exc:
            result = DispatchResult(status="failed", error_code=f"twilio_{exc}")
        metrics.record_confirmation_dispatch(command.channel, result.status)
        return result

    async def _post_twilio(self, url: str, payload: dict[str, str]) -> DispatchResult:
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.post(
                url,
                data=payload,
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                timeout=settings.twilio_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("twilio_request_failed", extra={"extra": {"reason": type(exc).__name__}})
            # Raised so the breaker counts the failure.
            raise _TwilioTransportError(type(exc).__name__) from exc
        finally:
            if close_client:
                await client.aclose()

        if response.status_code >= 500:
            logger.warning("twilio_request_error", extra={"extra": {"status_code": response.status_code}})
            raise _TwilioTransportError(f"status_{response.status_code}")
        if response.status_code >= 400:
            logger.warning("twilio_request_error", extra={"extra": {"status_code": response.status_code}})
            return DispatchResult(status="failed", error_code=f"twilio_status_{response.status_code}")

        provider_message_id = None
        try:
            provider_message_id = response.json().get("sid")
        except ValueError:
            logger.warning("twilio_response_parse_failed")
        return DispatchResult(status="sent", provider_message_id=provider_message_id)


class _TwilioTransportError(RuntimeError):
    pass


def resolve_confirmation_dispatcher(app_settings) -> ConfirmationDispatcher:
    if app_settings.confirmation_channel_mode != "twilio":
        return NoopConfirmationDispatcher()
    return TwilioConfirmationDispatcher()


def resolve_app_dispatcher(app_like) -> ConfirmationDispatcher | None:
    state = getattr(app_like, "state", None)
    if state is None:
        return None
    dispatcher = getattr(state, "confirmation_dispatcher", None)
    if dispatcher is not None:
        return dispatcher
    services = getattr(state, "services", None)
    if services is not None:
        return getattr(services, "confirmation_dispatcher", None)
    return None


def _sender_for_channel(channel: str) -> str | None:
    if channel == "whatsapp_reply":
        return settings.twilio_whatsapp_from
    return settings.twilio_sms_from


def _twilio_configured() -> bool:
    return bool(settings.twilio_account_sid and settings.twilio_auth_token)


def _twilio_messages_url() -> str:
    return f"https://api.twilio.com/2010-04-01/Accounts/{settings.twilio_account_sid}/Messages.json"

from datetime import datetime, timezone

import httpx
import pytest

from secure_booking.infra.communication import (
    NoopConfirmationDispatcher,
    OutboundConfirmationCommand,
    TwilioConfirmationDispatcher,
    resolve_confirmation_dispatcher,
)
from secure_booking.settings import settings
from secure_booking.shared.circuit_breaker import CircuitBreaker


def _command(channel="sms_reply", recipient="+525512345678") -> OutboundConfirmationCommand:
    return OutboundConfirmationCommand(
        confirmation_id="conf-1",
        tenant_id="00000000-0000-0000-0000-000000000001",
        hold_id="hold-1",
        channel=channel,
        recipient=recipient,
        code="AB3K9Z",
        message="Confirma tu reserva. Responde SI o NO. Codigo AB3K9Z",
        expires_at=datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture()
def twilio_settings(monkeypatch):
    monkeypatch.setattr(settings, "twilio_account_sid", "AC123")
    monkeypatch.setattr(settings, "twilio_auth_token", "auth-token")
    monkeypatch.setattr(settings, "twilio_sms_from", "+15550001111")
    monkeypatch.setattr(settings, "twilio_whatsapp_from", "+15550002222")


def _dispatcher(handler, **breaker_kwargs) -> TwilioConfirmationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker(name="twilio-test", **breaker_kwargs)
    return TwilioConfirmationDispatcher(http_client=client, breaker=breaker)


@pytest.mark.anyio
async def test_twilio_sms_send(twilio_settings):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"sid": "SM123"})

    result = await _dispatcher(handler).send(_command())

    assert result.status == "sent"
    assert result.provider_message_id == "SM123"
    assert requests[0].url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    body = requests[0].content.decode()
    assert "To=%2B525512345678" in body
    assert "From=%2B15550001111" in body


@pytest.mark.anyio
async def test_twilio_whatsapp_uses_prefixed_numbers(twilio_settings):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"sid": "SM456"})

    result = await _dispatcher(handler).send(_command(channel="whatsapp_reply"))

    assert result.status == "sent"
    body = requests[0].content.decode()
    assert "To=whatsapp%3A%2B525512345678" in body
    assert "From=whatsapp%3A%2B15550002222" in body


@pytest.mark.anyio
async def test_twilio_client_error_is_reported_without_opening_circuit(twilio_settings):
    dispatcher = _dispatcher(lambda request: httpx.Response(400, json={"code": 21211}), failure_threshold=1)

    result = await dispatcher.send(_command())

    assert result.status == "failed"
    assert result.error_code == "twilio_status_400"
    assert dispatcher.breaker.state == "closed"


@pytest.mark.anyio
async def test_twilio_server_errors_open_circuit(twilio_settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    dispatcher = _dispatcher(handler, failure_threshold=2, recovery_time=60)

    first = await dispatcher.send(_command())
    second = await dispatcher.send(_command())
    third = await dispatcher.send(_command())

    assert first.error_code == "twilio_status_503"
    assert second.status == "failed"
    assert third.error_code == "twilio_circuit_open"
    assert len(calls) == 2


@pytest.mark.anyio
async def test_twilio_without_credentials_does_not_call_provider(monkeypatch):
    monkeypatch.setattr(settings, "twilio_account_sid", None)
    monkeypatch.setattr(settings, "twilio_auth_token", None)

    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("provider called")

    result = await _dispatcher(handler).send(_command())

    assert result.status == "failed"
    assert result.error_code == "twilio_not_configured"


@pytest.mark.anyio
async def test_missing_recipient_fails_fast(twilio_settings):
    result = await _dispatcher(lambda request: httpx.Response(201)).send(_command(recipient=None))
    assert result.error_code == "missing_recipient"


def test_dispatcher_resolution(monkeypatch):
    monkeypatch.setattr(settings, "confirmation_channel_mode", "off")
    assert isinstance(resolve_confirmation_dispatcher(settings), NoopConfirmationDispatcher)

    monkeypatch.setattr(settings, "confirmation_channel_mode", "twilio")
    assert isinstance(resolve_confirmation_dispatcher(settings), TwilioConfirmationDispatcher)

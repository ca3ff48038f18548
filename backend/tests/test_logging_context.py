import json
import logging

from fastapi.testclient import TestClient

from secure_booking.infra.logging import (
    RedactingJsonFormatter,
    clear_log_context,
    fingerprint_ref,
    update_log_context,
)
from secure_booking.main import create_app
from secure_booking.settings import settings


def _format(message: str, *args, **extra) -> dict:
    record = logging.LogRecord("secure_booking.test", logging.INFO, __file__, 1, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(RedactingJsonFormatter().format(record))


def test_unhandled_exception_logs_request_id(caplog):
    app = create_app(settings)

    @app.get("/_test/boom")
    async def boom():  # pragma: no cover - executed in test client
        raise RuntimeError("boom")

    # configure_logging() in create_app swaps out root handlers.
    logging.getLogger().addHandler(caplog.handler)
    caplog.set_level(logging.ERROR)
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/_test/boom", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Unexpected error"
    error_records = [record for record in caplog.records if record.message == "unhandled_exception"]
    assert error_records
    assert getattr(error_records[0], "request_id", None) == "req-123"


def test_formatter_redacts_phones_and_tokens():
    payload = _format(
        "reply from %s with Bearer abc.def",
        "+52 55 1234 5678",
        extra={"recipient": "+525512345678", "note": "call 555-123-4567 or ops@example.com"},
    )

    assert "5678" not in payload["message"]
    assert "abc.def" not in payload["message"]
    assert payload["recipient"] == "[REDACTED]"
    assert payload["note"] == "call [REDACTED_PHONE] or [REDACTED_EMAIL]"


def test_formatter_merges_request_context():
    update_log_context(request_id="req-9", tenant_id="tenant-a", status_code=None)
    try:
        payload = _format("request", extra={"hold_id": "h-1"})
    finally:
        clear_log_context()

    assert payload["request_id"] == "req-9"
    assert payload["tenant_id"] == "tenant-a"
    assert "status_code" not in payload
    assert payload["hold_id"] == "h-1"


def test_fingerprint_ref_is_short_and_stable():
    ref = fingerprint_ref("+525512345678")
    assert ref == fingerprint_ref("+525512345678")
    assert len(ref) == 12
    assert fingerprint_ref(None) is None

from __future__ import annotations

from dataclasses import dataclass

from secure_booking.infra.communication import ConfirmationDispatcher, resolve_confirmation_dispatcher
from secure_booking.infra.metrics import Metrics, configure_metrics
from secure_booking.infra.security import RateLimiter, create_rate_limiter


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    rate_limiter: RateLimiter
    confirmation_dispatcher: ConfirmationDispatcher
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        rate_limiter=create_rate_limiter(app_settings),
        confirmation_dispatcher=resolve_confirmation_dispatcher(app_settings),
        metrics=metrics_client,
    )


import logging
import secrets
import uuid

from fastapi import Header, HTTPException, Request, status
from fastapi.security.utils import get_authorization_scheme_param

from secure_booking.infra.communication import (
    ConfirmationDispatcher,
    resolve_app_dispatcher,
    resolve_confirmation_dispatcher,
)
from secure_booking.infra.logging import update_log_context
from secure_booking.settings import settings

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


async def get_tenant_id(
    request: Request,
    x_tenant_id: str | None = Header(None, alias=TENANT_HEADER),
) -> uuid.UUID:
    if not x_tenant_id:
        tenant_id = _app_settings(request).default_tenant_id
    else:
        try:
            tenant_id = uuid.UUID(x_tenant_id)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Tenant-ID header"
            ) from exc
    request.state.tenant_id = tenant_id
    update_log_context(tenant_id=str(tenant_id))
    return tenant_id


async def require_admin(request: Request) -> str:
    """Bearer check against ``admin_token``; returns the caller label for audit fields."""
    token = _app_settings(request).admin_token
    if not token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
    scheme, provided = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not provided or not secrets.compare_digest(provided, token):
        logger.warning("admin_auth_failed", extra={"extra": {"path": request.url.path}})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    actor = request.headers.get("X-Admin-User") or "admin"
    update_log_context(actor=actor)
    return actor


def get_confirmation_dispatcher(request: Request) -> ConfirmationDispatcher:
    dispatcher = resolve_app_dispatcher(request.app)
    if dispatcher is None:
        dispatcher = resolve_confirmation_dispatcher(_app_settings(request))
        request.app.state.confirmation_dispatcher = dispatcher
    return dispatcher

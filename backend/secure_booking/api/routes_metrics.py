import secrets

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.security.utils import get_authorization_scheme_param

router = APIRouter()


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not getattr(metrics_client, "enabled", False):
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "metrics_token", None) if app_settings else None
    require_token = bool(token) or (app_settings is not None and app_settings.app_env == "prod")
    if require_token:
        if not token:
            raise HTTPException(status_code=500, detail="Metrics token misconfigured")
        scheme, provided = get_authorization_scheme_param(request.headers.get("Authorization"))
        if scheme.lower() != "bearer" or not provided:
            provided = request.query_params.get("token")
        if not provided or not secrets.compare_digest(provided, token):
            raise HTTPException(status_code=401, detail="Unauthorized")

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)

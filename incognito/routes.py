import logging
from datetime import datetime, timezone

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from incognito.errors import ConfigurationMissing
from incognito.models import ContactRequest
from incognito.proxy.forward import forward_request
from incognito.state import ProxySettings

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/api")
async def api_status(request: Request):
    settings = request.app.state.proxy.settings
    return {
        "status": "ok",
        "service": settings.service_name,
        "message": "API is running successfully.",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/api/contact")
async def contact(request: Request, body: ContactRequest):
    if not body.is_complete():
        return JSONResponse(
            status_code=400,
            content={
                "error": "Validation Failed",
                "message": "Name, email, and message are required fields.",
            },
        )

    settings = request.app.state.proxy.settings
    if not settings.contact_secret_key:
        logger.error(
            "[Contact] Configuration Error: CONTACT_SECRET_KEY is missing for external service."
        )
        raise ConfigurationMissing(
            detail="External communication key is not set. Contact service administrator.",
            reason="CONTACT_SECRET_KEY unset",
        )

    logger.info(f"[Contact] Message received from {body.name}")
    return {
        "success": True,
        "message": f"Thank you, {body.name}. Your message has been received.",
        "receivedData": {"name": body.name, "email": body.email},
    }


async def proxy_all(request: Request):
    """Catch-all proxy endpoint; the resolver works out the target."""
    return await forward_request(request)


def register_proxy_routes(app: FastAPI, settings: ProxySettings) -> None:
    """Mount the proxy endpoint on every prefix the resolver understands."""
    paths = [
        f"{settings.path_prefix}{{encoded:path}}",
        settings.path_prefix.rstrip("/"),
        settings.body_path,
        f"{settings.rewrite_prefix}{{target:path}}",
    ]
    seen = set()
    for path in paths:
        if not path or path in seen:
            continue
        seen.add(path)
        app.add_api_route(
            path,
            proxy_all,
            methods=PROXY_METHODS,
            include_in_schema=False,
        )

"""
FastAPI application for PromptStudio.

Serves the JSON API the web client talks to, plus the public image proxy
under /api/assets/.
"""

from __future__ import annotations

import logging
import mimetypes
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from promptstudio.api.resources import artists_router, chains_router, inspirations_router
from promptstudio.auth.context import AuthContext
from promptstudio.auth.policies import get_services, require_admin, require
from promptstudio.auth.capabilities import Action
from promptstudio.auth.routes import router as auth_router, users_router
from promptstudio.config import Settings, get_settings
from promptstudio.core.errors import InvalidFormat, ServiceError
from promptstudio.core.models import Role
from promptstudio.core.utils import generate_id
from promptstudio.integrations.sentry import init_sentry
from promptstudio.services.container import Services, build_services
from promptstudio.storage.base import Collections

logger = logging.getLogger(__name__)

# Managed keys embed a timestamp, so an object never changes under its key
ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"


# =============================================================================
# Lifespan
# =============================================================================


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup app resources."""
    settings: Settings = app.state.settings
    configure_logging(settings)

    if init_sentry(settings):
        logger.info("Sentry error tracking enabled")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    await app.state.services.bootstrap()

    logger.info("PromptStudio API starting in %s mode", settings.environment)

    yield

    logger.info("PromptStudio API shutting down")


# =============================================================================
# Error Handling
# =============================================================================


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


# =============================================================================
# Admin
# =============================================================================

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


class GuestSettingRequest(BaseModel):
    passcode: str


@admin_router.put("/guest-setting")
async def set_guest_passcode(
    data: GuestSettingRequest,
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    """Change the shared guest passcode, creating the guest account if needed."""
    if not data.passcode:
        raise InvalidFormat("Missing passcode")
    guest = await services.credentials.ensure_account(
        services.settings.guest_username, data.passcode, Role.GUEST
    )
    await services.credentials.change_password(guest.id, data.passcode)
    return {"success": True}


@admin_router.get("/stats")
async def usage_stats(
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    metadata = services.storage.metadata
    users = await services.credentials.list_users()
    quota = services.ledger.ceiling
    return {
        "totalUsers": len(users),
        "totalChains": len(await metadata.query(Collections.CHAINS, limit=100_000)),
        "totalArtists": len(await metadata.query(Collections.ARTISTS, limit=100_000)),
        "totalInspirations": len(await metadata.query(Collections.INSPIRATIONS, limit=100_000)),
        "totalStorageUsage": sum(u.storage_usage for u in users),
        "storageQuota": quota,
        "quotaPolicy": services.ledger.policy.value,
        "users": [
            {
                "id": u.id,
                "username": u.username,
                "role": u.role.value,
                "storageUsage": u.storage_usage,
                "quotaExempt": services.ledger.exempt(u),
                "percentUsed": round(100 * u.storage_usage / quota, 1) if quota else 0,
            }
            for u in users
        ],
    }


@admin_router.post("/reclaim-retry")
async def retry_reclaims(
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    """Retry asset deletions that failed after their record was committed."""
    return await services.lifecycle.retry_pending_reclaims()


# =============================================================================
# Assets
# =============================================================================

assets_router = APIRouter(prefix="/api", tags=["assets"])


def extension_for(upload: UploadFile) -> str:
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise InvalidFormat("Only image uploads are accepted")
    ext = content_type.split("/", 1)[1].split("+", 1)[0]
    if upload.filename and "." in upload.filename:
        ext = upload.filename.rsplit(".", 1)[1]
    return ext.lower()


def upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


@assets_router.get("/assets/{key:path}")
async def get_asset(
    key: str,
    request: Request,
    services: Services = Depends(get_services),
):
    """Public image proxy. No session needed so <img> tags and canvases work."""
    store = services.assets
    store.ensure_configured()

    headers = {
        "Cache-Control": ASSET_CACHE_CONTROL,
        "Access-Control-Allow-Origin": "*",
    }

    head = await store.head(key)
    if head is not None and request.headers.get("if-none-match") == head.etag:
        return Response(status_code=304, headers={**headers, "ETag": head.etag})

    obj = await store.get(key)
    content_type = obj.content_type
    if content_type == "application/octet-stream":
        content_type = mimetypes.guess_type(key)[0] or content_type
    return Response(
        content=obj.body,
        media_type=content_type,
        headers={**headers, "ETag": obj.etag},
    )


@assets_router.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    folder: str | None = Form(None),
    ctx: AuthContext = Depends(require(Action.UPLOAD)),
    services: Services = Depends(get_services),
):
    """Store an uploaded image and return its managed path."""
    size = upload_size(file)
    ref = await services.lifecycle.upload(
        ctx.user,
        file.file,
        size,
        ext=extension_for(file),
        content_type=file.content_type,
        folder=folder or "uploads",
        entity_id=generate_id(),
    )
    return {"success": True, "url": ref.to_value(), "key": ref.key, "size": size}


# =============================================================================
# App Setup
# =============================================================================


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    Build the app. `services` is created at startup from settings unless
    one is passed in (tests do this to control storage and the clock).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="PromptStudio API",
        description="Prompt chains, artist library and inspiration gallery",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceError, service_error_handler)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "promptstudio-api"}

    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(admin_router)
    app.include_router(chains_router)
    app.include_router(artists_router)
    app.include_router(inspirations_router)
    app.include_router(assets_router)
    return app


app = create_app()

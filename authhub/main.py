from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from .config import settings
from .database import dispose_engine
from .errors import register_exception_handlers
from .health import readiness_state
from .observability import configure_observability
from .redis_client import close_redis_client, create_redis_client
from .routers import auth, user

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.redis = create_redis_client()
    logger.info("State store client created")
    try:
        yield
    finally:
        close_redis_client(app.state.redis)
        dispose_engine()
        logger.info("Shut down store clients")


app = FastAPI(title="authhub", lifespan=lifespan)
app.state.redis = None
configure_observability(app)
register_exception_handlers(app)

if settings.trusted_hosts:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

if settings.security_https_redirect:
    app.add_middleware(HTTPSRedirectMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_DOCS_PATHS = {"/docs", "/redoc", "/openapi.json", "/docs/oauth2-redirect"}
_CSP_POLICY = (
    "default-src 'self'; "
    "base-uri 'self'; "
    "frame-ancestors 'none'; "
    "object-src 'none'; "
    "form-action 'self'"
)


def _is_auth_path(path: str) -> bool:
    return path.startswith("/api/") and "/auth/" in path


def _resolve_api_version(path: str, header_version: str | None) -> tuple[str, bool]:
    supported = set(settings.api_supported_versions)
    latest = settings.api_latest_version
    normalized = path.strip("/")
    path_parts = normalized.split("/") if normalized else []

    if len(path_parts) >= 2 and path_parts[0] == "api" and path_parts[1] in supported:
        return path_parts[1], False

    if header_version in supported:
        return str(header_version), False

    return latest, True


@app.middleware("http")
async def api_version_middleware(request: Request, call_next):
    version, defaulted = _resolve_api_version(
        request.url.path, request.headers.get("x-api-version")
    )
    request.state.api_version = version
    response = await call_next(request)
    response.headers["X-API-Version"] = version
    if defaulted:
        response.headers["X-API-Version-Defaulted"] = "true"
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    if settings.security_csp_enabled and request.url.path not in _DOCS_PATHS:
        response.headers.setdefault("Content-Security-Policy", _CSP_POLICY)
    if settings.security_hsts_enabled and request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security",
            f"max-age={settings.security_hsts_max_age_seconds}; includeSubDomains",
        )
    if _is_auth_path(request.url.path):
        response.headers["Cache-Control"] = "no-store"
        response.headers["Pragma"] = "no-cache"
    return response


def _include_api_routers() -> None:
    if settings.api_latest_version not in settings.api_supported_versions:
        raise RuntimeError("api_latest_version must be included in api_supported_versions")
    for router in (auth.router, user.router):
        app.include_router(router, prefix=f"/api/{settings.api_latest_version}")


_include_api_routers()


@app.get("/", include_in_schema=False)
def root():
    return {"message": "authhub API is running"}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready(request: Request):
    is_ready, checks = readiness_state(request.app.state.redis)
    if not is_ready:
        raise HTTPException(
            status_code=503,
            detail={
                "detail": "Service dependencies are not ready",
                "error_code": "service_not_ready",
            },
        )
    return {"status": "ok", "checks": checks}

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ticketgate.api.error_handling import register_exception_handlers
from ticketgate.api.routes import api_router, reissue_extended_carrier, router
from ticketgate.config import get_settings
from ticketgate.logging import get_logger, set_correlation_id
from ticketgate.service.runtime import Runtime, build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_DEFAULT_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application.

    With ``runtime`` the app uses it as-is (tests); otherwise one is built from
    the environment at startup and closed at shutdown.
    """
    settings = runtime.settings if runtime is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = build_runtime(settings)
        logger.info("app_started", version=__version__)
        yield
        try:
            if owned:
                await app.state.runtime.close()
            else:
                await app.state.runtime.events.drain()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))

    app = FastAPI(title="Ticketgate", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    origins: List[str] = settings.cors_allow_origins or _DEFAULT_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith(("/v1/", "/api/")):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    @app.middleware("http")
    async def reissue_session_cookie(request, call_next):
        response = await call_next(request)
        reissue_extended_carrier(request, response)
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(api_router)

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()

from contextlib import asynccontextmanager
from functools import lru_cache
import logging
import time

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from atsguard.api.routers.ats import build_ats_router
from atsguard.api.routers.system import build_system_router
from atsguard.auth import require_authenticated_user
from atsguard.bedrock_runtime import BedrockDraftingOrchestrator, validate_bedrock_model_ids
from atsguard.config import build_engine_config, settings
from atsguard.observability import (
    configure_logging,
    get_request_id,
    normalize_request_id,
    reset_request_id,
    sanitize_for_logging,
    set_request_id,
)

logger = logging.getLogger("atsguard.api")

ROUTE_PREFIXES = ("", "/api")
UNHANDLED_ERROR = "Error generando ATS"
UNHANDLED_DETAILS = "Error interno del servidor. Reporta el request_id al equipo de soporte."


@lru_cache(maxsize=1)
def _cached_drafting_orchestrator() -> BedrockDraftingOrchestrator:
    return BedrockDraftingOrchestrator(settings=settings)


def get_drafting_orchestrator() -> BedrockDraftingOrchestrator:
    return _cached_drafting_orchestrator()


def _drafting_orchestrator() -> BedrockDraftingOrchestrator:
    # Resolved at call time so tests can monkeypatch the module-level getter.
    return get_drafting_orchestrator()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    validate_bedrock_model_ids(settings)
    yield
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    engine_config = build_engine_config(settings)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", settings.request_id_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = time.perf_counter()

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": sanitize_for_logging(dict(request.query_params)),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
            )
            return response
        except Exception:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.exception(
                "request_failed",
                extra={
                    "event": "request_failed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": elapsed_ms,
                },
            )
            raise
        finally:
            reset_request_id(token)

    @app.exception_handler(HTTPException)
    async def error_body_handler(request: Request, exc: HTTPException):
        # Service errors carry {"error", "details"} and are returned as the body itself.
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None) or get_request_id()
        return JSONResponse(
            status_code=500,
            content={"error": UNHANDLED_ERROR, "details": UNHANDLED_DETAILS, "request_id": request_id},
            headers={settings.request_id_header: request_id},
        )

    system_router = build_system_router(engine_config=engine_config)
    ats_router = build_ats_router(
        get_drafting_orchestrator=_drafting_orchestrator,
        engine_config=engine_config,
    )
    for prefix in ROUTE_PREFIXES:
        app.include_router(system_router, prefix=prefix)
        app.include_router(ats_router, prefix=prefix, dependencies=[Depends(require_authenticated_user)])

    return app


app = create_app()

from __future__ import annotations

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from atsguard.config import EngineConfig, settings


_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "ok": None,
    "payload": None,
}


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    now = time.time()
    ts = float(_ready_cache.get("ts") or 0.0)
    if now - ts > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    if isinstance(payload, dict):
        return payload
    return None


def reset_ready_cache() -> None:
    _ready_cache.update({"ts": 0.0, "ok": None, "payload": None})


def _engine_config_problems(config: EngineConfig) -> list[str]:
    problems: list[str] = []
    if config.min_hazards < 1:
        problems.append("min_hazards must be at least 1")
    if config.min_steps < 1:
        problems.append("min_steps must be at least 1")
    if config.max_hazards < config.min_hazards:
        problems.append("max_hazards must not be lower than min_hazards")
    if config.max_recommendations < 0:
        problems.append("max_recommendations must not be negative")
    return problems


def build_system_router(*, engine_config: EngineConfig) -> APIRouter:
    router = APIRouter()

    @router.get("/")
    def root() -> dict[str, str]:
        return {"service": "ats-guardrail-backend", "status": "running"}

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.app_env}

    @router.get("/ready", response_model=None)
    def ready() -> JSONResponse:
        cached = _cache_get()
        if cached is not None:
            ok = bool(_ready_cache.get("ok"))
            return JSONResponse(status_code=200 if ok else 503, content=cached)

        checks: dict[str, dict[str, object]] = {}
        payload: dict[str, object] = {
            "status": "ready",
            "environment": settings.app_env,
            "checks": checks,
        }

        missing_models = [
            name
            for name, value in (
                ("BEDROCK_MODEL_ID", settings.bedrock_model_id),
                ("BEDROCK_LITE_MODEL_ID", settings.bedrock_lite_model_id),
            )
            if not str(value or "").strip()
        ]
        checks["drafting"] = {"ok": not missing_models, "region": settings.aws_region}
        if missing_models:
            checks["drafting"]["missing"] = missing_models

        problems = _engine_config_problems(engine_config)
        checks["engine"] = {"ok": not problems}
        if problems:
            checks["engine"]["errors"] = problems

        ok = not missing_models and not problems
        if not ok:
            payload["status"] = "not_ready"
        _cache_set(ok, payload)
        return JSONResponse(status_code=200 if ok else 503, content=payload)

    return router

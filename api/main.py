#!/usr/bin/env python3
import logging
import os
import time
from typing import List, Literal, Optional
from uuid import uuid4

import anyio
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.auth import AuthGate
from api.errors import (
    ApiError,
    InternalError,
    RateLimitExceeded,
    UpstreamError,
    ValidationError,
    error_envelope,
    success_envelope,
    utc_timestamp,
)
from api.tasks import drain, fire_and_forget
from config.settings import get_settings
from db import sqlite as db_sqlite
from db.accounts import AccountStore
from db.cache import RedisCache
from db.tracks import TrackStore
from db.usage_log import UsageLog
from engine.audio_analysis import AudioAnalyzer
from engine.errors import CollaboratorDegraded
from engine.models import STEP_FAILED, WindowKind
from engine.paths import build_engine_paths, ensure_dir
from engine.pipeline import RequestPipeline
from engine.rate_limiter import RateLimiter
from engine.runtime import get_runtime_info
from engine.search_adapters import YouTubeSearchAdapter, validate_and_extract_id
from engine.understanding import UnderstandingClient
from engine.usage import UsageRecorder

APP_NAME = "MusicForge API"
_TRUST_PROXY = os.environ.get("MUSICFORGE_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}
_PROCESS_STARTED = time.monotonic()

ANALYSIS_TYPES = ("bpm", "key", "energy", "waveform")


def _setup_logging(paths, level="INFO"):
    ensure_dir(paths.log_dir)
    root = logging.getLogger("")
    log_path = paths.log_file
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    has_file = False
    has_stream = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_stream = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    if not has_stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)


class ProcessMusicPayload(BaseModel):
    request: str = Field(..., min_length=1, max_length=1000)
    maxTracks: int = Field(10, ge=1, le=50)
    analyzeAudio: bool = True
    downloadQuality: Literal["standard", "high"] = "standard"


class AnalyzePayload(BaseModel):
    youtubeUrl: Optional[str] = None
    audioUrl: Optional[str] = None
    analysisType: List[Literal["bpm", "key", "energy", "waveform"]] = Field(
        default_factory=lambda: list(ANALYSIS_TYPES)
    )


app = FastAPI(
    title=APP_NAME,
    description="Natural-language music search with tempo, key and energy analysis.",
    version=get_settings().version,
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_origins),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "X-Request-Id"],
    expose_headers=[
        "X-Request-Id",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "X-RateLimit-Burst-Limit",
        "X-RateLimit-Burst-Remaining",
        "X-RateLimit-Burst-Reset",
    ],
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "unknown"


def _rate_limit_headers(decision):
    return {
        "X-RateLimit-Limit": str(decision.limit_sustained),
        "X-RateLimit-Remaining": str(decision.remaining_sustained),
        "X-RateLimit-Reset": str(decision.reset_sustained),
        "X-RateLimit-Burst-Limit": str(decision.limit_burst),
        "X-RateLimit-Burst-Remaining": str(decision.remaining_burst),
        "X-RateLimit-Burst-Reset": str(decision.reset_burst),
    }


def _rate_limit_meta(decision):
    if decision is None:
        return None
    return {
        "limit": decision.limit_sustained,
        "remaining": decision.remaining_sustained,
        "resetTime": decision.reset_sustained,
        "burstLimit": decision.limit_burst,
        "burstRemaining": decision.remaining_burst,
        "burstResetTime": decision.reset_burst,
    }


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid4())
    request.state.request_id = request_id
    started = time.monotonic()
    try:
        response = await call_next(request)
    except Exception:
        logging.exception("Unhandled error method=%s path=%s request_id=%s", request.method, request.url.path, request_id)
        response = JSONResponse(
            status_code=500,
            content=error_envelope("INTERNAL_ERROR", "An internal error occurred", request_id=request_id),
        )
    latency_ms = int((time.monotonic() - started) * 1000)
    response.headers["X-Request-Id"] = request_id

    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        response.headers.update(_rate_limit_headers(decision))

    user = getattr(request.state, "user", None)
    recorder = getattr(request.app.state, "usage_recorder", None)
    if user is not None and recorder is not None:
        api_key = getattr(request.state, "api_key", None)
        fire_and_forget(
            recorder.record,
            user.id,
            api_key.id if api_key else None,
            request.url.path,
            request.method,
            response.status_code,
            latency_ms,
            label="usage_record",
        )
    return response


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logging.error("API error code=%s message=%s request_id=%s", exc.code, exc.message, _request_id(request))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.code, exc.message, request_id=_request_id(request), details=exc.details),
        headers=exc.headers or None,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query")]
        errors.append({"field": ".".join(loc) or "body", "message": str(err.get("msg", "invalid value"))})
    first = errors[0] if errors else {"field": "body", "message": "invalid request"}
    return JSONResponse(
        status_code=400,
        content=error_envelope(
            "INVALID_REQUEST",
            f"{first['field']}: {first['message']}",
            request_id=_request_id(request),
            details={"errors": errors},
        ),
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(code, message, request_id=_request_id(request)),
    )


@app.on_event("startup")
async def startup():
    settings = get_settings()
    app.state.settings = settings
    app.state.paths = build_engine_paths(settings.db_path)
    _setup_logging(app.state.paths, settings.log_level)
    db_path = app.state.paths.db_path
    db_sqlite.initialize(db_path)

    cache = RedisCache(settings.redis_url)
    app.state.cache = cache
    app.state.accounts = AccountStore(db_path)
    app.state.auth_gate = AuthGate(app.state.accounts, cache)
    app.state.rate_limiter = RateLimiter(cache)
    app.state.usage_log = UsageLog(db_path)
    app.state.usage_recorder = UsageRecorder(app.state.usage_log, cache)
    app.state.track_store = TrackStore(db_path)
    app.state.pipeline = RequestPipeline(
        UnderstandingClient(
            settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.collaborator_timeout_seconds,
            cache=cache,
        ),
        YouTubeSearchAdapter(cache=cache, socket_timeout=settings.collaborator_timeout_seconds),
        AudioAnalyzer(
            settings.audd_api_key,
            timeout_seconds=settings.analysis_timeout_seconds,
            cache=cache,
        ),
        app.state.track_store,
        collaborator_timeout=settings.collaborator_timeout_seconds,
        # Analysis runs two providers back to back in the worst case.
        analysis_timeout=settings.analysis_timeout_seconds * 2,
    )
    if not settings.openai_api_key:
        logging.warning("OPENAI_API_KEY not set; requests will use single-term fallback queries")
    logging.info("%s %s started env=%s db=%s", APP_NAME, settings.version, settings.env, db_path)


@app.on_event("shutdown")
async def shutdown():
    await drain(timeout=5.0)
    cache = getattr(app.state, "cache", None)
    if cache is not None:
        cache.close()


async def require_api_key(request: Request):
    """Authenticate the caller, then count the attempt against its plan."""
    gate = request.app.state.auth_gate
    user, api_key = await anyio.to_thread.run_sync(gate.resolve, request.headers.get("x-api-key"))
    request.state.user = user
    request.state.api_key = api_key
    fire_and_forget(gate.touch, api_key.id, label="touch_last_used")

    decision = await anyio.to_thread.run_sync(request.app.state.rate_limiter.check, user.id, user.plan)
    request.state.rate_limit = decision
    if not decision.allowed:
        if decision.exceeded_window is WindowKind.SUSTAINED:
            raise RateLimitExceeded("sustained", decision.limit_sustained, decision.reset_sustained)
        raise RateLimitExceeded("burst", decision.limit_burst, decision.reset_burst)
    return user, api_key


@app.get("/")
async def root():
    settings = get_settings()
    return {
        "name": APP_NAME,
        "version": settings.version,
        "description": "Natural-language music search with tempo, key and energy analysis.",
        "documentation": "/docs",
        "endpoints": {
            "health": "/health",
            "process": "POST /v1/music/process",
            "search": "GET /v1/music/search",
            "analyze": "POST /v1/music/analyze",
            "usage": "GET /v1/usage",
        },
    }


async def _store_health(request: Request):
    db_path = getattr(getattr(request.app.state, "paths", None), "db_path", None)
    db_ok = await anyio.to_thread.run_sync(db_sqlite.ping, db_path)
    cache = getattr(request.app.state, "cache", None)
    cache_ok = bool(cache is not None and await anyio.to_thread.run_sync(cache.ping))
    return db_ok, cache_ok


@app.get("/health")
async def health(request: Request):
    settings = get_settings()
    db_ok, cache_ok = await _store_health(request)
    healthy = db_ok and cache_ok
    if not healthy:
        logging.error("Health check failed database=%s redis=%s", db_ok, cache_ok)
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utc_timestamp(),
        "version": settings.version,
        "uptime": round(time.monotonic() - _PROCESS_STARTED, 3),
        "runtime": get_runtime_info(),
        "services": {
            "database": "healthy" if db_ok else "unhealthy",
            "redis": "healthy" if cache_ok else "unhealthy",
            "external_apis": {
                "openai": "configured" if settings.openai_api_key else "not_configured",
                "youtube": "configured" if settings.youtube_api_key else "yt-dlp",
                "audd": "configured" if settings.audd_api_key else "not_configured",
            },
        },
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)


@app.get("/health/ready")
async def health_ready(request: Request):
    db_ok, cache_ok = await _store_health(request)
    if db_ok and cache_ok:
        return {"status": "ready", "timestamp": utc_timestamp()}
    failing = [name for name, ok in (("database", db_ok), ("redis", cache_ok)) if not ok]
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "timestamp": utc_timestamp(), "error": f"unavailable: {', '.join(failing)}"},
    )


@app.get("/health/live")
async def health_live():
    return {
        "status": "alive",
        "timestamp": utc_timestamp(),
        "uptime": round(time.monotonic() - _PROCESS_STARTED, 3),
    }


def _write_request_summary(request: Request, query, run, status, elapsed_ms, error_message=None):
    user = request.state.user
    api_key = request.state.api_key
    result = None
    processed = None
    if run is not None:
        processed = run.processed_query.to_dict() if run.processed_query else None
        result = {
            "tracks": [c.to_dict() for c in run.candidates],
            "processingSteps": [s.to_dict() for s in run.steps],
        }
    fire_and_forget(
        _safe_write_request,
        request.app.state.usage_log,
        {
            "request_id": _request_id(request),
            "user_id": user.id,
            "api_key_id": api_key.id,
            "original_query": query,
            "processed_query": processed,
            "status": status,
            "result": result,
            "processing_time_ms": elapsed_ms,
            "error_message": error_message,
        },
        label="music_request_log",
    )


def _safe_write_request(usage_log, fields):
    try:
        usage_log.write_request(**fields)
    except Exception:
        logging.exception("Failed to log music request request_id=%s", fields.get("request_id"))


@app.post("/v1/music/process")
async def process_music(payload: ProcessMusicPayload, request: Request, auth=Depends(require_api_key)):
    user, _api_key = auth
    started = time.monotonic()
    query = payload.request.strip()
    if not query:
        raise ValidationError("request: Request field is required and must be a non-empty string")
    logging.info("Processing music request request_id=%s user=%s", _request_id(request), user.id)
    try:
        run = await request.app.state.pipeline.run(
            query,
            max_tracks=payload.maxTracks,
            analyze_audio=payload.analyzeAudio,
            download_quality=payload.downloadQuality,
        )
    except Exception as exc:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logging.exception("Music processing error request_id=%s", _request_id(request))
        _write_request_summary(request, query, None, "failed", elapsed_ms, error_message=str(exc))
        raise InternalError("Failed to process music request", code="PROCESSING_ERROR") from exc

    elapsed_ms = int((time.monotonic() - started) * 1000)
    degraded = any(step.status == STEP_FAILED for step in run.steps)
    _write_request_summary(request, query, run, "completed", elapsed_ms)
    logging.info(
        "Music request completed request_id=%s tracks=%s confidence=%s degraded=%s time_ms=%s",
        _request_id(request),
        len(run.candidates),
        run.confidence,
        degraded,
        elapsed_ms,
    )
    return success_envelope(
        run.to_result(),
        request_id=_request_id(request),
        processingTime=elapsed_ms,
        rateLimit=_rate_limit_meta(getattr(request.state, "rate_limit", None)),
    )


@app.get("/v1/music/search")
async def search_music(
    request: Request,
    query: Optional[str] = Query(None),
    maxResults: int = Query(10, ge=1, le=50),
    duration: Optional[Literal["short", "medium", "long"]] = Query(None),
    order: Literal["relevance", "date"] = Query("relevance"),
    auth=Depends(require_api_key),
):
    if not (query or "").strip():
        raise ValidationError("Query parameter is required", code="MISSING_QUERY")
    pipeline = request.app.state.pipeline
    try:
        results = await pipeline.call(
            "search",
            pipeline.search.search_music,
            query.strip(),
            maxResults,
            {"duration": duration, "order": order},
        )
    except CollaboratorDegraded as exc:
        logging.warning("Search error request_id=%s error=%s", _request_id(request), exc)
        raise UpstreamError("Failed to search music", code="SEARCH_ERROR") from exc
    return success_envelope(results, request_id=_request_id(request))


def _filter_analysis(analysis, analysis_types):
    out = {}
    if "bpm" in analysis_types and analysis.get("bpm"):
        out["bpm"] = analysis["bpm"]
        out["tempoConfidence"] = analysis.get("tempoConfidence")
    if "key" in analysis_types and analysis.get("musicalKey"):
        out["musicalKey"] = analysis["musicalKey"]
        out["camelotKey"] = analysis.get("camelotKey")
        out["keyConfidence"] = analysis.get("keyConfidence")
    if "energy" in analysis_types and analysis.get("energyLevel") is not None:
        out["energyLevel"] = analysis["energyLevel"]
    if "waveform" in analysis_types and analysis.get("waveformPeaks"):
        out["waveformPeaks"] = analysis["waveformPeaks"]
    return out


@app.post("/v1/music/analyze")
async def analyze_audio(payload: AnalyzePayload, request: Request, auth=Depends(require_api_key)):
    pipeline = request.app.state.pipeline
    audio_url = (payload.audioUrl or "").strip() or None
    video_id = None
    if payload.youtubeUrl and not audio_url:
        video_id = validate_and_extract_id(payload.youtubeUrl)
        if not video_id:
            raise ValidationError("Invalid YouTube URL", code="INVALID_YOUTUBE_URL")
    if not audio_url and not video_id:
        raise ValidationError("Either youtubeUrl or audioUrl is required", code="MISSING_AUDIO_SOURCE")

    try:
        if video_id:
            download = await pipeline.call("search", pipeline.search.get_download_url, video_id, "standard")
            audio_url = download["url"]
        analysis = await pipeline.call(
            "analysis",
            pipeline.analysis.analyze_from_url,
            audio_url,
            timeout=pipeline.analysis_timeout,
        )
    except CollaboratorDegraded as exc:
        logging.warning("Analysis error request_id=%s error=%s", _request_id(request), exc)
        raise UpstreamError("Failed to analyze audio", code="ANALYSIS_ERROR") from exc
    return success_envelope(_filter_analysis(analysis, set(payload.analysisType)), request_id=_request_id(request))


@app.get("/v1/usage")
async def usage(request: Request, limit: int = Query(20, ge=1, le=100), auth=Depends(require_api_key)):
    user, _api_key = auth
    status = await anyio.to_thread.run_sync(request.app.state.rate_limiter.status, user.id, user.plan)
    recent = await anyio.to_thread.run_sync(request.app.state.usage_recorder.recent, user.id, limit)
    return success_envelope(
        {
            "plan": user.plan.value,
            "sustained": {
                "limit": status.limit_sustained,
                "remaining": status.remaining_sustained,
                "resetTime": status.reset_sustained,
            },
            "burst": {
                "limit": status.limit_burst,
                "remaining": status.remaining_burst,
                "resetTime": status.reset_burst,
            },
            "recent": recent,
        },
        request_id=_request_id(request),
    )

"""
Thumbnail pipeline HTTP API.

Endpoints:
    POST /thumbnails/generate                   Generate, score and persist candidates
    GET  /thumbnails/{video_key}                Current set with ranked candidates
    PUT  /thumbnails/{video_key}/selection      Manual selection override (sticky)
    POST /thumbnails/{video_key}/uploads/retry  Re-upload staged frames
    GET  /health                                Database and staging storage health
    GET  /metrics                               Prometheus metrics
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from api.audit import AuditAction, log_audit
from api.candidate_store import CandidateStore
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    get_request_id,
    rate_limit_exceeded_handler,
    validate_video_key,
)
from api.database import database
from api.db_retry import DatabaseRetryableError
from api.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_TOTAL,
    SELECTION_OVERRIDES_TOTAL,
    get_metrics,
    init_app_info,
)
from api.schemas import (
    CandidateOutcomeResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    SelectionRequest,
    ThumbnailSetResponse,
    clean_error,
)
from config import (
    AI_API_KEY,
    API_PORT,
    CORS_ALLOWED_ORIGINS,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_GENERATE,
    RATE_LIMIT_STORAGE_URL,
)
from worker.ai_scorer import VisionScorer
from worker.exceptions import SelectionNotFound, SourceUnavailable, VideoNotFound
from worker.frame_extractor import FrameExtractor
from worker.object_storage import create_storage
from worker.orchestrator import ThumbnailGenerator
from worker.source_resolver import create_resolver
from worker.uploader import ArtifactUploader

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)

_store: Optional[CandidateStore] = None
_generator: Optional[ThumbnailGenerator] = None


def get_store() -> CandidateStore:
    global _store
    if _store is None:
        _store = CandidateStore(database)
    return _store


def build_generator(store: CandidateStore) -> ThumbnailGenerator:
    """Wire the generator from configuration."""
    extractor = FrameExtractor()
    ai_scorer = VisionScorer() if AI_API_KEY else None
    return ThumbnailGenerator(
        resolver=create_resolver(extractor=extractor),
        store=store,
        uploader=ArtifactUploader(create_storage()),
        extractor=extractor,
        ai_scorer=ai_scorer,
    )


def get_generator() -> ThumbnailGenerator:
    global _generator
    if _generator is None:
        _generator = build_generator(get_store())
    return _generator


def require_video_key(video_key: str) -> str:
    try:
        return validate_video_key(video_key)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure Redis: "
            "THUMBPICK_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    if not AI_API_KEY:
        logger.warning("THUMBPICK_AI_API_KEY is not set; candidates will be scored from pixels only")

    init_app_info(APP_VERSION)
    await database.connect()
    yield
    if _generator is not None:
        if _generator.ai_scorer is not None:
            await _generator.ai_scorer.close()
        if hasattr(_generator.resolver, "close"):
            await _generator.resolver.close()
    await database.disconnect()


app = FastAPI(
    title="thumbpick",
    description="Multi-candidate video thumbnail selection",
    version=APP_VERSION,
    lifespan=lifespan,
)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
    """Handle exhausted database retries with a 503 response."""
    logger.warning(f"Database busy: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request counts and durations per route template."""

    async def dispatch(self, request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        route = request.scope.get("route")
        # Route templates keep label cardinality bounded
        endpoint = getattr(route, "path", "unmatched")
        HTTP_REQUESTS_TOTAL.labels(
            method=request.method, endpoint=endpoint, status_code=str(response.status_code)
        ).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=request.method, endpoint=endpoint).observe(
            time.monotonic() - started
        )
        return response


app.add_middleware(MetricsMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# =============================================================================
# Thumbnails
# =============================================================================


@app.post("/thumbnails/generate", response_model=GenerateResponse)
@limiter.limit(RATE_LIMIT_GENERATE)
async def generate_thumbnails(
    request: Request,
    body: GenerateRequest,
    generator: ThumbnailGenerator = Depends(get_generator),
):
    """Generate candidates for a video and return the persisted set with per-seek-time outcomes."""
    audit_context = {
        "client_ip": get_real_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "resource_type": "thumbnail_set",
        "resource_id": body.video_key,
        "request_id": get_request_id(request),
    }
    try:
        result = await generator.generate(
            body.video_key,
            body.seek_times,
            replace=body.replace,
            force=body.force,
        )
    except VideoNotFound as e:
        log_audit(AuditAction.THUMBNAILS_GENERATE_FAILED, success=False, error=str(e), **audit_context)
        raise HTTPException(status_code=404, detail="Video not found")
    except SourceUnavailable as e:
        log_audit(AuditAction.THUMBNAILS_GENERATE_FAILED, success=False, error=str(e), **audit_context)
        raise HTTPException(
            status_code=503,
            detail="Video source temporarily unavailable, please retry",
            headers={"Retry-After": str(e.retry_after)},
        )

    outcomes = [
        CandidateOutcomeResponse(
            seek_time_seconds=outcome.seek_time,
            state=outcome.state,
            candidate_id=outcome.candidate_id,
            error=clean_error(outcome.error),
            ai_error=clean_error(outcome.ai_error),
            upload_status=outcome.upload_status,
        )
        for outcome in result.outcomes
    ]
    log_audit(
        AuditAction.THUMBNAILS_GENERATE,
        details={
            "seek_times": [outcome.seek_time for outcome in result.outcomes],
            "states": {str(o.seek_time): o.state.value for o in result.outcomes},
            "replace": body.replace,
            "force": body.force,
            "selected_candidate_id": result.thumbnail_set.selected_candidate_id,
            "deadline_exceeded": result.deadline_exceeded,
        },
        **audit_context,
    )
    return GenerateResponse(
        **ThumbnailSetResponse.set_fields(result.thumbnail_set),
        outcomes=outcomes,
        deadline_exceeded=result.deadline_exceeded,
    )


@app.get("/thumbnails/{video_key}", response_model=ThumbnailSetResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_thumbnail_set(
    request: Request,
    video_key: str,
    store: CandidateStore = Depends(get_store),
):
    """Get the thumbnail set for a video."""
    require_video_key(video_key)
    thumbnail_set = await store.get_set(video_key)
    if thumbnail_set is None:
        raise HTTPException(status_code=404, detail="Thumbnail set not found")
    return ThumbnailSetResponse.from_set(thumbnail_set)


@app.put("/thumbnails/{video_key}/selection", response_model=ThumbnailSetResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def override_selection(
    request: Request,
    video_key: str,
    body: SelectionRequest,
    store: CandidateStore = Depends(get_store),
):
    """Pin a candidate as the selection. Survives later generations unless they pass force."""
    require_video_key(video_key)
    audit_context = {
        "client_ip": get_real_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "resource_type": "thumbnail_set",
        "resource_id": video_key,
        "details": {"candidate_id": body.candidate_id},
        "request_id": get_request_id(request),
    }
    try:
        thumbnail_set = await store.override(video_key, body.candidate_id)
    except SelectionNotFound as e:
        SELECTION_OVERRIDES_TOTAL.labels(result="not_found").inc()
        log_audit(AuditAction.SELECTION_OVERRIDE, success=False, error=str(e), **audit_context)
        if e.candidate_id is None:
            raise HTTPException(status_code=404, detail="Thumbnail set not found")
        raise HTTPException(status_code=404, detail="Candidate not found in thumbnail set")

    SELECTION_OVERRIDES_TOTAL.labels(result="success").inc()
    log_audit(AuditAction.SELECTION_OVERRIDE, **audit_context)
    return ThumbnailSetResponse.from_set(thumbnail_set)


@app.post("/thumbnails/{video_key}/uploads/retry", response_model=ThumbnailSetResponse)
@limiter.limit(RATE_LIMIT_GENERATE)
async def retry_uploads(
    request: Request,
    video_key: str,
    generator: ThumbnailGenerator = Depends(get_generator),
):
    """Re-upload staged frames of candidates whose upload failed or was deferred."""
    require_video_key(video_key)
    thumbnail_set = await generator.retry_uploads(video_key)
    if thumbnail_set is None:
        raise HTTPException(status_code=404, detail="Thumbnail set not found")

    log_audit(
        AuditAction.UPLOADS_RETRY,
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
        resource_type="thumbnail_set",
        resource_id=video_key,
        details={
            "still_pending": [c.id for c in thumbnail_set.candidates if c.storage_url is None],
        },
        request_id=get_request_id(request),
    )
    return ThumbnailSetResponse.from_set(thumbnail_set)


# =============================================================================
# Operations
# =============================================================================


@app.get("/health", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if any critical component is unhealthy.
    """
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content=HealthResponse(
            status="healthy" if result["healthy"] else "unhealthy",
            checks=result["checks"],
        ).model_dump(by_alias=True),
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)

"""
Ragebaiter API — Main Application

POST /api/analyze         — Phase 1 analysis through the result cache
POST /api/analyze/phase2  — Per-user rebuttal (monthly quota, BYOK bypass)
POST /api/decide          — Phase 1 analysis + intervention decision for this viewer
GET  /api/profile         — Caller's stored viewer vector
PUT  /api/profile         — Store the caller's viewer vector
POST /api/feedback        — Drift the stored vector from a reaction to a post
GET  /api/quota           — Caller's monthly and daily quota status
GET  /health              — Health check
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import ragebaiter
from ragebaiter.analyzer import DeterministicAnalyzer, Phase1Analyzer, Phase2Analyzer
from ragebaiter.cache import AnalysisCacheService
from ragebaiter.config import settings
from ragebaiter.decision import DecisionEngine
from ragebaiter.logging import get_logger, setup_logging
from ragebaiter.models import Phase2Analysis
from ragebaiter.pipeline import (
    PROFILE_REQUIRED,
    PROFILE_UNAVAILABLE,
    UNAUTHORIZED,
    AnalysisPipeline,
    PipelineResult,
)
from ragebaiter.profiles import InMemoryProfileStore, SupabaseProfileStore
from ragebaiter.quota import InMemoryQuotaStore, QuotaDecision, QuotaService, SupabaseQuotaStore
from ragebaiter.rate_limit import RequestRateLimiter, resolve_rate_limit_key
from ragebaiter.repository import (
    InMemoryRepository,
    Repository,
    SQLiteRepository,
    SupabaseRepository,
)
from ragebaiter.schemas.api import (
    AnalyzeRequest,
    AnalyzeResponse,
    DecideRequest,
    DecideResponse,
    FeedbackRequest,
    FeedbackResponse,
    HealthResponse,
    Phase1Model,
    Phase2Request,
    Phase2Response,
    ProfileRequest,
    ProfileResponse,
    QuotaResponse,
    VectorModel,
)

from api.auth import (
    API_KEY_HEADER,
    USER_ID_HEADER,
    require_api_key,
    resolve_user_id,
)
from api import auth

logger = get_logger("api")


class ApiError(Exception):
    """Expected, well-typed rejection rendered as {"success": false, "error": {...}}."""

    def __init__(self, status_code: int, code: str, message: str,
                 headers: Optional[dict] = None, extra: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = headers
        self.extra = extra or {}

    def to_content(self) -> dict:
        return {"success": False, "error": {"code": self.code, "message": self.message, **self.extra}}


# ============================================================
# WIRING
# ============================================================

def _repository(table: str) -> Repository:
    supabase = SupabaseRepository.from_settings(table=table)
    if supabase is not None:
        return supabase
    if settings.CACHE_DB_PATH:
        return SQLiteRepository(settings.CACHE_DB_PATH, table=table)
    return InMemoryRepository()


def build_pipeline() -> AnalysisPipeline:
    """Default production wiring from settings."""
    if settings.ANALYZER_MODE == "deterministic":
        phase1_upstream = DeterministicAnalyzer()
    else:
        phase1_upstream = Phase1Analyzer()

    phase1_cache = AnalysisCacheService(
        _repository("analyzed_tweets"),
        phase1_upstream,
        ttl_ms=settings.CACHE_TTL_MS,
        max_entries=settings.CACHE_MAX_ENTRIES,
    )
    phase2_cache = AnalysisCacheService(
        _repository("phase2_cache"),
        Phase2Analyzer(),
        ttl_ms=settings.CACHE_TTL_MS,
        max_entries=settings.CACHE_MAX_ENTRIES,
        decode=Phase2Analysis.from_dict,
    )

    store = SupabaseQuotaStore.from_settings() or InMemoryQuotaStore()
    return AnalysisPipeline(
        phase1_cache=phase1_cache,
        phase2_cache=phase2_cache,
        engine_factory=lambda: DecisionEngine(cooldown_ms=settings.COOLDOWN_MS),
        monthly_quota=QuotaService(store, limit=settings.MONTHLY_QUOTA, period="month"),
        daily_quota=QuotaService(store, limit=settings.DAILY_LIMIT, period="day"),
        profiles=SupabaseProfileStore.from_settings() or InMemoryProfileStore(),
    )


def build_rate_limiter() -> RequestRateLimiter:
    return RequestRateLimiter(
        per_window=settings.RATE_PER_MINUTE,
        window_ms=60_000,
        enabled=settings.RATE_LIMIT_ENABLED,
    )


_MAX_BODY_BYTES = 1_048_576  # 1 MB


def create_app(
    pipeline: Optional[AnalysisPipeline] = None,
    rate_limiter: Optional[RequestRateLimiter] = None,
) -> FastAPI:
    """Build the app. Explicit pipeline/rate_limiter replace the settings-based wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        app.state.pipeline = pipeline if pipeline is not None else build_pipeline()
        app.state.rate_limiter = rate_limiter if rate_limiter is not None else build_rate_limiter()
        logger.info(
            "Ragebaiter API starting",
            extra={"provider": settings.PHASE2_PROVIDER, "source": settings.ANALYZER_MODE},
        )
        yield
        logger.info("Ragebaiter API shutting down")

    app = FastAPI(
        title="Ragebaiter API",
        description="Political framing and fallacy analysis with intervention decisions",
        version=ragebaiter.__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["X-API-Key", "X-User-Id", "Content-Type", "Authorization"],
        allow_credentials=False,
    )

    _register_error_handlers(app)
    _register_routes(app)
    _register_middleware(app)
    return app


# ============================================================
# ERROR HANDLERS
# ============================================================

def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_content(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": {
                    "code": "INVALID_REQUEST",
                    "message": "; ".join(
                        f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}"
                        for err in exc.errors()
                    ),
                },
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": {"code": codes.get(exc.status_code, "HTTP_ERROR"), "message": str(exc.detail)},
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_error_handler(request: Request, exc: Exception):
        """Catch unhandled exceptions and return a structured error without internals."""
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
            extra={"error": str(exc), "path": request.url.path, "method": request.method},
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "INTERNAL_ERROR", "message": "Internal server error."},
            },
        )


# ============================================================
# DEPENDENCIES
# ============================================================

def get_pipeline(request: Request) -> AnalysisPipeline:
    return request.app.state.pipeline


async def enforce_rate_limit(
    request: Request,
    key_id: Optional[str] = Depends(require_api_key),
    api_key: Optional[str] = Security(API_KEY_HEADER),
) -> Optional[str]:
    """Per-identity request limit. Returns the caller's key id."""
    limiter: RequestRateLimiter = request.app.state.rate_limiter
    identity = resolve_rate_limit_key(
        key_id=key_id,
        api_key=api_key,
        forwarded_for=request.headers.get("x-forwarded-for"),
        client_host=request.client.host if request.client else None,
    )
    decision = limiter.check(identity)
    if not decision.allowed:
        logger.info(
            "Rate limit exceeded",
            extra={"key_id": key_id, "retry_after": decision.retry_after_seconds},
        )
        raise ApiError(
            429,
            decision.code,
            "Rate limit exceeded",
            headers={"Retry-After": str(decision.retry_after_seconds)},
            extra={"retryAfterSeconds": decision.retry_after_seconds},
        )
    return key_id


async def current_user(
    key_id: Optional[str] = Depends(enforce_rate_limit),
    declared_user_id: Optional[str] = Security(USER_ID_HEADER),
) -> Optional[str]:
    return resolve_user_id(key_id, declared_user_id)


def _reject(decision: QuotaDecision) -> ApiError:
    content = decision.to_error()["error"]
    headers = {"Retry-After": str(decision.retry_after_seconds)} if decision.retry_after_seconds else None
    extra = {k: v for k, v in content.items() if k not in ("code", "message")}
    return ApiError(decision.http_status, decision.code, content["message"], headers=headers, extra=extra)


_PIPELINE_ERRORS = {
    UNAUTHORIZED: (401, "Authentication required"),
    PROFILE_REQUIRED: (400, "userVector is required when no profile is stored for this caller"),
    PROFILE_UNAVAILABLE: (503, "Profile service unavailable"),
}


def _raise_for(outcome: PipelineResult) -> None:
    """Turn a pipeline error code or quota rejection into an ApiError."""
    if outcome.error is not None:
        status_code, message = _PIPELINE_ERRORS[outcome.error]
        raise ApiError(status_code, outcome.error, message)
    if outcome.rejection is not None:
        raise _reject(outcome.rejection)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise ApiError(401, UNAUTHORIZED, "Authentication required")
    return user_id


# ============================================================
# ROUTES
# ============================================================

def _register_routes(app: FastAPI) -> None:

    @app.post("/api/analyze", response_model=AnalyzeResponse, response_model_by_alias=True)
    async def analyze(
        request: AnalyzeRequest,
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """Phase 1 content analysis. Cached globally per tweet id."""
        start = time.time()
        outcome = await pipeline.analyze_phase1(request.tweet_id, request.tweet_text, user_id)
        _raise_for(outcome)
        if outcome.analysis is None:
            raise ApiError(503, "ANALYSIS_UNAVAILABLE", "Analysis is temporarily unavailable.")

        logger.info(
            f"Analysis complete: source={outcome.analysis.source}",
            extra={
                "tweet_id": request.tweet_id,
                "source": outcome.analysis.source,
                "user_id": user_id,
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
        return AnalyzeResponse(
            source=outcome.analysis.source,
            tweet_id=request.tweet_id,
            analysis=Phase1Model.from_analysis(outcome.analysis.result),
        )

    @app.post("/api/analyze/phase2", response_model=Phase2Response, response_model_by_alias=True)
    async def analyze_phase2(
        request: Phase2Request,
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """Per-user rebuttal. A caller-supplied apiKey skips the monthly quota."""
        outcome = await pipeline.analyze_phase2(
            request.tweet_id,
            request.tweet_text,
            request.phase1_result.to_analysis(),
            user_id=user_id,
            api_key=request.api_key,
            provider=request.provider,
        )
        _raise_for(outcome)
        if outcome.analysis is None:
            raise ApiError(502, "ANALYSIS_FAILED", "Could not generate phase 2 analysis for this tweet.")

        return {
            "success": True,
            "source": outcome.analysis.source,
            "analysis": outcome.analysis.result.to_dict(),
        }

    @app.post("/api/decide", response_model=DecideResponse, response_model_by_alias=True)
    async def decide(
        request: DecideRequest,
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """Phase 1 analysis followed by the intervention decision for this viewer."""
        outcome = await pipeline.should_intervene(
            request.tweet_id,
            request.tweet_text,
            profile=request.to_profile(),
            user_id=user_id,
            decision_config=request.to_decision_config(),
        )
        _raise_for(outcome)
        if outcome.analysis is None:
            raise ApiError(503, "ANALYSIS_UNAVAILABLE", "Analysis is temporarily unavailable.")

        return DecideResponse(
            source=outcome.analysis.source,
            analysis=Phase1Model.from_analysis(outcome.analysis.result),
            decision=outcome.decision.to_dict(),
        )

    @app.get("/api/quota", response_model=QuotaResponse, response_model_by_alias=True)
    async def quota(
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """Monthly and daily quota status for the caller."""
        _require_user(user_id)
        try:
            monthly, daily = await asyncio.gather(
                pipeline.monthly_quota.get_quota_status(user_id),
                pipeline.daily_quota.get_quota_status(user_id),
            )
        except Exception as e:
            logger.warning(
                f"Quota status lookup failed: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
            )
            raise ApiError(503, "QUOTA_UNAVAILABLE", "Quota service unavailable")
        return {"monthly": monthly.to_dict(), "daily": daily.to_dict()}

    @app.get("/api/profile", response_model=ProfileResponse, response_model_by_alias=True)
    async def get_profile(
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """The caller's stored viewer vector."""
        user_id = _require_user(user_id)
        try:
            vector = await pipeline.profiles.get_vector(user_id)
        except Exception as e:
            logger.warning(
                f"Profile lookup failed: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
            )
            raise ApiError(503, PROFILE_UNAVAILABLE, "Profile service unavailable")
        if vector is None:
            raise ApiError(404, "PROFILE_NOT_FOUND", "No profile stored for this caller")
        return ProfileResponse(user_vector=VectorModel(**vector.to_dict()))

    @app.put("/api/profile", response_model=ProfileResponse, response_model_by_alias=True)
    async def put_profile(
        request: ProfileRequest,
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """Store the caller's viewer vector, replacing any previous one."""
        user_id = _require_user(user_id)
        vector = request.user_vector.to_vector()
        try:
            await pipeline.profiles.set_vector(user_id, vector)
        except Exception as e:
            logger.warning(
                f"Profile write failed: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
            )
            raise ApiError(503, PROFILE_UNAVAILABLE, "Profile service unavailable")
        return ProfileResponse(user_vector=VectorModel(**vector.to_dict()))

    @app.post("/api/feedback", response_model=FeedbackResponse, response_model_by_alias=True)
    async def feedback(
        request: FeedbackRequest,
        user_id: Optional[str] = Depends(current_user),
        pipeline: AnalysisPipeline = Depends(get_pipeline),
    ):
        """The caller's reaction to an intervention nudges their stored vector."""
        user_id = _require_user(user_id)
        try:
            drift = await pipeline.record_feedback(
                user_id, request.tweet_vector.to_vector(), request.feedback_type,
            )
        except Exception as e:
            logger.warning(
                f"Feedback write failed: {e}",
                extra={"user_id": user_id, "tweet_id": request.tweet_id, "error_type": type(e).__name__},
            )
            raise ApiError(503, PROFILE_UNAVAILABLE, "Profile service unavailable")
        if drift is None:
            raise ApiError(404, "PROFILE_NOT_FOUND", "No profile stored for this caller")
        return drift.to_dict()

    @app.get("/health", response_model=HealthResponse)
    async def health(pipeline: AnalysisPipeline = Depends(get_pipeline)):
        """Health check. No auth required."""
        return {
            "status": "operational",
            "version": ragebaiter.__version__,
            "analyzer": settings.ANALYZER_MODE,
            "phase2_provider": settings.PHASE2_PROVIDER,
            "phase1_cache": pipeline.phase1_cache.stats,
            "phase2_cache": pipeline.phase2_cache.stats,
            "auth_enabled": auth.AUTH_ENABLED,
        }


# ============================================================
# MIDDLEWARE
# ============================================================

def _register_middleware(app: FastAPI) -> None:

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security and version headers to all responses."""
        response = await call_next(request)
        response.headers["X-Ragebaiter-Version"] = ragebaiter.__version__
        response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains; preload"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        return response

    @app.middleware("http")
    async def enforce_body_size_limit(request: Request, call_next):
        """Reject requests exceeding 1MB, by Content-Length or by actual body size."""
        too_large = JSONResponse(
            status_code=413,
            content={
                "success": False,
                "error": {"code": "PAYLOAD_TOO_LARGE", "message": "Request body too large."},
            },
        )
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > _MAX_BODY_BYTES:
            return too_large

        if request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if len(body) > _MAX_BODY_BYTES:
                return too_large

        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every API request with method, path, status, duration."""
        path = request.url.path
        if path == "/health":
            return await call_next(request)

        start = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - start) * 1000, 1)

        logger.info(
            f"{request.method} {path} → {response.status_code} ({duration_ms}ms)",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response


app = create_app()

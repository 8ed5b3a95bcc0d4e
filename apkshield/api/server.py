import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import BackgroundTasks, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from apkshield.config import Settings, settings
from apkshield.errors import (
    PayloadTooLargeError,
    RateLimitExceededError,
    ScanError,
    ScanFailedError,
    ServiceNotReadyError,
    UploadValidationError,
)
from apkshield.api.security import check_rate_limit
from apkshield.models.scan import ScanResult
from apkshield.pipelines.risk_engine import generate_scan_summary
from apkshield.pipelines.scan_pipeline import ScanContext, ScanOrchestrator
from apkshield.schemas.scan_schemas import (
    ErrorResponse,
    HealthResponse,
    ScanMetadata,
    ScanResponse,
    ScanVerdict,
)
from apkshield.services.apk_analyzer import APKAnalyzer
from apkshield.services.security_scanner import SecurityScanner
from apkshield.services.threat_intel import ThreatIntelligence
from apkshield.services.upload_service import (
    UploadJanitor,
    ensure_materialized,
    store_upload,
    validate_apk_upload,
)
from apkshield.utils.logging_config import StructuredLogger, init_logging, metrics

# Initialize structured logging
init_logging()

logger = StructuredLogger(__name__)

VERSION = "0.1.0"
UPLOAD_FIELD = "apk"
MULTIPART_OVERHEAD = 1024 * 1024


def build_scan_context(cfg: Settings) -> ScanContext:
    scanner = SecurityScanner()
    return ScanContext(
        apk_analyzer=APKAnalyzer(),
        security_scanner=scanner,
        threat_intel=ThreatIntelligence(cfg.threat_feed_path or None),
        ml_classifier=scanner,
        ml_enabled=cfg.ml_detection_enabled,
        janitor=UploadJanitor(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        os.makedirs(settings.upload_dir, exist_ok=True)
        context = build_scan_context(settings)
        app.state.threat_intel = context.threat_intel
        await context.threat_intel.initialize()
        app.state.orchestrator = ScanOrchestrator(context)
    except Exception:
        logger.critical("Failed to initialize services")
        raise

    logger.info(
        "All services initialized successfully",
        environment=settings.environment,
        upload_dir=settings.upload_dir,
        ml_enabled=settings.ml_detection_enabled,
    )
    yield
    await context.janitor.wait_pending()
    logger.info("Shutting down")


app = FastAPI(
    title="APKShield API",
    version=VERSION,
    description="Fake banking app and APK malware scanner",
    docs_url="/docs" if settings.debug else None,  # Disable docs in production
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    max_age=86400,
)


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Rate limit headers middleware
@app.middleware("http")
async def add_rate_limit_headers(request: Request, call_next):
    response = await call_next(request)
    if hasattr(request.state, "rate_limit_remaining"):
        response.headers["X-RateLimit-Limit"] = str(request.state.rate_limit_limit)
        response.headers["X-RateLimit-Remaining"] = str(request.state.rate_limit_remaining)
    return response


# ============== ERROR HANDLERS ==============


def _error_response(status_code: int, body: ErrorResponse, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


@app.exception_handler(ScanError)
async def scan_error_handler(request: Request, exc: ScanError):
    headers = None
    body = ErrorResponse(
        scan_id=exc.scan_id,
        error=exc.error,
        message=exc.public_message(settings.expose_errors),
    )
    if isinstance(exc, RateLimitExceededError):
        body.retry_after = exc.retry_after_ms
        body.message = None
        headers = {"Retry-After": str(max(1, round(exc.retry_after_ms / 1000)))}
    elif exc.status_code >= 500:
        logger.error(f"Request failed: {exc.error}", scan_id=exc.scan_id, error=exc.message)
    return _error_response(exc.status_code, body, headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return _error_response(404, ErrorResponse(error="Endpoint not found"))
    return _error_response(exc.status_code, ErrorResponse(error=str(exc.detail)), getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", error=str(exc), exc_info=True)
    return _error_response(
        500,
        ErrorResponse(
            error="Internal server error",
            message=str(exc) if settings.expose_errors else "Internal server error",
        ),
    )


# ============== DEPENDENCIES ==============


def get_orchestrator(request: Request) -> ScanOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    threat_intel = getattr(request.app.state, "threat_intel", None)
    if orchestrator is None or threat_intel is None or not threat_intel.initialized:
        raise ServiceNotReadyError()
    return orchestrator


def _check_declared_size(request: Request):
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_file_size + MULTIPART_OVERHEAD:
        raise PayloadTooLargeError(settings.max_file_size_mb)


async def _single_apk_upload(request: Request) -> UploadFile:
    form = await request.form()
    uploads = [(name, value) for name, value in form.multi_items() if isinstance(value, UploadFile)]

    if not uploads:
        raise UploadValidationError("No APK file provided", "Please select an APK file to upload")
    if len(uploads) > 1 or uploads[0][0] != UPLOAD_FIELD:
        raise UploadValidationError("Invalid file", "Only one APK file is allowed per request")

    upload = uploads[0][1]
    validate_apk_upload(upload)
    return upload


def _build_response(result: ScanResult) -> ScanResponse:
    analysis = result.analysis
    return ScanResponse(
        scan_id=result.scan_id,
        result=ScanVerdict(
            risk_level=result.risk_level,
            is_fake=result.is_fake,
            confidence=result.confidence,
            threats=result.threats,
            recommendations=result.recommendations,
            summary=generate_scan_summary(result.assessment),
        ),
        metadata=ScanMetadata(
            basic=analysis.basic,
            security=analysis.security,
            banking=analysis.banking,
            threats=analysis.threats,
            ml=analysis.ml,
            timestamp=result.timestamp,
        ),
    )


# ============== ENDPOINTS ==============


@app.get("/api/health", response_model=HealthResponse)
def health(request: Request):
    """Health check endpoint."""
    threat_intel = getattr(request.app.state, "threat_intel", None)
    initialized = threat_intel is not None and threat_intel.initialized
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        services={"threatIntel": "initialized" if initialized else "not initialized"},
    )


@app.get("/api/status")
def status_info():
    """
    API status and configuration info.
    Useful for debugging and monitoring.
    """
    return {
        "status": "ok",
        "version": VERSION,
        "environment": settings.environment,
        "ml_detection_enabled": settings.ml_detection_enabled,
        "max_file_size": settings.max_file_size,
        "rate_limit": {
            "requests": settings.rate_limit_requests,
            "window_seconds": settings.rate_limit_window,
        },
        "metrics": metrics.get_stats(),
    }


@app.post(
    "/api/scan-apk",
    response_model=ScanResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    dependencies=[Depends(check_rate_limit)],
)
async def scan_apk(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
):
    """
    Scan one uploaded APK (multipart field `apk`).

    The uploaded file is removed after the response is sent, or right away
    when the scan fails.
    """
    _check_declared_size(request)
    upload = await _single_apk_upload(request)

    scan_request = await store_upload(
        upload,
        upload_dir=settings.upload_dir,
        max_bytes=settings.max_file_size,
        chunk_size=settings.upload_chunk_size,
    )

    janitor = orchestrator.context.janitor
    try:
        await ensure_materialized(scan_request)
    except BaseException:
        await janitor.discard(scan_request)
        raise

    result = await orchestrator.run(scan_request, defer=background_tasks.add_task)
    try:
        return _build_response(result)
    except Exception as e:
        # Background tasks never run for an error response
        await janitor.discard(scan_request)
        raise ScanFailedError(scan_request.scan_id, "response", e) from e

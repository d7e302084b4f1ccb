"""
FastAPI application for the Magic Staging credit service.

Provides REST API for:
- Staging job submission (reserve credit, call AI provider, commit or refund)
- Stripe payment webhooks (idempotent credit grants)
- Balances, ledger history, credit packages and payment intents
- Operator reconciliation and stale-job recovery
- Health monitoring and Prometheus metrics
"""

from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from magicstage import __version__
from magicstage.billing.stripe_service import (
    PaymentError,
    StripeNotConfiguredError,
    StripeService,
    UnknownPackageError,
)
from magicstage.billing.webhooks import (
    InvalidSignatureError,
    PaymentWebhookProcessor,
    WebhookNotConfiguredError,
    WebhookPayloadError,
)
from magicstage.config import get_settings
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerInvariantViolation,
)
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.observability.health import (
    HealthCheckResponse,
    LivenessResponse,
    ReadinessResponse,
    get_health_checker,
)
from magicstage.observability.logging import configure_logging, get_logger
from magicstage.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from magicstage.observability.metrics import generate_metrics, track_store_unavailable
from magicstage.observability.middleware import ErrorTrackingMiddleware, PrometheusMiddleware
from magicstage.observability.request_limits import RequestSizeLimitMiddleware
from magicstage.rate_limits import limiter, rate_limit_exceeded_handler
from magicstage.resilience.circuit_breakers import StripeCircuitBreakerError
from magicstage.routers import accounts_router, admin_router, staging_router, webhooks_router
from magicstage.staging.object_store import LocalObjectStore
from magicstage.staging.orchestrator import StagingJobOrchestrator
from magicstage.staging.provider import GeminiStagingProvider
from magicstage.storage.database import LedgerDatabase, StoreUnavailableError
from magicstage.storage.jobs import StagingJobRepository
from magicstage.storage.payments import PaymentEventRepository

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)

# Seconds to let in-flight staging runs settle at shutdown
SHUTDOWN_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Opens the ledger store and wires every service onto app.state; the store
    handle lives exactly as long as the application.
    """
    settings = get_settings()

    logger.info("=== Magic Staging Service Starting ===")

    ledger_db = LedgerDatabase(
        settings.database.path,
        busy_timeout_seconds=settings.database.busy_timeout_seconds,
        transient_retry_attempts=settings.database.transient_retry_attempts,
    )
    provider = GeminiStagingProvider(settings.ai)
    orchestrator: StagingJobOrchestrator | None = None

    try:
        await ledger_db.initialize()
        logger.info("✓ Ledger database ready", path=settings.database.path)

        usage_recorder = UsageRecorder(ledger_db)
        payments = PaymentEventRepository(ledger_db)
        credit_ledger = CreditLedger(ledger_db, usage_recorder, payments)

        orchestrator = StagingJobOrchestrator(
            ledger_db,
            credit_ledger,
            StagingJobRepository(ledger_db),
            provider,
            LocalObjectStore(
                settings.object_store.root_path,
                public_base_url=settings.object_store.public_base_url,
            ),
            provider_timeout_seconds=settings.staging.provider_timeout_seconds,
            credits_per_job=settings.staging.credits_per_job,
            stale_after=timedelta(minutes=settings.staging.stale_job_minutes),
        )
        logger.info("✓ Staging orchestrator ready", model=settings.ai.model)

        app.state.ledger_db = ledger_db
        app.state.usage_recorder = usage_recorder
        app.state.credit_ledger = credit_ledger
        app.state.orchestrator = orchestrator
        app.state.webhook_processor = PaymentWebhookProcessor(
            settings.stripe, ledger_db, credit_ledger, payments
        )
        app.state.stripe_service = StripeService(settings.stripe, credit_ledger)
        logger.info("✓ Billing services ready", stripe_enabled=settings.stripe.is_configured)

        logger.info("=== Service Ready ===")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")

        if orchestrator is not None:
            await orchestrator.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
            logger.info("✓ Staging runs drained")

        await provider.aclose()
        ledger_db.close()

        logger.info("=== Shutdown complete ===")


app = FastAPI(
    title="Magic Staging API",
    description="Prepaid credit ledger and AI virtual staging jobs",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

cors_origins = settings.cors.origins_list

if "*" in cors_origins:
    logger.warning(
        "⚠️  CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production!"
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=settings.cors.methods_list,
    allow_headers=settings.cors.headers_list,
    max_age=settings.cors.max_age,
)

# Processed in reverse order of registration:
# 1. RequestSizeLimitMiddleware (innermost) - Rejects oversized requests first
# 2. ErrorTrackingMiddleware - Classifies errors
# 3. PrometheusMiddleware - Tracks metrics
# 4. SlowRequestLogger - Logs slow requests
# 5. StructuredLoggingMiddleware (outermost) - Sets request context
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(
    SlowRequestLogger,
    warning_threshold_ms=settings.logging.slow_request_warning_ms,
    error_threshold_ms=settings.logging.slow_request_error_ms,
)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(ErrorTrackingMiddleware)
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_body_size=settings.service.max_request_body_size,
)

app.include_router(staging_router)
app.include_router(webhooks_router)
app.include_router(accounts_router)
app.include_router(admin_router)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================


@app.exception_handler(InsufficientCreditsError)
async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError):
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={
            "error": "insufficient_credits",
            "detail": "Not enough credits to start a staging job",
            "creditsRemaining": exc.available,
            "creditsRequired": exc.requested,
        },
    )


@app.exception_handler(AccountNotFoundError)
async def account_not_found_handler(request: Request, exc: AccountNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "account_not_found", "detail": str(exc)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "invalid_request",
            "detail": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                for err in exc.errors()
            ],
        },
    )


@app.exception_handler(InvalidSignatureError)
async def invalid_signature_handler(request: Request, exc: InvalidSignatureError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_signature", "detail": str(exc)},
    )


@app.exception_handler(WebhookPayloadError)
async def webhook_payload_handler(request: Request, exc: WebhookPayloadError):
    logger.warning("Malformed webhook payload", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_payload", "detail": str(exc)},
    )


@app.exception_handler(WebhookNotConfiguredError)
async def webhook_not_configured_handler(request: Request, exc: WebhookNotConfiguredError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "webhooks_not_configured", "detail": str(exc)},
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    track_store_unavailable()
    logger.error("Ledger store unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "store_unavailable", "detail": "Ledger temporarily unavailable"},
        headers={"Retry-After": "5"},
    )


@app.exception_handler(LedgerInvariantViolation)
async def invariant_violation_handler(request: Request, exc: LedgerInvariantViolation):
    # Already logged at CRITICAL and counted where raised
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


@app.exception_handler(UnknownPackageError)
async def unknown_package_handler(request: Request, exc: UnknownPackageError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "unknown_package", "detail": str(exc)},
    )


@app.exception_handler(StripeNotConfiguredError)
async def stripe_not_configured_handler(request: Request, exc: StripeNotConfiguredError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "payments_disabled", "detail": "Credit purchases are not available"},
    )


@app.exception_handler(StripeCircuitBreakerError)
async def stripe_circuit_open_handler(request: Request, exc: StripeCircuitBreakerError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "payments_unavailable", "detail": str(exc)},
        headers={"Retry-After": "30"},
    )


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "payment_failed", "detail": "Payment provider rejected the request"},
    )


# ============================================================================
# HEALTH AND METRICS
# ============================================================================


@app.get("/health/liveness", response_model=LivenessResponse, tags=["Health"])
async def liveness_probe():
    """Liveness probe. No I/O."""
    return await get_health_checker().check_liveness()


@app.get(
    "/health/readiness",
    response_model=ReadinessResponse,
    tags=["Health"],
    responses={503: {"description": "Ledger store unreachable"}},
)
async def readiness_probe(request: Request, response: Response):
    """
    Readiness probe.

    Returns:
        HTTP 200: Ledger store reachable
        HTTP 503: Ledger store unreachable (balances cannot be trusted)
    """
    readiness = await get_health_checker().check_readiness(
        ledger_db=getattr(request.app.state, "ledger_db", None),
    )

    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.debug("Readiness probe completed", ready=readiness.ready)
    return readiness


@app.get("/health", response_model=HealthCheckResponse, tags=["Health"])
async def comprehensive_health_check(request: Request):
    """Detailed health of the ledger store and external integrations (cached 5s)."""
    return await get_health_checker().check_health(
        ledger_db=getattr(request.app.state, "ledger_db", None),
        settings=get_settings(),
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint."""
    content, content_type = generate_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    return {
        "service": "Magic Staging API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "magicstage.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
        log_level=settings.logging.level.lower(),
    )

"""
FastAPI application main module.
Wires the counter store, admission controller and usage ledger sync, and maps
quota errors onto HTTP responses.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
import os
from contextlib import asynccontextmanager
from typing import Any, Callable
from sqlalchemy import text
from sqlalchemy.orm import Session
from quota_gate.api.v1 import api_router
from quota_gate.api.v1.endpoints.admission import rate_limit_headers
from quota_gate.config import COUNTER_STORE_BREAKER
from quota_gate.core.policy import PolicyTable, build_policy_table
from quota_gate.database import Base, SessionLocal, engine
from quota_gate.errors import AdmissionDenied, StoreUnavailable
from quota_gate.integrations.billing import RecordingBillingClient
from quota_gate.integrations.plans import StaticPlanResolver
from quota_gate.services.admission import AdmissionController, STORE_CIRCUIT
from quota_gate.services.alerting import AlertService
from quota_gate.services.ledger_repository import SqlUsageLedger
from quota_gate.services.ledger_sync import UsageLedgerSync
from quota_gate.services.overage import OverageTrigger
from quota_gate.services.usage_report import MonthlyUsageReporter
from quota_gate.store import CounterStore, create_counter_store
from quota_gate.utils import setup_logging, get_logger
import quota_gate.models.db  # noqa: F401  (registers tables on Base.metadata)

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/quota_gate.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "quota-gate"
SERVICE_VERSION = "1.0.0"


def build_components(
    store: CounterStore,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    policies: PolicyTable | None = None,
    clock: Callable[[], float] = time.time,
) -> dict[str, Any]:
    """Construct the service graph around a counter store.

    Returned keys match the ``app.state`` attribute names the API reads.
    """
    policies = policies or build_policy_table()
    plan_resolver = StaticPlanResolver()
    alerts = AlertService(session_factory)
    usage_ledger = SqlUsageLedger(session_factory, clock=clock)
    overage = OverageTrigger(RecordingBillingClient(session_factory), policies, plan_resolver, alerts=alerts)
    ledger_sync = UsageLedgerSync(usage_ledger, plan_resolver, policies, overage, alerts=alerts, clock=clock)
    controller = AdmissionController(store, policies, clock=clock, ledger_sync=ledger_sync, alerts=alerts)
    return {
        "counter_store": store,
        "policy_table": policies,
        "plan_resolver": plan_resolver,
        "usage_ledger": usage_ledger,
        "ledger_sync": ledger_sync,
        "usage_reporter": MonthlyUsageReporter(usage_ledger, plan_resolver, policies, clock=clock),
        "admission_controller": controller,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")
    store: CounterStore | None = None
    ledger_sync: UsageLedgerSync | None = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)

        store = await create_counter_store()
        components = build_components(store)
        for name, component in components.items():
            setattr(app.state, name, component)

        ledger_sync = components["ledger_sync"]
        ledger_sync.start()
        logger.info("Application startup completed successfully", counter_store=store.backend_name)
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if ledger_sync is not None:
            await ledger_sync.stop()
        if store is not None:
            await store.close()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Tenant Quota Gate",
    description="""
    Usage-based admission control for tenant operations.

    ## Features
    * **Window quotas** - per-plan minute/hour/day limits with a burst allowance
    * **Cooldown** - minimum spacing between admitted operations
    * **Usage ledger** - admitted usage batched into durable monthly records
    * **Overage billing** - charges issued once when a monthly limit is crossed

    ## Rate limit headers
    Admission responses carry `X-RateLimit-Limit`, `X-RateLimit-Remaining` and
    `X-RateLimit-Reset` for the minute window; denials add `Retry-After`.
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )
    return response


@app.exception_handler(AdmissionDenied)
async def admission_denied_handler(request: Request, exc: AdmissionDenied):
    """Quota/cooldown denials -> 429 with Retry-After."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info(
        "Admission denied",
        reason=exc.reason,
        retry_after_seconds=exc.retry_after_seconds,
        request_id=request_id,
    )
    headers = {"Retry-After": str(exc.retry_after_seconds)}
    result = getattr(request.state, "admission_result", None)
    if result is not None:
        headers.update(rate_limit_headers(result))
    return JSONResponse(
        status_code=429,
        headers=headers,
        content={
            "success": False,
            "message": str(exc),
            "reason": exc.reason,
            "retry_after_seconds": exc.retry_after_seconds,
            "data": result.model_dump(mode="json") if result is not None else None,
            "request_id": request_id,
        },
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    """Counter store outage -> 503; admission fails closed."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(
        "Counter store unavailable",
        error=str(exc),
        request_id=request_id,
        url=str(request.url),
        method=request.method,
    )
    return JSONResponse(
        status_code=503,
        headers={"Retry-After": str(int(COUNTER_STORE_BREAKER["open_cooldown_seconds"]))},
        content={
            "success": False,
            "message": "Quota service temporarily unavailable",
            "request_id": request_id,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": exc.errors(),
            "request_id": request_id
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    store = getattr(app.state, "counter_store", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "counter_store_backend": store.backend_name if store is not None else None,
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Detailed health check with database, counter store and ledger queue status."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    # Database check
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    # Counter store check; an unhealthy store means admission is failing closed
    store = getattr(app.state, "counter_store", None)
    if store is None:
        health_status["checks"]["counter_store"] = "not initialized"
        health_status["status"] = "degraded"
    else:
        healthy = await store.ping()
        health_status["checks"]["counter_store"] = {
            **store.snapshot(),
            "status": "healthy" if healthy else "unavailable",
        }
        if not healthy:
            health_status["status"] = "unhealthy"

    controller = getattr(app.state, "admission_controller", None)
    if controller is not None:
        breaker = controller.breaker.snapshot().get(STORE_CIRCUIT)
        health_status["checks"]["counter_store_circuit"] = breaker["state"] if breaker else "CLOSED"

    sync = getattr(app.state, "ledger_sync", None)
    if sync is not None:
        health_status["checks"]["ledger_queue"] = sync.snapshot()

    return health_status


@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Tenant Quota Gate API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "quota_gate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["quota_gate"],
        log_level="info",
        access_log=True
    )

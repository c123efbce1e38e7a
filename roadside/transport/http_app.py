# roadside/transport/http_app.py
"""
HTTP application for the dispatch engine.

Access layers:
1. Admin: job intake, PATCH, bidding links, bid selection, alerts, metrics
   (Bearer admin token)
2. Link holders: vendor bid page, customer bid picker, assigned-vendor
   portal (capability token in the path, rate limited per client IP)
3. Public: status page, health probes
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional, Type, TypeVar

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from roadside.config import Settings, settings as default_settings, validate_or_warn
from roadside.core.dispatch import (
    AssignmentCoordinator,
    BidLedger,
    BiddingTokenIssuer,
    EventPublisher,
    JobAssigned,
    JobService,
    UnbidMonitor,
)
from roadside.core.domain import JobStatus
from roadside.core.errors import DispatchError, NotFoundError, ValidationError
from roadside.core.models import (
    BidSubmission,
    CreateJobRequest,
    SelectBidRequest,
    UpdateJobRequest,
    VendorStatusUpdate,
)
from roadside.core.ports import Clock, DispatchStore, utc_now
from roadside.infra.db_async import close_pool, init_pool, pool_initialized
from roadside.infra.health_checks_async import (
    AsyncHealthChecker,
    PostgresSchemaHealthCheck,
    StoreHealthCheck,
    UnbidMonitorHealthCheck,
)
from roadside.infra.http_client import close_all_sessions
from roadside.infra.logging_config import get_logger, mask_phone, setup_logging
from roadside.infra.memory_store import create_memory_store
from roadside.infra.metrics import get_metrics_collector
from roadside.infra.notification_channels import AlertDispatcher, get_notification_channel
from roadside.infra.pg_store import create_postgres_store
from roadside.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from roadside.infra.schema_validator import validate_schema_version
from roadside.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from roadside.transport.security import (
    SecurityHeaders,
    require_admin_auth,
    sanitize_error_message,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

ALERTS_MAX_LIMIT = 200


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_jobs(request: Request) -> JobService:
    return request.app.state.jobs


def get_issuer(request: Request) -> BiddingTokenIssuer:
    return request.app.state.issuer


def get_ledger(request: Request) -> BidLedger:
    return request.app.state.ledger


def get_coordinator(request: Request) -> AssignmentCoordinator:
    return request.app.state.coordinator


def get_monitor(request: Request) -> UnbidMonitor:
    return request.app.state.monitor


def get_store(request: Request) -> DispatchStore:
    return request.app.state.store


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for link-token endpoints"""
    await request.app.state.rate_limiter(request)


def parse_payload(model: Type[M], payload: Any) -> M:
    """Validate a JSON body into ``model``; failures become a 400."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "body"
        raise ValidationError(f"{field}: {first.get('msg', 'invalid value')}")


def _selection_response(request: Request, result) -> dict:
    issuer: BiddingTokenIssuer = request.app.state.issuer
    links = {"statusUrl": issuer.status_url(result.job.id)}
    if result.vendor_portal_token:
        links["vendorPortal"] = issuer.vendor_portal_link(result.vendor_portal_token)
    return {
        "ok": True,
        "jobId": result.job.id,
        "selectedBidId": result.job.selected_bid_id,
        "status": result.job.status.value,
        "finalPrice": result.job.final_price,
        "vendor": {"name": result.job.vendor_name, "phone": result.job.vendor_phone},
        "job": result.job.to_dict(),
        "links": links,
    }


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    def __init__(self, app, hsts: bool = False):
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response, hsts=self.hsts)


# ============================================================================
# WIRING
# ============================================================================

async def _log_assignment(event: JobAssigned) -> None:
    logger.info(
        "Job assigned: job_id=%s vendor=%s final_price=%s by=%s",
        event.job_id, mask_phone(event.vendor_phone), event.final_price, event.requester,
        extra={"job_id": event.job_id, "bid_id": event.bid_id},
    )


def build_services(
    fastapi_app: FastAPI,
    store: DispatchStore,
    cfg: Settings,
    clock: Clock = utc_now,
) -> None:
    """Attach the dispatch services for ``store`` to ``app.state``."""
    events = EventPublisher()
    events.subscribe(_log_assignment)

    issuer = BiddingTokenIssuer(store, cfg.public_base_url, clock=clock)
    dispatcher = AlertDispatcher(get_notification_channel(cfg))

    state = fastapi_app.state
    state.store = store
    state.events = events
    state.issuer = issuer
    state.jobs = JobService(store, issuer, clock=clock)
    state.ledger = BidLedger(store, issuer, clock=clock)
    state.coordinator = AssignmentCoordinator(store, issuer, events, clock=clock)
    state.monitor = UnbidMonitor(
        store,
        dispatcher,
        alert_minutes=cfg.unbid_alert_minutes,
        interval_seconds=cfg.unbid_monitor_interval_seconds,
        batch_size=cfg.unbid_alert_batch,
        enabled=not cfg.disable_unbid_alerts,
        clock=clock,
    )


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    cfg: Settings = fastapi_app.state.settings

    # STARTUP
    logger.info(
        f"Starting application: env={cfg.app_env}, run_mode={cfg.run_mode}, store={cfg.store_backend}"
    )
    validate_or_warn(cfg)

    checks = []
    store: Optional[DispatchStore] = fastapi_app.state.store_override
    if store is None and cfg.store_backend == "postgres":
        await init_pool(cfg)
        logger.info("Database pool initialized")

        # Validate schema version (does NOT run migrations)
        # Migrations are run separately: python -m roadside.infra.migrate
        try:
            schema_result = await validate_schema_version(cfg.expected_schema_version)
            logger.info(f"Schema validated: {schema_result['current_version']}", extra=schema_result)
        except Exception:
            logger.critical(
                "Schema validation failed. Run migrations first: python -m roadside.infra.migrate",
                exc_info=True,
            )
            await close_pool()
            raise

        store = create_postgres_store()
        checks.append(PostgresSchemaHealthCheck())
    elif store is None:
        store = create_memory_store(clock=fastapi_app.state.clock)

    build_services(fastapi_app, store, cfg, clock=fastapi_app.state.clock)
    monitor: UnbidMonitor = fastapi_app.state.monitor

    # Only scan in "all" or "worker" mode so web replicas don't duplicate ticks.
    monitor_expected = cfg.run_mode in ("all", "worker") and not cfg.disable_unbid_alerts
    if cfg.run_mode in ("all", "worker"):
        await monitor.start()
    else:
        logger.info(f"Unbid monitor skipped (run_mode={cfg.run_mode})")

    checks.insert(0, StoreHealthCheck(store))
    checks.append(UnbidMonitorHealthCheck(monitor, expected_running=monitor_expected))
    fastapi_app.state.health_checker = AsyncHealthChecker(checks)

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")
    await monitor.stop()
    await close_all_sessions()
    if pool_initialized():
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=exc.headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    cfg: Settings = request.app.state.settings
    return JSONResponse(
        status_code=500,
        content={"message": sanitize_error_message(exc, cfg.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

router = APIRouter()
admin = [Depends(require_admin_auth)]
limited = [Depends(rate_limit_check)]


@router.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(request: Request):
    """Readiness probe: the store must answer."""
    result = await request.app.state.health_checker.run_checks(include_non_critical=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@router.get("/status/{job_id}", dependencies=limited)
async def job_status(job_id: str, jobs: JobService = Depends(get_jobs)):
    """Customer-facing status page. No tokens or phone numbers."""
    return await jobs.public_status(job_id)


# ============================================================================
# ADMIN: JOBS
# ============================================================================

@router.post("/jobs", status_code=201, dependencies=admin)
async def create_job(payload: dict = Body(...), jobs: JobService = Depends(get_jobs)):
    req = parse_payload(CreateJobRequest, payload)
    job = await jobs.create_job(req)
    return job.to_dict()


@router.get("/jobs", dependencies=admin)
async def list_jobs(
    status: Optional[JobStatus] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=200),
    limit: int = Query(default=100, ge=1, le=500),
    jobs: JobService = Depends(get_jobs),
):
    """Newest first; ``q`` searches service type, addresses and notes."""
    found = await jobs.list_jobs(status=status, query=q, limit=limit)
    return [job.to_dict() for job in found]


@router.get("/jobs/{job_id}", dependencies=admin)
async def get_job(job_id: str, jobs: JobService = Depends(get_jobs)):
    job = await jobs.get_job(job_id)
    return job.to_dict()


@router.patch("/jobs/{job_id}", dependencies=admin)
async def update_job(job_id: str, payload: dict = Body(...), jobs: JobService = Depends(get_jobs)):
    """
    Partial update. Status changes go through the state machine; an
    illegal move returns 409 with machine-readable ``reasons``.
    """
    req = parse_payload(UpdateJobRequest, payload)
    job = await jobs.update_job(job_id, req)
    return job.to_dict()


@router.post("/jobs/{job_id}/open-bidding", dependencies=admin)
async def open_bidding(job_id: str, issuer: BiddingTokenIssuer = Depends(get_issuer)):
    links = await issuer.open_bidding(job_id)
    return links.to_dict()


@router.get("/jobs/{job_id}/links", dependencies=admin)
async def bidding_links(job_id: str, issuer: BiddingTokenIssuer = Depends(get_issuer)):
    links = await issuer.get_links(job_id)
    return links.to_dict()


@router.get("/jobs/{job_id}/bids", dependencies=admin)
async def job_bids(job_id: str, ledger: BidLedger = Depends(get_ledger)):
    bids = await ledger.list_bids(job_id)
    return [bid.to_dict() for bid in bids]


@router.post("/bids/{bid_id}/select", dependencies=admin)
async def select_bid(
    bid_id: str,
    request: Request,
    coordinator: AssignmentCoordinator = Depends(get_coordinator),
):
    result = await coordinator.select_bid(bid_id)
    return _selection_response(request, result)


# ============================================================================
# LINK HOLDERS: VENDOR BIDDING
# ============================================================================

@router.get("/bids/job/{vendor_token}", dependencies=limited)
async def vendor_bid_preview(vendor_token: str, ledger: BidLedger = Depends(get_ledger)):
    return await ledger.vendor_preview(vendor_token)


@router.post("/bids/{vendor_token}", status_code=201, dependencies=limited)
async def submit_bid(
    vendor_token: str,
    payload: dict = Body(...),
    ledger: BidLedger = Depends(get_ledger),
):
    submission = parse_payload(BidSubmission, payload)
    bid = await ledger.submit_bid(vendor_token, submission)
    return {"bidId": bid.id}


# ============================================================================
# LINK HOLDERS: CUSTOMER
# ============================================================================

@router.get("/public/customer/{token}/bids", dependencies=limited)
async def customer_bids(token: str, ledger: BidLedger = Depends(get_ledger)):
    job, bids = await ledger.customer_view(token)
    return {
        "jobId": job.id,
        "job": {
            "serviceType": job.service_type,
            "pickupAddress": job.pickup_address,
            "dropoffAddress": job.dropoff_address,
            "status": job.status.value,
            "biddingOpen": job.bidding_open,
            "selectedBidId": job.selected_bid_id,
        },
        "bids": [bid.to_dict() for bid in bids],
    }


@router.post("/public/customer/{token}/select", dependencies=limited)
async def customer_select(
    token: str,
    request: Request,
    payload: dict = Body(...),
    coordinator: AssignmentCoordinator = Depends(get_coordinator),
):
    req = parse_payload(SelectBidRequest, payload)
    result = await coordinator.select_for_customer(token, req.bid_id)
    return _selection_response(request, result)


# ============================================================================
# LINK HOLDERS: ASSIGNED VENDOR PORTAL
# ============================================================================

@router.get("/vendor/{token}", dependencies=limited)
async def vendor_portal(token: str, jobs: JobService = Depends(get_jobs)):
    return await jobs.vendor_view(token)


@router.patch("/vendor/{token}/status", dependencies=limited)
async def vendor_status(token: str, payload: dict = Body(...), jobs: JobService = Depends(get_jobs)):
    req = parse_payload(VendorStatusUpdate, payload)
    job = await jobs.vendor_update_status(token, req.status)
    return {"ok": True, "status": job.status.value}


# ============================================================================
# ADMIN: ALERTS, MONITOR, METRICS
# ============================================================================

@router.get("/alerts", dependencies=admin)
async def list_alerts(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    limit: int = Query(default=50, ge=1, le=ALERTS_MAX_LIMIT),
    store: DispatchStore = Depends(get_store),
):
    alerts = await store.alerts.list_recent(limit=limit, job_id=job_id)
    return [alert.to_dict() for alert in alerts]


@router.post("/admin/unbid-monitor/scan", dependencies=admin)
async def trigger_unbid_scan(monitor: UnbidMonitor = Depends(get_monitor)):
    """Run one scan now. Returns ``busy: true`` if a scan is in flight."""
    result = await monitor.tick()
    return result.to_dict()


@router.get("/health/detailed", dependencies=admin)
async def detailed_health(request: Request):
    return await request.app.state.health_checker.run_checks(include_non_critical=True)


@router.get("/metrics", dependencies=admin)
def metrics(request: Request):
    """Operational counters and histograms."""
    if not request.app.state.settings.enable_metrics:
        raise NotFoundError("Metrics disabled")
    return get_metrics_collector().get_metrics()


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(
    config: Settings | None = None,
    *,
    store: DispatchStore | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: settings (defaults to the environment-loaded singleton)
        store: use this store instead of the configured backend
        clock: time source handed to every service
    """
    cfg = config or default_settings

    fastapi_app = FastAPI(
        title="Roadside Dispatch",
        description="Job bidding and assignment engine for roadside service",
        version="0.4.0",
        lifespan=lifespan,
        docs_url=None if cfg.is_production else "/docs",
        redoc_url=None if cfg.is_production else "/redoc",
        openapi_url=None if cfg.is_production else "/openapi.json",
    )
    fastapi_app.state.settings = cfg
    fastapi_app.state.store_override = store
    fastapi_app.state.clock = clock
    fastapi_app.state.rate_limiter = RateLimitDependency(
        InMemoryRateLimiter(max_requests=cfg.rate_limit_per_minute, window_seconds=60)
    )

    # CORS - Restrictive outside dev
    if cfg.is_production or cfg.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.allowed_origins if cfg.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST", "PATCH"],
            allow_headers=["Content-Type", "Authorization"],
        )
    else:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(SecurityHeadersMiddleware, hsts=cfg.is_production)
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=cfg.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    fastapi_app.add_exception_handler(DispatchError, dispatch_error_handler)
    fastapi_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    fastapi_app.add_exception_handler(RequestValidationError, request_validation_handler)
    fastapi_app.add_exception_handler(Exception, general_exception_handler)

    fastapi_app.include_router(router)
    return fastapi_app


setup_logging(level=default_settings.log_level, use_json=default_settings.is_production)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "roadside.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not default_settings.is_production,
        log_level=default_settings.log_level.lower(),
        access_log=not default_settings.is_production,
        server_header=False,
        date_header=False,
    )

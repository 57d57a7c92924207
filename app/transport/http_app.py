# app/transport/http_app.py
"""
HTTP application for the dispatch engine.

Route groups:
1. Public: health/readiness and the token-gated bidding routes
   (vendor link, customer link, bid selection)
2. Admin: jobs, settlement, mission control, outbox, metrics
   (require ``Authorization: Bearer <ADMIN_TOKEN>``)

Services are built once in the lifespan and kept on ``app.state.container``.
Tests pass a prebuilt container to ``create_app`` and skip the database.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from app.config import Settings, settings
from app.core.dispatch.bidding import BiddingService
from app.core.dispatch.errors import DispatchError
from app.core.dispatch.jobs import JobService
from app.core.dispatch.mission_control import MissionControlService
from app.core.dispatch.ports import (
    BidRepository,
    ChargeRepository,
    JobRepository,
    OutboxRepository,
    VendorRepository,
)
from app.core.dispatch.services import DispatchNotifier
from app.core.dispatch.settlement import SettlementService
from app.infra.circuit_breaker import CircuitBreaker
from app.infra.db_async import close_pool, init_pool
from app.infra.health_checks_async import (
    AsyncDatabaseHealthCheck,
    AsyncHealthCheck,
    AsyncHealthChecker,
    NotificationBreakerHealthCheck,
)
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.notification_channels import (
    NotificationChannel,
    PushGatewayChannel,
    TwilioSmsChannel,
)
from app.infra.resilient_sender import ResilientChannelSender
from app.infra.schema_validator import validate_schema_version
from app.infra.unbid_monitor import UnbidMonitor
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from app.transport.schemas import (
    BidSubmissionIn,
    CompleteJobIn,
    JobCreateIn,
    JobPatchIn,
    serialize_bid,
    serialize_completion,
    serialize_job,
    serialize_outbox_entry,
)
from app.transport.security import check_configured_tokens, require_admin_auth

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)

OUTBOX_LIST_LIMIT = 200


# ============================================================================
# SERVICE CONTAINER
# ============================================================================

@dataclass
class DispatchContainer:
    jobs: JobService
    bidding: BiddingService
    settlement: SettlementService
    mission_control: MissionControlService
    outbox: OutboxRepository
    health: AsyncHealthChecker
    breakers: list[CircuitBreaker]
    monitor: Optional[UnbidMonitor] = None


def build_container(
    *,
    jobs: JobRepository,
    bids: BidRepository,
    vendors: VendorRepository,
    charges: ChargeRepository,
    outbox: OutboxRepository,
    sms_channel: NotificationChannel,
    push_channel: NotificationChannel,
    cfg: Settings = settings,
    health_checks: Optional[list[AsyncHealthCheck]] = None,
) -> DispatchContainer:
    """Wire services around the given repositories and channels."""
    breakers = []
    senders = []
    for channel in (sms_channel, push_channel):
        breaker = CircuitBreaker(cfg.breaker_config(), name=channel.name)
        breakers.append(breaker)
        senders.append(ResilientChannelSender(
            channel,
            outbox,
            breaker,
            timeout_seconds=cfg.notify_timeout_seconds,
            max_attempts=cfg.notify_max_attempts,
            backoff_seconds=cfg.notify_backoff_seconds,
        ))
    sms_sender, push_sender = senders

    notifier = DispatchNotifier(
        sms_sender,
        push_sender,
        base_url=cfg.client_base_url,
        ops_recipient=cfg.ops_alert_recipient,
    )

    monitor = None
    if cfg.unbid_monitor_enabled:
        monitor = UnbidMonitor(
            jobs,
            bids,
            notifier,
            interval_seconds=cfg.unbid_monitor_interval_seconds,
            alert_minutes=cfg.unbid_alert_minutes,
            batch_size=cfg.unbid_alert_batch,
        )

    checks = list(health_checks) if health_checks is not None else [AsyncDatabaseHealthCheck()]
    checks.append(NotificationBreakerHealthCheck(breakers))

    return DispatchContainer(
        jobs=JobService(jobs, vendors, notifier, base_url=cfg.client_base_url),
        bidding=BiddingService(jobs, bids, vendors, notifier, base_url=cfg.client_base_url),
        settlement=SettlementService(jobs, vendors, charges, cfg.commission_config()),
        mission_control=MissionControlService(
            jobs,
            vendors,
            window_days=cfg.scorecard_window_days,
            report_window_days=cfg.scorecard_report_window_days,
        ),
        outbox=outbox,
        health=AsyncHealthChecker(checks),
        breakers=breakers,
        monitor=monitor,
    )


def build_postgres_container(cfg: Settings = settings) -> DispatchContainer:
    from app.infra.pg_bid_repo_async import AsyncPostgresBidRepository
    from app.infra.pg_charge_repo_async import AsyncPostgresChargeRepository
    from app.infra.pg_job_repo_async import AsyncPostgresJobRepository
    from app.infra.pg_outbox_repo_async import AsyncPostgresOutboxRepository
    from app.infra.pg_vendor_repo_async import AsyncPostgresVendorRepository

    return build_container(
        jobs=AsyncPostgresJobRepository(),
        bids=AsyncPostgresBidRepository(),
        vendors=AsyncPostgresVendorRepository(),
        charges=AsyncPostgresChargeRepository(),
        outbox=AsyncPostgresOutboxRepository(),
        sms_channel=TwilioSmsChannel(
            cfg.twilio_account_sid,
            cfg.twilio_auth_token,
            cfg.twilio_from_number,
        ),
        push_channel=PushGatewayChannel(cfg.push_gateway_url, cfg.push_gateway_token),
        cfg=cfg,
    )


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_container(request: Request) -> DispatchContainer:
    return request.app.state.container


def get_job_service(request: Request) -> JobService:
    return get_container(request).jobs


def get_bidding_service(request: Request) -> BiddingService:
    return get_container(request).bidding


def get_settlement_service(request: Request) -> SettlementService:
    return get_container(request).settlement


def get_mission_control(request: Request) -> MissionControlService:
    return get_container(request).mission_control


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    container: Optional[DispatchContainer] = fastapi_app.state.container
    owns_resources = container is None

    logger.info(f"Starting application: env={settings.app_env}")

    if owns_resources:
        await init_pool()
        logger.info("Database pool initialized")

        if settings.is_production:
            if not settings.admin_token or len(settings.admin_token) < 32:
                logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
                raise RuntimeError("Weak ADMIN_TOKEN")
            if settings.log_level.upper() == "DEBUG":
                logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
                raise RuntimeError("LOG_LEVEL=DEBUG in production")

        check_configured_tokens()

        # Does NOT run migrations: python -m app.infra.migrate
        try:
            schema_result = await validate_schema_version()
            logger.info(f"Schema validated: {schema_result['current_version']}")
        except Exception:
            logger.critical(
                "Schema validation failed. Run migrations first: python -m app.infra.migrate",
                exc_info=True,
            )
            await close_pool()
            raise

        container = build_postgres_container(settings)
        fastapi_app.state.container = container

        logger.info(
            f"Channels: sms={'on' if settings.sms_enabled else 'outbox-only'} "
            f"push={'on' if settings.push_enabled else 'outbox-only'}"
        )

    if container.monitor is not None:
        await container.monitor.start()
    else:
        logger.info("Unbid monitor disabled")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")

    if container.monitor is not None:
        await container.monitor.stop()

    if owns_resources:
        await close_all_sessions()
        await close_pool()

    logger.info("Application shutdown complete")


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error(f"Dependency failure: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


# ============================================================================
# PUBLIC ROUTES
# ============================================================================

public_router = APIRouter()


@public_router.get("/health")
def health():
    """Liveness probe. Minimal information."""
    return {"status": "healthy"}


@public_router.get("/ready")
async def readiness(container: DispatchContainer = Depends(get_container)):
    """Readiness probe: database reachable with every dispatch table present."""
    result = await container.health.run_checks()
    status_code = 503 if result["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=result)


@public_router.get("/bids/job/{vendor_token}")
async def bid_job_preview(vendor_token: str, bidding: BiddingService = Depends(get_bidding_service)):
    return await bidding.job_preview(vendor_token)


@public_router.post("/bids/{vendor_token}", status_code=201)
async def submit_bid(
    vendor_token: str,
    payload: BidSubmissionIn,
    bidding: BiddingService = Depends(get_bidding_service),
):
    bid = await bidding.submit_bid(
        vendor_token,
        payload.vendor_name or "",
        payload.vendor_phone or "",
        payload.eta_minutes,
        payload.price,
    )
    return serialize_bid(bid)


@public_router.get("/bids/list/{customer_token}")
async def list_bids(customer_token: str, bidding: BiddingService = Depends(get_bidding_service)):
    return await bidding.list_bids(customer_token)


@public_router.post("/bids/{bid_id}/select")
async def select_bid(bid_id: str, bidding: BiddingService = Depends(get_bidding_service)):
    result = await bidding.select_bid(bid_id)
    return result.to_dict()


# ============================================================================
# ADMIN ROUTES
# ============================================================================

admin_router = APIRouter(dependencies=[Depends(require_admin_auth)])


@admin_router.post("/jobs", status_code=201)
async def create_job(payload: JobCreateIn, jobs: JobService = Depends(get_job_service)):
    job = await jobs.create_job(payload.model_dump())
    return serialize_job(job)


@admin_router.get("/jobs/{job_id}")
async def get_job(job_id: str, jobs: JobService = Depends(get_job_service)):
    return serialize_job(await jobs.get_job(job_id))


@admin_router.patch("/jobs/{job_id}")
async def update_job(job_id: str, payload: JobPatchIn, jobs: JobService = Depends(get_job_service)):
    job = await jobs.update_job(job_id, payload.model_dump(exclude_unset=True))
    return serialize_job(job)


@admin_router.post("/jobs/{job_id}/complete")
async def complete_job(
    job_id: str,
    payload: CompleteJobIn,
    settlement: SettlementService = Depends(get_settlement_service),
):
    result = await settlement.complete_job(
        job_id,
        payload.amount,
        method=payload.method,
        note=payload.note,
        auto_charge=payload.auto_charge,
    )
    return serialize_completion(result)


@admin_router.post("/jobs/{job_id}/charge")
async def retry_charge(job_id: str, settlement: SettlementService = Depends(get_settlement_service)):
    outcome = await settlement.retry_charge(job_id)
    return {"ok": outcome.status == "charged", "jobId": job_id, "charge": outcome.to_dict()}


@admin_router.post("/jobs/{job_id}/open-bidding")
async def open_bidding(job_id: str, bidding: BiddingService = Depends(get_bidding_service)):
    return await bidding.open_bidding(job_id)


@admin_router.get("/jobs/{job_id}/links")
async def job_links(job_id: str, jobs: JobService = Depends(get_job_service)):
    return await jobs.links(job_id)


@admin_router.get("/ops/mission-control")
async def mission_control(service: MissionControlService = Depends(get_mission_control)):
    return await service.snapshot()


@admin_router.get("/ops/vendor-scorecards")
async def vendor_scorecards(service: MissionControlService = Depends(get_mission_control)):
    return await service.vendor_scorecards()


@admin_router.get("/outbox")
async def list_outbox(container: DispatchContainer = Depends(get_container)):
    entries = await container.outbox.list_recent(OUTBOX_LIST_LIMIT)
    return {"items": [serialize_outbox_entry(e) for e in entries]}


@admin_router.get("/metrics")
def metrics():
    return get_metrics_collector().get_metrics()


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(container: Optional[DispatchContainer] = None) -> FastAPI:
    fastapi_app = FastAPI(
        title="Dispatch Engine",
        description="Job dispatch, bidding and commission settlement",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    fastapi_app.state.container = container

    if settings.is_production or settings.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
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

    fastapi_app.add_middleware(SecurityHeadersMiddleware)
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    fastapi_app.add_exception_handler(DispatchError, dispatch_error_handler)
    fastapi_app.add_exception_handler(HTTPException, http_exception_handler)
    fastapi_app.add_exception_handler(RequestValidationError, validation_exception_handler)

    fastapi_app.include_router(public_router)
    fastapi_app.include_router(admin_router)
    return fastapi_app


app = create_app()

import json
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_bridge.bot_routing import BotCallbackClient, BotRoutingCoordinator
from inbox_bridge.config import settings
from inbox_bridge.errors import AppError, InvalidInputError, NotFoundError, PayloadValidationError
from inbox_bridge.identifiers import parse_uuid
from inbox_bridge.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from inbox_bridge.messaging import MessagingClient
from inbox_bridge.metrics import get_metrics, get_metrics_content_type
from inbox_bridge.pipeline import WebhookIngestionPipeline
from inbox_bridge.pool import TenantConnectionPool
from inbox_bridge.schemas import (
    ConnectWebhooksResponse,
    ErrorResponse,
    HealthResponse,
    PoolStatusResponse,
    WebhookRequest,
    WebhookResponse,
    WebhookSubscriptionRequest,
    WebhookSubscriptions,
    WebhookValidationResponse,
)
from inbox_bridge.storage import check_db_health, get_company, get_db, init_db, init_tenant_schema


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create the companies table, build the tenant pool and HTTP clients
    - Shutdown: dispose tenant engines, close HTTP clients
    """
    await init_db()

    pool = TenantConnectionPool(
        settings.TENANT_DATABASE_URL_TEMPLATE,
        max_size=settings.TENANT_POOL_MAX_SIZE,
        initializer=init_tenant_schema if settings.TENANT_SCHEMA_AUTOCREATE else None,
    )
    messaging = MessagingClient(settings.MESSAGING_API_BASE_URL, timeout=settings.MESSAGING_TIMEOUT_SECONDS)
    callbacks = BotCallbackClient(timeout=settings.BOT_CALLBACK_TIMEOUT_SECONDS)

    app.state.pool = pool
    app.state.messaging = messaging
    app.state.pipeline = WebhookIngestionPipeline(
        pool,
        BotRoutingCoordinator(callbacks, messaging),
        max_contacts=settings.WEBHOOK_MAX_CONTACTS,
        max_messages=settings.WEBHOOK_MAX_MESSAGES,
        email_domain=settings.PLACEHOLDER_EMAIL_DOMAIN,
    )
    yield

    await pool.close_all()
    await messaging.aclose()
    await callbacks.aclose()


app = FastAPI(
    title="Inbox Bridge",
    description="Multi-tenant webhook ingestion for messaging provider events",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(code=exc.code, detail=exc.message).model_dump(),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Database error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(code="storage_error", detail="Database error").model_dump(),
    )


def parse_company_id(raw: str) -> uuid.UUID:
    company_id = parse_uuid(raw)
    if company_id is None:
        raise InvalidInputError("Invalid company ID")
    return company_id


def build_webhook_uri(request: Request, company_id: uuid.UUID) -> str:
    """Public URI of a company's webhook endpoint, from PUBLIC_URL or the incoming request."""
    base = settings.PUBLIC_URL or str(request.base_url)
    return f"{base.rstrip('/')}/api/webhook/{company_id}"


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """Readiness check - 200 only if the main database is reachable and migrated."""
    if not await check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get(
    "/api/webhook/{company_id}",
    response_model=WebhookValidationResponse,
    responses={404: {"model": ErrorResponse}, 400: {"model": ErrorResponse}},
)
async def validate_webhook(company_id: str, db: AsyncSession = Depends(get_db)) -> WebhookValidationResponse:
    """Endpoint check performed by the provider when webhooks are connected."""
    company = await get_company(db, parse_company_id(company_id))
    if company is None:
        raise NotFoundError("Company not found")
    return WebhookValidationResponse()


@app.post(
    "/api/webhook/{company_id}",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed or oversized batch"},
        404: {"model": ErrorResponse, "description": "Company not found"},
        422: {"model": ErrorResponse, "description": "Payload does not match the webhook schema"},
    }
)
async def webhook(company_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> WebhookResponse:
    """
    Ingest a batch of provider events for one company.

    Always answers {"status": "ok"} for a well-formed batch addressed to a
    known company, whatever happened to individual items.
    """
    company_uuid = parse_company_id(company_id)
    log_webhook_data(request, company_id=str(company_uuid), result="rejected")

    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")
    if len(raw_body) > settings.WEBHOOK_MAX_BODY_BYTES:
        raise InvalidInputError("Webhook payload too large")

    try:
        body = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        raise InvalidInputError(f"Invalid JSON: {e}")

    try:
        payload = WebhookRequest.model_validate(body)
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        raise PayloadValidationError("Invalid webhook payload")

    outcome = await request.app.state.pipeline.handle(db, company_uuid, payload)
    log_webhook_data(request, company_id=str(company_uuid), result=outcome.status, counts=outcome.counts())

    return WebhookResponse(status="ok")


@app.post(
    "/api/webhook/{company_id}/test",
    response_model=WebhookResponse,
    responses={404: {"model": ErrorResponse}, 400: {"model": ErrorResponse}},
)
async def connectivity_test(company_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> WebhookResponse:
    """Run a connectivity-test batch; no side effects."""
    company_uuid = parse_company_id(company_id)
    outcome = await request.app.state.pipeline.handle(db, company_uuid, WebhookRequest(test=True))
    log_webhook_data(request, company_id=str(company_uuid), result=outcome.status)
    return WebhookResponse(status="ok")


@app.get(
    "/api/webhook/{company_id}/connect",
    response_model=ConnectWebhooksResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Company not found or API key not set"},
        502: {"model": ErrorResponse, "description": "Provider rejected the registration"},
    },
)
async def connect_webhooks(company_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> ConnectWebhooksResponse:
    """Point the provider's webhooks for this company at our webhook endpoint."""
    company_uuid = parse_company_id(company_id)
    company = await get_company(db, company_uuid)
    if company is None:
        raise NotFoundError("Company not found")
    if not company.api_key:
        raise NotFoundError("API key not set for company")

    subscription = WebhookSubscriptionRequest(
        webhooks_uri=build_webhook_uri(request, company_uuid),
        subscriptions=WebhookSubscriptions(),
    )
    await request.app.state.messaging.connect_webhooks(company.api_key, subscription)
    logger.info(f"Webhooks connected for company {company_uuid}: {subscription.webhooks_uri}")

    return ConnectWebhooksResponse(
        ok=True,
        webhooks_uri=subscription.webhooks_uri,
        subscriptions=subscription.subscriptions,
    )


# =============================================================================
# Observability Routes
# =============================================================================

@app.get("/api/pools", response_model=PoolStatusResponse)
async def pool_status(request: Request) -> PoolStatusResponse:
    """Tenant databases with a cached engine."""
    pool: TenantConnectionPool = request.app.state.pool
    return PoolStatusResponse(count=pool.count(), databases=pool.list_active())


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.orm import sessionmaker
from sse_starlette.sse import EventSourceResponse

from social_sync.alerts import AlertChannel
from social_sync.config import Settings, settings
from social_sync.connection_manager import ConnectionManager
from social_sync.errors import MalformedEvent, RateLimited, SocialSyncError
from social_sync.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from social_sync.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from social_sync.platforms import PlatformAdapter, build_platforms
from social_sync.schemas import (
    AuthorizationStartResponse,
    ConnectionResponse,
    ErrorResponse,
    HealthResponse,
    MutationRequest,
    MutationResponse,
    StateResponse,
    SyncResponse,
    WebhookResponse,
)
from social_sync.state_api import StateAPI
from social_sync.storage import SessionLocal, check_db_health, init_db
from social_sync.sync_engine import SyncEngine
from social_sync.unified_store import ChangeEvent, UnifiedStore
from social_sync.utils import verify_hmac_signature


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

SSE_PING_SECONDS = 15.0


@dataclass
class Services:
    """Process-wide service graph, built once and held on app.state."""
    platforms: dict[str, PlatformAdapter]
    store: UnifiedStore
    connections: ConnectionManager
    engine: SyncEngine
    state_api: StateAPI
    alerts: AlertChannel


def build_services(
    app_settings: Settings,
    platforms: Optional[dict[str, PlatformAdapter]] = None,
    session_factory: sessionmaker = SessionLocal,
) -> Services:
    platforms = build_platforms(app_settings) if platforms is None else platforms
    alerts = AlertChannel(app_settings.ALERT_WEBHOOK_URL)
    store = UnifiedStore(session_factory)
    connections = ConnectionManager(session_factory, platforms, store, settings=app_settings)
    engine = SyncEngine(connections, store, alerts=alerts)
    state_api = StateAPI(store, engine, message_window=app_settings.STATE_MESSAGE_WINDOW)
    return Services(platforms, store, connections, engine, state_api, alerts)


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, services: Services = Depends(get_services)) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. At least one platform has its credentials configured
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not services.platforms:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="No platform credentials configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get("/webhooks/{platform}")
async def verify_webhook_subscription(
    request: Request,
    platform: str,
    mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
    services: Services = Depends(get_services),
) -> Response:
    """Subscription handshake: echo hub.challenge when the verify token matches."""
    services.connections.adapter(platform)
    expected = request.app.state.settings.WEBHOOK_VERIFY_TOKEN

    if mode == "subscribe" and expected and verify_token == expected:
        record_webhook_outcome(platform, "verified")
        log_webhook_data(request, platform, "verified")
        return PlainTextResponse(challenge or "")

    logger.warning(f"Webhook verification failed for {platform}")
    record_webhook_outcome(platform, "verify_failed")
    log_webhook_data(request, platform, "verify_failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


@router.post(
    "/webhooks/{platform}",
    response_model=WebhookResponse,
    responses={401: {"description": "Invalid signature"}},
)
async def receive_webhook(
    request: Request,
    platform: str,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    services: Services = Depends(get_services),
) -> WebhookResponse:
    """
    Accept a platform event delivery.

    - Verifies the HMAC-SHA256 signature of the raw body (X-Hub-Signature-256)
    - Acknowledges immediately; ingestion runs after the response is sent
    - Malformed bodies are logged and dropped, never retried
    """
    adapter = services.connections.adapter(platform)
    raw_body = await request.body()

    if not verify_hmac_signature(raw_body, x_hub_signature_256, adapter.webhook_secret or ""):
        logger.error(f"Invalid webhook signature for {platform}")
        record_webhook_outcome(platform, "invalid_signature")
        log_webhook_data(request, platform, "invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.warning(f"Dropping {platform} webhook with invalid JSON: {e}")
        record_webhook_outcome(platform, "malformed")
        log_webhook_data(request, platform, "malformed")
        return WebhookResponse(status="dropped")

    entries = payload.get("entry") if isinstance(payload, dict) else None
    record_webhook_outcome(platform, "accepted")
    log_webhook_data(request, platform, "accepted", events=len(entries) if isinstance(entries, list) else None)
    background_tasks.add_task(ingest_in_background, services, platform, payload)
    return WebhookResponse(status="received")


async def ingest_in_background(services: Services, platform: str, payload: Any) -> None:
    try:
        result = await services.engine.ingest_webhook_payload(platform, payload)
    except MalformedEvent as e:
        logger.warning(f"Malformed {platform} webhook dropped: {e}")
        return
    except Exception as e:
        logger.exception(f"Webhook ingestion failed for {platform}")
        services.alerts.send("Webhook ingestion failed", {"platform": platform, "error": str(e)})
        return
    logger.info(
        f"Webhook ingested for {platform}: created={result.created} duplicates={result.duplicates} "
        f"discarded={result.discarded} failed={result.failed}"
    )


# =============================================================================
# OAuth Routes
# =============================================================================

@router.get("/auth/{platform}/start", response_model=AuthorizationStartResponse)
async def start_authorization(platform: str, services: Services = Depends(get_services)) -> AuthorizationStartResponse:
    """Begin an OAuth attempt; the browser should be sent to authorization_url."""
    start = services.connections.begin_authorization(platform)
    return AuthorizationStartResponse(authorization_url=start.authorization_url, state=start.state)


@router.get("/auth/{platform}/callback")
async def authorization_callback(
    request: Request,
    platform: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """
    OAuth redirect target. Completes the handshake and sends the browser
    back to the admin UI with ?connected=<platform> or ?error=<code>.
    """
    admin_url = request.app.state.settings.ADMIN_UI_URL

    def back_to_admin(**params: str) -> RedirectResponse:
        return RedirectResponse(f"{admin_url}?{urlencode(params)}", status_code=status.HTTP_303_SEE_OTHER)

    if error:
        logger.warning(f"{platform} authorization denied: {error} {error_description or ''}")
        return back_to_admin(error=error)

    try:
        connections = await services.connections.complete_authorization(code or "", state or "")
    except SocialSyncError as e:
        logger.error(f"{platform} authorization failed: {e.message}")
        return back_to_admin(error=e.code)

    return back_to_admin(connected=platform, accounts=str(len(connections)))


# =============================================================================
# Connection Routes
# =============================================================================

@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(services: Services = Depends(get_services)) -> list[ConnectionResponse]:
    return [ConnectionResponse.model_validate(c) for c in services.connections.list_connections()]


@router.post("/connections/{connection_id}/disconnect", response_model=ConnectionResponse)
async def disconnect(connection_id: str, services: Services = Depends(get_services)) -> ConnectionResponse:
    connection = await services.connections.disconnect(connection_id)
    return ConnectionResponse.model_validate(connection)


@router.post(
    "/connections/{connection_id}/sync",
    response_model=SyncResponse,
    responses={409: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def sync_connection(
    connection_id: str,
    since: Annotated[Optional[datetime], Query(description="Re-fetch changes since this ISO-8601 time")] = None,
    services: Services = Depends(get_services),
) -> SyncResponse:
    """Force a poll. 429 when the platform throttles, 409 when a reconnect is required."""
    result = await services.engine.poll_conversations(connection_id, since=since)
    return SyncResponse(
        connection_id=connection_id,
        skipped=result.skipped,
        cancelled=result.cancelled,
        pages=result.pages,
        created=result.created,
        duplicates=result.duplicates,
        failed=result.failed,
    )


# =============================================================================
# State Routes
# =============================================================================

@router.get("/social/state", response_model=StateResponse)
async def get_state(
    message_window: Annotated[Optional[int], Query(ge=1, le=500)] = None,
    services: Services = Depends(get_services),
) -> StateResponse:
    return services.state_api.get_state(message_window)


@router.post(
    "/social/state",
    response_model=MutationResponse,
    response_model_exclude_none=True,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def post_state(mutation: MutationRequest, services: Services = Depends(get_services)) -> MutationResponse:
    return await services.state_api.apply_mutation(mutation)


@router.get("/social/events")
async def stream_events(request: Request, services: Services = Depends(get_services)) -> EventSourceResponse:
    """Server-Sent Events stream of unified store changes."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    # store writers may run on worker threads
    unsubscribe = services.state_api.subscribe(lambda event: loop.call_soon_threadsafe(queue.put_nowait, event))

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_PING_SECONDS)
                    yield {"event": "change", "data": json.dumps(event.to_dict())}
                except asyncio.TimeoutError:
                    yield {"event": "ping", "data": "{}"}
        finally:
            unsubscribe()

    return EventSourceResponse(event_generator(), media_type="text/event-stream")


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Application
# =============================================================================

async def social_sync_error_handler(request: Request, exc: SocialSyncError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))
    log = logger.warning if exc.status_code < 500 else logger.error
    log(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.to_dict()).model_dump(exclude_none=True),
        headers=headers,
    )


def create_app(
    app_settings: Optional[Settings] = None,
    platforms: Optional[dict[str, PlatformAdapter]] = None,
    session_factory: sessionmaker = SessionLocal,
) -> FastAPI:
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: Initialize database and create tables
        - Shutdown: Finish in-flight sends, close platform clients
        """
        init_db()
        yield
        services: Services = app.state.services
        await services.engine.drain()
        for adapter in services.platforms.values():
            aclose = getattr(adapter, "aclose", None)
            if aclose is not None:
                await aclose()

    app = FastAPI(
        title="Social Sync API",
        description="OAuth platform connections and conversation sync for the clinic inbox",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.services = build_services(app_settings, platforms, session_factory)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(SocialSyncError, social_sync_error_handler)
    app.include_router(router)
    return app


app = create_app()

"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware

# ── Dispatch core ──
from backend.app.alerts.channels.sms_gateway import SmsTransport, build_sms_transport
from backend.app.alerts.coordinator import DispatchCoordinator, Requester
from backend.app.alerts.fanout import NotificationFanoutDispatcher
from backend.app.alerts.responder import HelperResponseService
from backend.app.alerts.sessions import SessionRegistry
from backend.app.alerts.stores import build_alert_store
from backend.app.alerts.stores.base import AlertStore
from backend.app.alerts.stores.memory import (
    ApiLocationProvider,
    InMemoryContactStore,
    InMemoryHelperStore,
    NullAudioCapture,
    NullFeedback,
)

# ── API routers ──
from backend.app.api.v1.sos import router as sos_router
from backend.app.api.v1.helpers import router as helpers_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


@dataclass
class Services:
    """Long-lived collaborators shared by every request."""
    settings: Settings
    alert_store: AlertStore
    contact_store: InMemoryContactStore
    helper_store: InMemoryHelperStore
    transport: SmsTransport
    dispatcher: NotificationFanoutDispatcher
    responder: HelperResponseService
    registry: SessionRegistry


def build_services(
    config: Settings = settings,
    *,
    alert_store: Optional[AlertStore] = None,
    contact_store: Optional[InMemoryContactStore] = None,
    helper_store: Optional[InMemoryHelperStore] = None,
    transport: Optional[SmsTransport] = None,
) -> Services:
    if alert_store is None:
        alert_store = build_alert_store(config)
    if contact_store is None:
        contact_store = InMemoryContactStore()
    if helper_store is None:
        helper_store = InMemoryHelperStore()
    if transport is None:
        transport = build_sms_transport(config)
    dispatcher = NotificationFanoutDispatcher(
        transport, max_concurrency=config.FANOUT_MAX_CONCURRENCY,
    )

    def new_session(requester: Requester) -> DispatchCoordinator:
        # positions arrive through /sos/{id}/location
        return DispatchCoordinator(
            requester,
            alert_store=alert_store,
            contact_store=contact_store,
            helper_store=helper_store,
            dispatcher=dispatcher,
            location_provider=ApiLocationProvider(),
            feedback=NullFeedback(),
            audio_capture=NullAudioCapture(),
            settings=config,
        )

    return Services(
        settings=config,
        alert_store=alert_store,
        contact_store=contact_store,
        helper_store=helper_store,
        transport=transport,
        dispatcher=dispatcher,
        responder=HelperResponseService(alert_store, helper_store),
        registry=SessionRegistry(new_session),
    )


async def _close(resource) -> None:
    close = getattr(resource, "close", None)
    if close is not None:
        await close()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI application (tests pass pre-seeded services)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        app.state.services = services if services is not None else build_services(settings)
        logger.info(
            "Starting %s v%s [%s] store=%s sms=%s",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
            settings.ALERT_STORE_BACKEND, settings.SMS_PROVIDER,
        )
        yield
        await app.state.services.registry.shutdown()
        await _close(app.state.services.transport)
        await _close(app.state.services.alert_store)
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency dispatch coordinator. Raises SOS alerts, fans them "
            "out by SMS to personal emergency contacts, matches nearby "
            "volunteer helpers by distance and ETA, and keeps every "
            "session in sync with the authoritative alert store until "
            "the alert is resolved or cancelled."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (last added runs outermost) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(sos_router)
    app.include_router(helpers_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Liveness plus a summary of the dispatch core."""
        svc: Services = app.state.services
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "alert_store": svc.settings.ALERT_STORE_BACKEND,
            "sms_provider": svc.settings.SMS_PROVIDER,
            "active_sessions": len(svc.registry.active_sessions()),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.app.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)

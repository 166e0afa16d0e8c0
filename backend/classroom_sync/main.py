"""
Classroom Sync - FastAPI Application Entry Point.

Feature-based modular architecture:
  Each feature in classroom_sync/features/ has its own router, service and
  schemas. The lifespan builds the long-lived components once and wires them
  together; routes reach them through `app.state`.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classroom_sync.config import Settings, get_settings
from classroom_sync.core.database import get_supabase_client
from classroom_sync.core.events import DeviceEventPublisher, ObserverHub
from classroom_sync.core.exceptions import RegistryUnavailableError
from classroom_sync.features.alerts.service import AlertService
from classroom_sync.features.commands.dispatcher import CommandDispatcher
from classroom_sync.features.devices.registry import DeviceRegistry, InMemoryRegistry, SupabaseRegistry
from classroom_sync.features.devices.service import DeviceService
from classroom_sync.features.gateway.gateway import ProtocolGateway
from classroom_sync.features.gateway.sequencer import Sequencer
from classroom_sync.features.schedules.engine import ScheduleEngine, schedule_timezone
from classroom_sync.features.schedules.holidays import HolidayCalendar

# ── Feature Routers ──────────────────────────────────────
from classroom_sync.features.commands.router import router as commands_router
from classroom_sync.features.devices.router import router as devices_router
from classroom_sync.features.gateway.router import router as gateway_router

logger = logging.getLogger(__name__)


async def connect_registry(settings: Settings) -> tuple[DeviceRegistry, bool]:
    """Build the registry and wait for it. Returns (registry, limited_mode)."""
    if settings.REGISTRY_BACKEND == "memory":
        return InMemoryRegistry(), False

    try:
        registry: DeviceRegistry = SupabaseRegistry(get_supabase_client())
    except RegistryUnavailableError as e:
        logger.error(f"❌ {e.message}: starting in limited mode")
        return InMemoryRegistry(), True

    for attempt in range(1, settings.REGISTRY_CONNECT_RETRIES + 1):
        try:
            await registry.ping()
            return registry, False
        except RegistryUnavailableError as e:
            logger.warning(f"Registry not reachable (attempt {attempt}/{settings.REGISTRY_CONNECT_RETRIES}): {e}")
            if attempt < settings.REGISTRY_CONNECT_RETRIES:
                await asyncio.sleep(settings.REGISTRY_RETRY_DELAY_SECONDS)

    logger.error("❌ Registry unavailable after retries: starting in limited mode")
    return registry, True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup & shutdown."""
    settings = get_settings()
    print(f"🚀 {settings.APP_NAME} v{settings.APP_VERSION} starting...")
    print(f"🗄️ Registry: {settings.REGISTRY_BACKEND}")

    registry, limited = await connect_registry(settings)

    hub = ObserverHub()
    events = DeviceEventPublisher(hub)
    alerts = AlertService(registry, hub)
    sequencer = Sequencer(registry, events, alerts, settings)
    gateway = ProtocolGateway(registry, sequencer, events, alerts, settings)
    gateway.limited_mode = limited
    dispatcher = CommandDispatcher(registry, gateway, events, alerts, settings)

    sequencer.add_result_listener(dispatcher.on_command_result)
    gateway.add_connect_listener(dispatcher.on_device_connected)
    gateway.add_disconnect_listener(dispatcher.on_device_disconnected)

    scheduler = AsyncIOScheduler(timezone=schedule_timezone(settings))
    engine = ScheduleEngine(
        registry, alerts, events, dispatcher, HolidayCalendar(registry), scheduler, settings
    )
    gateway.start(scheduler)
    if not limited:
        try:
            await engine.start()
        except RegistryUnavailableError as e:
            logger.error(f"❌ Could not load schedules: {e}")
    scheduler.start()
    print(f"📅 Scheduler started with {len(scheduler.get_jobs())} job(s)")
    if limited:
        print("⚠️ Running in LIMITED MODE (registry unavailable)")

    app.state.registry = registry
    app.state.event_hub = hub
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher
    app.state.schedule_engine = engine
    app.state.device_service = DeviceService(registry, gateway, events)

    yield

    print("👋 Shutting down...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    dispatcher.shutdown()
    await gateway.close_all()


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Real-time relay synchronization for classroom devices",
        lifespan=lifespan,
    )

    # ── CORS ─────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Register Feature Routers ─────────────────────────
    app.include_router(gateway_router, tags=["Gateway"])
    app.include_router(devices_router, prefix="/api/devices", tags=["Devices"])
    app.include_router(commands_router, prefix="/api/devices", tags=["Commands"])

    # ── Health Check ─────────────────────────────────────
    @app.get("/health", tags=["System"])
    async def health_check():
        gateway: ProtocolGateway = app.state.gateway
        return {
            "status": "limited" if gateway.limited_mode else "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "limited_mode": gateway.limited_mode,
            "connected_devices": len(gateway.connected_devices()),
        }

    return app


app = create_app()

"""FastAPI app - lifespan, CORS, router registration."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from .api.alerts import router as alerts_router, push_router
from .api.children import router as children_router
from .api.pairing import router as pairing_router
from .api.sensor_events import router as watch_router
from .services.emergency import get_emergency_registry
from .services.monitor import get_monitor_registry
from .services.scheduler import get_scheduler_status, start_scheduler, stop_scheduler
from .core.database import get_database
from .core.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


# Used by: FastAPI lifespan - init DB + scheduler on startup, tear down on shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_database()
    await db.connect(settings.DATABASE_URL)
    if settings.CREATE_TABLES:
        await db.create_tables()
    await start_scheduler()

    yield

    await get_monitor_registry().stop_all()
    await get_emergency_registry().shutdown()
    await stop_scheduler()
    await db.disconnect()


app = FastAPI(
    title="AtSight API",
    version="1.0.0",
    description="AtSight - child safety alerts: off-wrist, geofencing, battery, SOS/HALT and pairing",
    lifespan=lifespan
)

cors_origins = settings.CORS_ORIGINS.copy()
if settings.CORS_EXTRA_ORIGINS:
    cors_origins.extend([o.strip() for o in settings.CORS_EXTRA_ORIGINS.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(watch_router)
app.include_router(alerts_router)
app.include_router(push_router)
app.include_router(pairing_router)
app.include_router(children_router)


@app.get("/health")
async def health():
    return {
        "database": get_database().is_connected,
        "scheduler": get_scheduler_status(),
        "monitored_children": len(get_monitor_registry().active()),
    }

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import socketio

from prima.config import get_settings
from prima.db.postgres import create_tables, engine as db_engine
from prima.api.routes import reminders, webhooks
from prima.api.websocket.handler import broadcast_escalation, sio
from prima.services.engine import ReminderEngine

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Socket.IO integration
sio_app = socketio.ASGIApp(sio, other_asgi_app=app)

# API routes
app.include_router(webhooks.router, prefix=settings.API_PREFIX, tags=["Webhooks"])
app.include_router(reminders.router, prefix=settings.API_PREFIX, tags=["Reminders"])


@app.on_event("startup")
async def startup():
    await create_tables()

    app.state.engine = ReminderEngine.from_settings(settings, escalate=broadcast_escalation)
    await app.state.engine.start()
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)


@app.on_event("shutdown")
async def shutdown():
    reminder_engine = getattr(app.state, "engine", None)
    if reminder_engine is not None:
        await reminder_engine.stop()
    await db_engine.dispose()


@app.get("/health")
async def health_check():
    reminder_engine = getattr(app.state, "engine", None)
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "engine": reminder_engine.health() if reminder_engine is not None else None,
    }


# Mount Socket.IO
app = sio_app

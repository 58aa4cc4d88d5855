import logging

import socketio

from prima.config import get_settings

logger = logging.getLogger(__name__)
_settings = get_settings()

VOLUNTEERS_ROOM = "volunteers"

# Use Redis manager so Celery workers can emit escalations via the same bus
_redis_mgr = socketio.AsyncRedisManager(_settings.REDIS_URL) if _settings.USE_REDIS else None
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    client_manager=_redis_mgr,
)


@sio.event
async def connect(sid, environ):
    logger.info("Socket.IO client connected: %s", sid)


@sio.event
async def disconnect(sid):
    logger.info("Socket.IO client disconnected: %s", sid)


@sio.event
async def join_volunteers(sid, data=None):
    """Volunteer dashboard joins the shared escalation room."""
    await sio.enter_room(sid, VOLUNTEERS_ROOM)
    await sio.emit("joined", {"room": VOLUNTEERS_ROOM}, to=sid)


@sio.event
async def join_volunteer(sid, data):
    """A volunteer joins their personal room for escalations of assigned patients."""
    volunteer_id = (data or {}).get("volunteer_id")
    if volunteer_id:
        await sio.enter_room(sid, f"volunteer_{volunteer_id}")
        await sio.emit("joined", {"room": f"volunteer_{volunteer_id}"}, to=sid)


# --- Broadcast functions (passed to the orchestrator as its escalation sink) ---

async def _emit(event: str, payload: dict):
    rooms = [VOLUNTEERS_ROOM]
    volunteer_id = payload.get("assigned_volunteer_id")
    if volunteer_id:
        rooms.append(f"volunteer_{volunteer_id}")
    await sio.emit(event, payload, room=rooms)


async def broadcast_emergency(payload: dict):
    """Push an emergency reply to every volunteer dashboard."""
    await _emit("emergency_escalation", payload)


async def broadcast_human_intervention(payload: dict):
    """Push a reply the bot could not handle to the volunteer dashboards."""
    await _emit("human_intervention", payload)


async def broadcast_escalation(event: str, payload: dict):
    if event == "emergency_escalation":
        await broadcast_emergency(payload)
    elif event == "human_intervention":
        await broadcast_human_intervention(payload)
    else:
        await _emit(event, payload)

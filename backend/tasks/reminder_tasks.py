"""Celery tasks for scheduled reminder sends and context housekeeping."""
import asyncio
import logging
import uuid

from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Helper to run async functions in Celery sync context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_engine(work):
    """Run ``work(engine)`` against a disposable DB engine bound to this loop.

    Each _run_async() call uses a new event loop and asyncpg connections
    are bound to the loop they were created on, so the global engine from
    prima.db.postgres cannot be reused here.
    """
    from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
    from prima.config import get_settings
    from prima.services.engine import ReminderEngine

    settings = get_settings()
    db = create_async_engine(settings.DATABASE_URL, pool_size=2, max_overflow=0)
    factory = async_sessionmaker(db, class_=AsyncSession, expire_on_commit=False)
    engine = ReminderEngine.from_settings(settings, session_factory=factory)
    await engine.start()
    try:
        return await work(engine)
    finally:
        await engine.stop()
        await db.dispose()


@celery_app.task(name="tasks.reminder_tasks.send_reminder")
def send_reminder(reminder_id: str):
    """Send one reminder and record the outcome."""
    from prima.errors import PrimaError

    async def _run(engine):
        try:
            result = await engine.sender.send_reminder(uuid.UUID(reminder_id), only_if_due=True)
        except PrimaError as e:
            logger.warning("Reminder %s not sent: %s", reminder_id, e)
            return {"sent": False, "error": str(e)}
        if result is None:
            return {"sent": False, "skipped": "not_due"}
        return {"sent": result.success, "message_id": result.provider_message_id, "error": result.error}

    return _run_async(_with_engine(_run))


@celery_app.task(name="tasks.reminder_tasks.send_verification")
def send_verification(patient_id: str):
    """Send the WhatsApp verification prompt to a newly registered patient."""
    from prima.errors import NotFoundError

    async def _run(engine):
        try:
            result = await engine.sender.send_verification(uuid.UUID(patient_id))
        except NotFoundError as e:
            logger.warning("Verification for %s not sent: %s", patient_id, e)
            return {"sent": False, "error": str(e)}
        return {"sent": result.success, "message_id": result.provider_message_id, "error": result.error}

    return _run_async(_with_engine(_run))


@celery_app.task(name="tasks.reminder_tasks.dispatch_due_reminders")
def dispatch_due_reminders():
    """Enqueue a send for every reminder due now (Celery beat, every minute)."""

    async def _run(engine):
        due = await engine.sender.due_reminders()
        return [str(reminder.id) for reminder in due]

    reminder_ids = _run_async(_with_engine(_run))
    for reminder_id in reminder_ids:
        send_reminder.delay(reminder_id)
    if reminder_ids:
        logger.info("Dispatched %d due reminders", len(reminder_ids))
    return {"dispatched": len(reminder_ids)}


@celery_app.task(name="tasks.reminder_tasks.cleanup_expired_contexts")
def cleanup_expired_contexts():
    """Hard-delete conversation contexts past the retention window."""

    async def _run(engine):
        return await engine.contexts.cleanup_expired()

    removed = _run_async(_with_engine(_run))
    logger.info("Removed %d expired conversation contexts", removed)
    return {"removed": removed}

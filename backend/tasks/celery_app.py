from celery import Celery

from prima.config import get_settings

settings = get_settings()

celery_app = Celery(
    "prima",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "tasks.reminder_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "tasks.reminder_tasks.send_*": {"queue": "reminders.send"},
        "tasks.reminder_tasks.dispatch_due_reminders": {"queue": "reminders.send"},
        "tasks.reminder_tasks.cleanup_expired_contexts": {"queue": "maintenance"},  # LOW priority
    },
    beat_schedule={
        "dispatch-due-reminders": {
            "task": "tasks.reminder_tasks.dispatch_due_reminders",
            "schedule": 60.0,  # Every minute
        },
        "cleanup-expired-contexts": {
            "task": "tasks.reminder_tasks.cleanup_expired_contexts",
            "schedule": 3600.0,  # Every hour
        },
    },
)

from datetime import timedelta

from celery import Celery
from celery.signals import after_setup_logger

from supportdesk.config import settings

celery_app = Celery(
    "supportdesk",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "supportdesk.tasks.gmail_tasks",
        "supportdesk.tasks.event_tasks",
        "supportdesk.tasks.conversation_tasks",
    ],
)

celery_app.conf.beat_schedule = {
    "renew-gmail-watches": {
        "task": "supportdesk.tasks.gmail_tasks.renew_all_watches",
        "schedule": timedelta(days=6),   # Gmail watches expire at 7 days
    },
    "dispatch-pending-jobs": {
        "task": "supportdesk.tasks.event_tasks.dispatch_pending_jobs",
        "schedule": timedelta(seconds=5),
    },
    "close-inactive-conversations": {
        "task": "supportdesk.tasks.conversation_tasks.close_inactive_conversations",
        "schedule": timedelta(hours=1),
    },
}


@after_setup_logger.connect
def _set_log_level(logger, *args, **kwargs):
    logger.setLevel(settings.LOG_LEVEL)

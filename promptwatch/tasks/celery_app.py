from celery import Celery, signals
from celery.schedules import crontab

from promptwatch.core.config import settings
from promptwatch.core.logging import setup_logging
from promptwatch.core.sentry import init_sentry

celery_app = Celery(
    "promptwatch",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Celery Beat: due businesses are picked up and stale records swept on the same cadence
celery_app.conf.beat_schedule = {
    "dispatch-due-businesses": {
        "task": "dispatch_due_businesses",
        "schedule": crontab(minute=f"*/{settings.scheduler_interval_minutes}"),
    },
    "sweep-stale-executions": {
        "task": "sweep_stale_executions",
        "schedule": crontab(minute=f"*/{settings.scheduler_interval_minutes}"),
    },
}

celery_app.conf.include = [
    "promptwatch.tasks.execution_tasks",
]


@signals.setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Replaces Celery's own root logger setup
    setup_logging()


@signals.worker_init.connect
def _init_worker(**kwargs):
    init_sentry()

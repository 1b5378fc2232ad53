"""
Celery application configuration and setup.
"""
from celery import Celery
from celery.signals import worker_ready, worker_shutting_down
import structlog

from .config import settings

logger = structlog.get_logger(__name__)

celery_app = Celery(
    "brain_dumper",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["brain_dumper.tasks.calendar_sync"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "brain_dumper.tasks.calendar_sync.*": {"queue": "calendar_sync"},
    },

    task_always_eager=False,
    task_eager_propagates=True,

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_retry_delay=60,
    task_max_retries=3,

    result_expires=3600,

    worker_send_task_events=True,
    task_send_sent_event=True,
    worker_hijack_root_logger=False,
    worker_log_color=False,
)

celery_app.conf.beat_schedule = {
    "renew_expiring_watches": {
        "task": "brain_dumper.tasks.calendar_sync.renew_expiring_watches",
        "schedule": float(settings.WATCH_RENEWAL_INTERVAL_SECONDS),
    },
    "periodic_calendar_sync": {
        "task": "brain_dumper.tasks.calendar_sync.periodic_calendar_sync",
        "schedule": float(settings.PERIODIC_SYNC_INTERVAL_SECONDS),
    },
}


@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    logger.info("Celery worker ready", worker=sender.hostname)


@worker_shutting_down.connect
def worker_shutting_down_handler(sender=None, **kwargs):
    logger.info("Celery worker shutting down", worker=sender.hostname)


class BaseTask(celery_app.Task):
    """Base task class with error handling and logging."""

    def on_success(self, retval, task_id, args, kwargs):
        logger.info("Task completed successfully", task_id=task_id, task_name=self.name, result=retval)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Task failed",
            task_id=task_id,
            task_name=self.name,
            error=str(exc),
            traceback=str(einfo)
        )

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            "Task retry",
            task_id=task_id,
            task_name=self.name,
            error=str(exc),
            retry_count=self.request.retries
        )


celery_app.Task = BaseTask

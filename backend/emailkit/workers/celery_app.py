"""
Celery application configuration.
Sets up Celery with Redis broker and the beat schedule that drives usage
reporting outside the API process.
"""
import logging
from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure
from emailkit.config import settings
from emailkit.utils.metrics import (
    worker_tasks_processing,
    worker_tasks_completed_total,
    worker_tasks_failed_total,
)
from emailkit.utils.logging import configure_logging
from emailkit.workers.metrics_server import start_metrics_server

logger = logging.getLogger(__name__)

REPORT_USAGE_TASK = "report_usage"

# Create Celery app
celery_app = Celery(
    "emailkit",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "emailkit.tasks.report_usage",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "report-usage": {
            "task": REPORT_USAGE_TASK,
            "schedule": settings.usage_report_interval_seconds,
            # A tick still queued when the next one is due is dropped
            "options": {"expires": settings.usage_report_interval_seconds},
        },
    },
)

configure_logging('emailkit-worker', settings.log_level)

try:
    start_metrics_server(port=9090)
except OSError as e:
    logger.warning(f"Failed to start metrics server: {e}")


@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **kwds):
    """Track task start."""
    worker_tasks_processing.labels(task=task.name if task else "unknown").inc()


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **kwds):
    """Track task completion."""
    name = task.name if task else "unknown"
    worker_tasks_processing.labels(task=name).dec()
    worker_tasks_completed_total.labels(task=name, status=state or "unknown").inc()


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, traceback=None, einfo=None, **kwds):
    """Track task failures."""
    worker_tasks_failed_total.labels(task=sender.name if sender else "unknown").inc()

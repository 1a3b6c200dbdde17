"""Celery application for queued Coconut submissions and job refreshes."""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from coconut_jobs.core.config import settings
from coconut_jobs.core.logging import setup_logging

celery_app = Celery(
    "coconut_jobs",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Queued submissions must finish within the job TTR
    task_time_limit=settings.COCONUT_TRANSCODE_JOB_TTR,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["coconut_jobs.modules.transcoding"])


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the JSON log format in workers instead of Celery's own."""
    setup_logging(level="DEBUG" if settings.DEBUG else "INFO")

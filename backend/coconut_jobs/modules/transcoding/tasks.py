"""Celery tasks for Coconut jobs.

Submissions are queued here when ``COCONUT_PREFER_QUEUE`` is enabled, so
the Coconut API call happens outside of the request. Failed submissions are
not retried; callers submit again.
"""

import asyncio
import logging
from typing import Any, Optional

from celery import Task

from coconut_jobs.core.celery_app import celery_app
from coconut_jobs.core.database import async_session_maker
from coconut_jobs.core.validators import ConfigValidationError
from coconut_jobs.modules.transcoding.client import CoconutClientError
from coconut_jobs.modules.transcoding.service import (
    JobService,
    TranscodingServiceError,
)

logger = logging.getLogger(__name__)


class CoconutTask(Task):
    """Base task for Coconut operations."""
    abstract = True
    max_retries = 0

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Log task failure."""
        logger.error(
            "Coconut task failed",
            extra={"task_id": task_id, "task_name": self.name, "error": str(exc)},
        )


@celery_app.task(bind=True, base=CoconutTask)
def transcode_source_task(
    self: CoconutTask,
    source: str,
    input_url: Optional[str] = None,
    outputs: Optional[list[Any]] = None,
    storage: Any = None,
    volume: Optional[str] = None,
    config: Optional[str] = None,
) -> dict:
    """Create and submit a Coconut job for a source.

    Returns:
        dict: Submission result
    """
    return asyncio.run(
        _transcode_source_async(source, input_url, outputs, storage, volume, config)
    )


async def _transcode_source_async(
    source: str,
    input_url: Optional[str],
    outputs: Optional[list[Any]],
    storage: Any,
    volume: Optional[str],
    config: Optional[str],
) -> dict:
    """Async implementation of a queued submission."""
    async with async_session_maker() as session:
        service = JobService(session)
        try:
            result = await service.transcode(
                source,
                input_url=input_url,
                outputs=outputs,
                config=config,
                storage=storage,
                volume=volume,
                use_queue=False,
            )
        except (ConfigValidationError, CoconutClientError, TranscodingServiceError) as e:
            logger.warning(
                "Queued transcoding failed",
                extra={"source": source, "error": str(e)},
            )
            return {"success": False, "source": source, "error": str(e)}

        return {
            "success": True,
            "source": source,
            "job_id": result.job.id if result.job else None,
            "coconut_id": result.job.coconut_id if result.job else None,
            "reused_formats": result.reused_formats,
        }


@celery_app.task(bind=True, base=CoconutTask)
def refresh_job_task(self: CoconutTask, job_id: int, include_metadata: bool = False) -> dict:
    """Pull the current info of a job from Coconut.

    Returns:
        dict: Job status after the refresh
    """
    return asyncio.run(_refresh_job_async(job_id, include_metadata))


async def _refresh_job_async(job_id: int, include_metadata: bool) -> dict:
    """Async implementation of a job refresh."""
    async with async_session_maker() as session:
        service = JobService(session)
        try:
            job = await service.pull_job_info(job_id, include_metadata=include_metadata)
        except (CoconutClientError, TranscodingServiceError) as e:
            logger.warning("Job refresh failed", extra={"job_id": job_id, "error": str(e)})
            return {"success": False, "job_id": job_id, "error": str(e)}

        return {
            "success": True,
            "job_id": job.id,
            "status": job.status,
            "progress": job.progress,
        }

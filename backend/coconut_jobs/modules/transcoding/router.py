"""API Router for Coconut transcoding jobs.

Provides endpoints for:
- Submitting sources for transcoding (single and batch)
- Receiving Coconut notifications
- Receiving output files pushed by Coconut (upload proxy)
- Inspecting, refreshing and cancelling jobs
- Listing and clearing outputs
"""

import logging
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from coconut_jobs.core.database import get_session
from coconut_jobs.core.validators import ConfigValidationError
from coconut_jobs.modules.storage.models import VolumeConfigurationError
from coconut_jobs.modules.storage.service import (
    StorageUploadError,
    UploadProxyService,
)
from coconut_jobs.modules.transcoding.client import (
    CoconutAPIError,
    CoconutConnectionError,
)
from coconut_jobs.modules.transcoding.models import Job
from coconut_jobs.modules.transcoding.schemas import (
    BatchTranscodeRequest,
    BatchTranscodeResponse,
    ClearOutputsRequest,
    ClearOutputsResponse,
    FormatOutputsResponse,
    JobInfo,
    NotificationPayload,
    NotificationResponse,
    OutputInfo,
    TranscodeRequest,
    TranscodeResponse,
    UploadResponse,
)
from coconut_jobs.modules.transcoding.service import (
    InvalidJobTransitionError,
    InvalidNotificationError,
    JobCancellationVetoedError,
    JobNotFoundError,
    JobNotSubmittedError,
    JobService,
    OutputService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coconut", tags=["coconut"])


def get_job_service(session: AsyncSession = Depends(get_session)) -> JobService:
    """Dependency to get JobService instance."""
    return JobService(session)


def get_output_service(session: AsyncSession = Depends(get_session)) -> OutputService:
    """Dependency to get OutputService instance."""
    return OutputService(session)


def get_upload_service() -> UploadProxyService:
    """Dependency to get UploadProxyService instance."""
    return UploadProxyService()


async def _job_info(job: Job, service: JobService) -> JobInfo:
    outputs = await service.output_service.get_job_outputs(job.id)
    return JobInfo.model_validate(job).model_copy(
        update={"outputs": [OutputInfo.model_validate(o) for o in outputs]}
    )


# ==================== Submission ====================

@router.post("/jobs", response_model=TranscodeResponse, status_code=status.HTTP_201_CREATED)
async def transcode_source(
    request: TranscodeRequest,
    service: JobService = Depends(get_job_service),
) -> TranscodeResponse:
    """Transcode a source into the requested outputs.

    Formats that already have a ready output are reused instead of being
    transcoded again.
    """
    try:
        result = await service.transcode(
            request.source,
            input_url=request.input_url,
            outputs=request.outputs,
            config=request.config,
            storage=request.storage,
            volume=request.volume,
            use_queue=request.use_queue,
        )
    except ConfigValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CoconutConnectionError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except CoconutAPIError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": e.message, "error_code": e.error_code},
        )

    return TranscodeResponse(
        job=await _job_info(result.job, service) if result.job else None,
        outputs=[OutputInfo.model_validate(o) for o in result.outputs],
        reused_formats=result.reused_formats,
        queued=result.queued,
    )


@router.post("/jobs/batch", response_model=BatchTranscodeResponse)
async def batch_transcode(
    request: BatchTranscodeRequest,
    service: JobService = Depends(get_job_service),
) -> BatchTranscodeResponse:
    """Transcode several sources, reporting aggregate counts."""
    result = await service.batch_transcode(
        request.sources,
        outputs=request.outputs,
        config=request.config,
        storage=request.storage,
        volume=request.volume,
        use_queue=request.use_queue,
    )
    return BatchTranscodeResponse(
        total=result.total,
        succeeded=result.succeeded,
        failed=result.failed,
        outputs_count=result.outputs_count,
        errors=result.errors,
    )


# ==================== Coconut callbacks ====================

@router.post("/jobs/notify", response_model=NotificationResponse)
async def receive_notification(
    request: Request,
    service: JobService = Depends(get_job_service),
) -> NotificationResponse:
    """Apply a job notification sent by Coconut."""
    try:
        payload = NotificationPayload.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.warning("Rejected malformed Coconut notification", extra={"error": str(e)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed notification")

    try:
        ignored = await service.handle_notification(payload)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (InvalidNotificationError, InvalidJobTransitionError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return NotificationResponse(success=True, ignored=ignored)


@router.post("/jobs/upload", response_model=UploadResponse)
async def upload_output(
    volume: str = Query(..., min_length=1),
    output_path: str = Query(..., min_length=1),
    encoded_video: UploadFile = File(...),
    service: UploadProxyService = Depends(get_upload_service),
) -> UploadResponse:
    """Store an output file pushed by Coconut, replacing any existing file."""
    try:
        result = await service.store(
            volume,
            output_path,
            encoded_video.file,
            encoded_video.content_type or "application/octet-stream",
        )
    except VolumeConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageUploadError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    finally:
        await encoded_video.close()

    return UploadResponse(
        volume=result.volume,
        output_path=result.output_path,
        file_size=result.file_size,
        replaced=result.replaced,
        url=result.url,
    )


# ==================== Jobs ====================

@router.get("/jobs/{job_id}", response_model=JobInfo)
async def get_job(
    job_id: int,
    service: JobService = Depends(get_job_service),
) -> JobInfo:
    """Get a job with its outputs."""
    job = await service.get_job_by_id(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return await _job_info(job, service)


@router.post("/jobs/{job_id}/cancel", response_model=JobInfo)
async def cancel_job(
    job_id: int,
    service: JobService = Depends(get_job_service),
) -> JobInfo:
    """Cancel a job. Event handlers may prevent the cancellation."""
    try:
        job = await service.cancel_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (JobCancellationVetoedError, InvalidJobTransitionError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return await _job_info(job, service)


@router.post("/jobs/{job_id}/refresh", response_model=JobInfo)
async def refresh_job(
    job_id: int,
    include_metadata: bool = Query(False),
    service: JobService = Depends(get_job_service),
) -> JobInfo:
    """Pull the current job info from Coconut."""
    try:
        job = await service.pull_job_info(job_id, include_metadata=include_metadata)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except JobNotSubmittedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except CoconutConnectionError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except CoconutAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return await _job_info(job, service)


# ==================== Outputs ====================

@router.get("/outputs", response_model=FormatOutputsResponse)
async def get_format_outputs(
    source: str = Query(..., min_length=1),
    formats: Optional[list[str]] = Query(None),
    transcode_missing: bool = Query(False),
    service: JobService = Depends(get_job_service),
) -> FormatOutputsResponse:
    """List a source's outputs per format, optionally transcoding missing ones."""
    try:
        grouped = await service.get_format_outputs(
            source, formats, transcode_missing=transcode_missing
        )
    except ConfigValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CoconutConnectionError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except CoconutAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    return FormatOutputsResponse(
        source=source,
        outputs={
            format: [OutputInfo.model_validate(o) for o in outputs]
            for format, outputs in grouped.items()
        },
    )


@router.post("/outputs/clear", response_model=ClearOutputsResponse)
async def clear_outputs(
    request: ClearOutputsRequest,
    service: OutputService = Depends(get_output_service),
) -> ClearOutputsResponse:
    """Delete the outputs of the given sources."""
    deleted = await service.clear_source_outputs(request.sources, request.formats)
    return ClearOutputsResponse(deleted=deleted)

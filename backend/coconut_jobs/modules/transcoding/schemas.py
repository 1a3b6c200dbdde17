"""Pydantic schemas for Coconut jobs, outputs and notifications."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from coconut_jobs.modules.transcoding.models import JobStatus, OutputStatus


class NotificationEvent(str, Enum):
    """Events Coconut posts to the notification webhook."""
    INPUT_TRANSFERRED = "input.transferred"
    OUTPUT_COMPLETED = "output.completed"
    OUTPUT_FAILED = "output.failed"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"


# ==================== Submission ====================

class OutputRequest(BaseModel):
    """One desired output of a transcoding request."""
    format: str = Field(..., min_length=1, description="Coconut format string, e.g. mp4:720p")
    path: Optional[str] = Field(None, description="Output path, generated when omitted")
    key: Optional[str] = Field(None, description="Output key, defaults to the format")


class TranscodeOptions(BaseModel):
    """Output and storage options shared by single and batch requests."""
    outputs: list[Union[str, OutputRequest]] = Field(
        default_factory=list, description="Format strings or output params"
    )
    config: Optional[str] = Field(None, description="Named job config providing outputs/storage")
    storage: Optional[Union[str, dict[str, Any]]] = Field(
        None, description="Named storage, volume handle or storage params"
    )
    volume: Optional[str] = Field(None, description="Volume to store outputs in")
    use_queue: Optional[bool] = Field(None, description="Submit from a background worker")


class TranscodeRequest(TranscodeOptions):
    """Request to transcode one source."""
    source: str = Field(..., min_length=1, description="Source reference (asset id or URL)")
    input_url: Optional[str] = Field(None, description="Input URL, defaults to the source")


class BatchTranscodeRequest(TranscodeOptions):
    """Request to transcode several sources with the same options."""
    sources: list[str] = Field(..., min_length=1)


# ==================== Responses ====================

class OutputInfo(BaseModel):
    """Output information."""
    id: int
    job_id: int
    source: str
    format: str
    key: str
    path: str
    storage: Optional[dict] = None
    url: Optional[str] = None
    status: OutputStatus
    progress: Optional[str] = None
    error: Optional[str] = None
    output_metadata: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobInfo(BaseModel):
    """Job information."""
    id: int
    coconut_id: Optional[str] = None
    source: str
    input_url: str
    input_status: Optional[str] = None
    status: JobStatus
    progress: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    storage_params: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    outputs: list[OutputInfo] = Field(default_factory=list)

    class Config:
        from_attributes = True


class TranscodeResponse(BaseModel):
    """Result of a transcoding request."""
    job: Optional[JobInfo] = None
    outputs: list[OutputInfo]
    reused_formats: list[str] = Field(default_factory=list)
    queued: bool = False


class BatchTranscodeResponse(BaseModel):
    """Aggregate result of a batch transcoding request."""
    total: int
    succeeded: int
    failed: int
    outputs_count: int
    errors: dict[str, str] = Field(default_factory=dict)


class FormatOutputsResponse(BaseModel):
    """Outputs of a source grouped by format."""
    source: str
    outputs: dict[str, list[OutputInfo]]


class ClearOutputsRequest(BaseModel):
    sources: list[str] = Field(..., min_length=1)
    formats: Optional[list[str]] = None


class ClearOutputsResponse(BaseModel):
    deleted: int


# ==================== Notifications ====================

class NotificationPayload(BaseModel):
    """Body of a Coconut webhook notification."""
    job_id: str = Field(..., min_length=1)
    event: NotificationEvent
    metadata: bool = False
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationResponse(BaseModel):
    success: bool = True
    ignored: bool = False


class UploadResponse(BaseModel):
    """Result of an upload proxy request."""
    volume: str
    output_path: str
    file_size: int
    replaced: bool
    url: str

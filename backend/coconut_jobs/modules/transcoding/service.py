"""Coconut transcoding services.

Implements:
- Job submission with reuse of existing outputs per (source, format)
- Notification handling and output reconciliation
- Vetoable job cancellation and output clearing
- Batch transcoding of several sources
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from coconut_jobs.core.config import Settings, settings as default_settings
from coconut_jobs.core.events import EventDispatcher, dispatcher as default_dispatcher
from coconut_jobs.core.metrics import (
    COCONUT_JOBS_SUBMITTED_TOTAL,
    COCONUT_NOTIFICATIONS_TOTAL,
    COCONUT_OUTPUTS_TOTAL,
)
from coconut_jobs.core.validators import AssociativeArrayValidator, ConfigValidationError
from coconut_jobs.modules.storage.models import StorageSettings, Volume
from coconut_jobs.modules.storage.service import InvalidStorageError, StorageResolver
from coconut_jobs.modules.transcoding.client import (
    CoconutAPIError,
    CoconutClient,
    CoconutClientError,
    CoconutConnectionError,
)
from coconut_jobs.modules.transcoding.events import (
    EVENT_AFTER_CANCEL_JOB,
    EVENT_AFTER_SAVE_JOB,
    EVENT_AFTER_SAVE_OUTPUT,
    EVENT_BEFORE_CANCEL_JOB,
    EVENT_BEFORE_CLEAR_OUTPUTS,
    EVENT_BEFORE_SAVE_JOB,
    EVENT_BEFORE_SAVE_OUTPUT,
    CancellableJobEvent,
    ClearOutputsEvent,
    JobEvent,
    OutputEvent,
)
from coconut_jobs.modules.transcoding.helpers import (
    format_as_key,
    format_extension,
    format_output_path,
    privatise_path,
    url_hash,
)
from coconut_jobs.modules.transcoding.models import (
    Job,
    JobStatus,
    Output,
    OutputStatus,
    can_transition,
)
from coconut_jobs.modules.transcoding.repository import JobRepository, OutputRepository
from coconut_jobs.modules.transcoding.schemas import (
    NotificationEvent,
    NotificationPayload,
    OutputRequest,
)

logger = logging.getLogger(__name__)


# ==================== Exceptions ====================

class TranscodingServiceError(Exception):
    """Base exception for transcoding service errors."""
    pass


class JobNotFoundError(TranscodingServiceError):
    """Raised when a job does not exist."""
    pass


class JobAlreadySubmittedError(TranscodingServiceError):
    """Raised when running a job that already has a Coconut id."""
    pass


class JobNotSubmittedError(TranscodingServiceError):
    """Raised when pulling info of a job that was never submitted."""
    pass


class InvalidNotificationError(TranscodingServiceError):
    """Raised when a notification payload can not be applied."""
    pass


class JobCancellationVetoedError(TranscodingServiceError):
    """Raised when an event handler prevented a job cancellation."""
    pass


class InvalidJobTransitionError(TranscodingServiceError):
    """Raised when a job can not move to the requested status."""
    pass


# ==================== Named job configs ====================

JOB_CONFIG_VALIDATOR = AssociativeArrayValidator(
    forbidden_keys=("input", "notification"),
    allowed_keys=("storage", "outputs"),
    check_all_keys=True,
)


def get_named_job_config(handle: str, app_settings: Optional[Settings] = None) -> dict:
    """Get a job config from the ``COCONUT_JOBS`` setting.

    Raises:
        ConfigValidationError: If the config does not exist or is invalid
    """
    configs = (app_settings or default_settings).COCONUT_JOBS
    if handle not in configs:
        raise ConfigValidationError(f'Could not find job config "{handle}"', attribute="config")
    return dict(JOB_CONFIG_VALIDATOR.validate(configs[handle], f"jobs.{handle}"))


def normalize_output_requests(outputs: Any) -> list[OutputRequest]:
    """Output requests from format strings, param mappings or a format map.

    A mapping is read as ``{format: path or params}``.

    Raises:
        ConfigValidationError: If no output is given or one is malformed
    """
    if isinstance(outputs, dict):
        items = []
        for format, params in outputs.items():
            if isinstance(params, str):
                params = {"path": params}
            items.append({**(params or {}), "format": format})
        outputs = items

    requests: list[OutputRequest] = []
    for item in outputs or []:
        if isinstance(item, OutputRequest):
            requests.append(item)
        elif isinstance(item, str):
            requests.append(OutputRequest(format=item))
        elif AssociativeArrayValidator.is_associative(item) and item.get("format"):
            requests.append(OutputRequest(
                format=item["format"], path=item.get("path"), key=item.get("key"),
            ))
        else:
            raise ConfigValidationError(
                "Each output must be a format string or contain a format",
                attribute="outputs",
            )

    if not requests:
        raise ConfigValidationError("Job must define at least one output", attribute="outputs")
    return requests


# ==================== Remote data ====================

def remote_job_status(status: Optional[str]) -> JobStatus:
    """Local job status for a Coconut job status such as ``job.completed``."""
    name = (status or "").split(".", 1)[-1]
    if name == "failed":
        return JobStatus.ERROR
    if name == "completed":
        return JobStatus.COMPLETED
    if name == "starting":
        return JobStatus.STARTING
    return JobStatus.PROCESSING


def remote_output_status(status: Optional[str]) -> OutputStatus:
    """Local output status for a Coconut output status."""
    name = (status or "").split(".", 1)[-1]
    if name == "completed":
        return OutputStatus.READY
    if name in ("failed", "skipped", "aborted"):
        return OutputStatus.ERRORED
    return OutputStatus.PENDING


def parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def populate_job_data(job: Job, data: dict[str, Any]) -> None:
    """Copy Coconut job data (id, timestamps, progress) onto a job.

    Status is not copied; callers apply it through the state machine.
    """
    remote_id = data.get("id") or data.get("job_id")
    if remote_id:
        if job.coconut_id is None:
            job.coconut_id = str(remote_id)
        elif job.coconut_id != str(remote_id):
            logger.warning(
                "Ignoring Coconut id change",
                extra={"job_id": job.id, "coconut_id": job.coconut_id, "received_id": str(remote_id)},
            )

    if data.get("progress"):
        job.progress = str(data["progress"])

    created_at = parse_datetime(data.get("created_at"))
    if created_at and job.submitted_at is None:
        job.submitted_at = created_at

    completed_at = parse_datetime(data.get("completed_at"))
    if completed_at:
        job.completed_at = completed_at


# ==================== Results ====================

@dataclass
class OutputPlan:
    """An output about to be requested from Coconut."""
    format: str
    key: str
    path: str
    storage: dict[str, Any]


@dataclass
class TranscodeResult:
    job: Optional[Job]
    outputs: list[Output]
    reused_formats: list[str] = field(default_factory=list)
    queued: bool = False


@dataclass
class BatchTranscodeResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    outputs_count: int = 0
    errors: dict[str, str] = field(default_factory=dict)


# ==================== Outputs ====================

class OutputService:
    """Service for persisting, querying and clearing outputs."""

    def __init__(self, session: AsyncSession, events: Optional[EventDispatcher] = None):
        self.session = session
        self.events = events or default_dispatcher
        self.output_repo = OutputRepository(session)

    async def save_output(self, output: Output, is_new: bool = False) -> Output:
        """Save an output, firing the before/after save events."""
        self.events.trigger(EVENT_BEFORE_SAVE_OUTPUT, OutputEvent(output=output, is_new=is_new))
        output = await self.output_repo.save(output)
        self.events.trigger(EVENT_AFTER_SAVE_OUTPUT, OutputEvent(output=output, is_new=is_new))
        return output

    async def claim_output(self, output: Output) -> tuple[Output, bool]:
        """Store a new output unless one exists for its source and format.

        Returns:
            The stored output, and whether ``output`` itself was stored
        """
        self.events.trigger(EVENT_BEFORE_SAVE_OUTPUT, OutputEvent(output=output, is_new=True))
        stored, created = await self.output_repo.claim(output)
        if created:
            self.events.trigger(EVENT_AFTER_SAVE_OUTPUT, OutputEvent(output=stored, is_new=True))
        return stored, created

    async def delete_output(self, output: Output) -> None:
        await self.output_repo.delete(output)
        await self.session.commit()

    async def clear_outputs(self, criteria: dict[str, Any]) -> int:
        """Delete all outputs matching ``criteria``.

        Handlers of the before-clear event may veto the deletion.

        Returns:
            Number of deleted outputs
        """
        event = self.events.trigger(EVENT_BEFORE_CLEAR_OUTPUTS, ClearOutputsEvent(criteria=criteria))
        if not event.is_valid:
            logger.info("Clearing outputs prevented by event handler", extra={"criteria": str(criteria)})
            return 0

        outputs = await self.output_repo.find(**criteria)
        deleted = await self.output_repo.delete_many([output.id for output in outputs])
        await self.session.commit()

        logger.info("Cleared outputs", extra={"criteria": str(criteria), "deleted": deleted})
        return deleted

    async def get_job_outputs(self, job_id: int) -> list[Output]:
        return await self.output_repo.get_by_job(job_id)

    async def get_source_outputs(self, source: str) -> list[Output]:
        return await self.output_repo.find(source=source)

    async def clear_source_outputs(
        self, sources: list[str], formats: Optional[list[str]] = None
    ) -> int:
        """Delete the outputs of ``sources``, optionally only some formats."""
        criteria: dict[str, Any] = {"source": list(sources)}
        if formats:
            criteria["format"] = list(formats)
        return await self.clear_outputs(criteria)

    async def get_format_outputs(
        self, source: str, formats: Optional[list[str]] = None
    ) -> dict[str, list[Output]]:
        """Outputs of a source grouped by format.

        Requested formats without outputs map to an empty list.
        """
        criteria: dict[str, Any] = {"source": source}
        if formats:
            criteria["format"] = list(formats)

        grouped: dict[str, list[Output]] = {format: [] for format in formats or []}
        for output in await self.output_repo.find(**criteria):
            grouped.setdefault(output.format, []).append(output)
        return grouped


# ==================== Jobs ====================

class JobService:
    """Service for submitting Coconut jobs and tracking their lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        client: Optional[CoconutClient] = None,
        storage: Optional[StorageResolver] = None,
        events: Optional[EventDispatcher] = None,
        app_settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = app_settings or default_settings
        self.events = events or default_dispatcher
        self.client = client or CoconutClient()
        self.storage = storage or StorageResolver(self.settings, self.events)
        self.job_repo = JobRepository(session)
        self.output_service = OutputService(session, self.events)

    @property
    def output_repo(self) -> OutputRepository:
        return self.output_service.output_repo

    # ==================== Queries ====================

    async def get_job_by_id(self, job_id: int) -> Optional[Job]:
        return await self.job_repo.get_by_id(job_id)

    async def get_job_by_coconut_id(self, coconut_id: str) -> Optional[Job]:
        return await self.job_repo.get_by_coconut_id(coconut_id)

    async def get_jobs_for_input(self, input_url: str) -> list[Job]:
        return await self.job_repo.get_for_input(url_hash(input_url))

    async def require_job(self, job_id: int) -> Job:
        job = await self.job_repo.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    # ==================== Persistence ====================

    async def save_job(self, job: Job, is_new: bool = False) -> Job:
        """Save a job within the current transaction.

        Fires the before/after save events. The caller commits.
        """
        history = inspect(job).attrs.status.history
        previous_status = history.deleted[0] if history.deleted else None
        self.events.trigger(
            EVENT_BEFORE_SAVE_JOB, JobEvent(job=job, is_new=is_new, previous_status=previous_status)
        )
        job = await self.job_repo.add(job) if is_new else await self.job_repo.save(job)
        self.events.trigger(
            EVENT_AFTER_SAVE_JOB, JobEvent(job=job, is_new=is_new, previous_status=previous_status)
        )
        return job

    def _set_status(self, job: Job, status: JobStatus, strict: bool = True) -> bool:
        """Move a job to ``status`` if the transition is allowed.

        Raises:
            InvalidJobTransitionError: If not allowed and ``strict`` is set
        """
        if not can_transition(job.status, status.value):
            if strict:
                raise InvalidJobTransitionError(
                    f"Job {job.id} can not move from {job.status} to {status.value}"
                )
            logger.info(
                "Skipping job status change",
                extra={"job_id": job.id, "status": job.status, "target_status": status.value},
            )
            return False
        job.status = status.value
        return True

    # ==================== Submission ====================

    def _resolve_target(
        self,
        storage: Union[str, dict[str, Any], StorageSettings, None],
        volume: Optional[str],
    ) -> tuple[Optional[Volume], StorageSettings]:
        """Volume (if any) and storage settings the job outputs go to.

        Raises:
            ConfigValidationError: If the storage can not be resolved
        """
        if volume:
            target = self.storage.require_volume(volume)
            return target, self.storage.get_volume_storage(target)

        if storage is None:
            storage = self.settings.COCONUT_DEFAULT_STORAGE or self.settings.COCONUT_DEFAULT_UPLOAD_VOLUME

        if isinstance(storage, str) and self.storage.get_named_storage(storage) is None:
            target = self.storage.get_volume(storage)
            if target is not None:
                return target, self.storage.get_volume_storage(target)

        resolved = self.storage.parse_storage(storage)
        if resolved is None:
            raise InvalidStorageError(f'Could not resolve storage "{storage}"', attribute="storage")
        return None, resolved

    def _plan_outputs(
        self,
        input_url: str,
        requests: list[OutputRequest],
        volume: Optional[Volume],
        storage: StorageSettings,
    ) -> list[OutputPlan]:
        plans: list[OutputPlan] = []
        keys: set[str] = set()
        for request in requests:
            # Raises for formats without a container
            format_extension(request.format)

            key = request.key or format_as_key(request.format)
            if key in keys:
                raise ConfigValidationError(
                    f'Output key "{key}" is used more than once', attribute="outputs"
                )
            keys.add(key)

            path = format_output_path(
                request.path or self.settings.COCONUT_OUTPUT_PATH_FORMAT,
                input_url,
                request.format,
            )
            if volume is not None:
                path = privatise_path(path)
                descriptor = volume.descriptor(path)
            else:
                descriptor = {"path": path, "service": storage.service or "url"}

            plans.append(OutputPlan(
                format=request.format,
                key=key,
                path=path,
                storage=descriptor,
            ))
        return plans

    async def _is_reusable(self, output: Output) -> bool:
        """Whether an existing output satisfies a new request for its format."""
        if output.status == OutputStatus.READY.value:
            return True
        if output.status == OutputStatus.PENDING.value:
            # Only a job Coconut accepted can still complete the output
            job = await self.job_repo.get_by_id(output.job_id)
            return job is not None and job.is_submitted and not job.is_terminal
        return False

    async def transcode(
        self,
        source: str,
        input_url: Optional[str] = None,
        outputs: Any = None,
        config: Optional[str] = None,
        storage: Union[str, dict[str, Any], StorageSettings, None] = None,
        volume: Optional[str] = None,
        use_queue: Optional[bool] = None,
    ) -> TranscodeResult:
        """Transcode a source into the requested output formats.

        Existing ready (or in-flight) outputs are reused. A job is only
        created for formats that have no output or an errored one, and is
        submitted to Coconut right away unless queued.

        Raises:
            ConfigValidationError: If the request is malformed (no job is
                created)
            CoconutConnectionError: If Coconut could not be reached (the
                job is marked as errored)
            CoconutAPIError: If Coconut rejected the job (the job is marked
                as errored)
        """
        input_url = input_url or source
        if not input_url:
            raise ConfigValidationError("Job input is missing", attribute="input")

        if config:
            job_config = get_named_job_config(config, self.settings)
            outputs = outputs or job_config.get("outputs")
            storage = storage or job_config.get("storage")

        requests = normalize_output_requests(outputs)
        target_volume, storage_settings = self._resolve_target(storage, volume)
        plans = self._plan_outputs(input_url, requests, target_volume, storage_settings)

        reused: list[Output] = []
        to_reassign: list[tuple[OutputPlan, Output]] = []
        to_claim: list[OutputPlan] = []
        for plan in plans:
            existing = await self.output_repo.get_by_source_format(source, plan.format)
            if existing is None:
                to_claim.append(plan)
            elif await self._is_reusable(existing):
                reused.append(existing)
            else:
                to_reassign.append((plan, existing))

        reused_formats = [output.format for output in reused]
        if not to_claim and not to_reassign:
            logger.info(
                "All outputs already available",
                extra={"source": source, "formats": reused_formats},
            )
            return TranscodeResult(job=None, outputs=reused, reused_formats=reused_formats)

        queue = use_queue if use_queue is not None else self.settings.COCONUT_PREFER_QUEUE
        queued_storage: Union[str, dict[str, Any], None] = None
        if queue and target_volume is None:
            # Only handles go through the broker, never credentials
            if storage is None or isinstance(storage, str):
                queued_storage = storage
            elif storage_settings.credentials is None:
                queued_storage = storage_settings.to_params()
            else:
                logger.info(
                    "Submitting directly, inline storage credentials can not be queued",
                    extra={"source": source, "service": storage_settings.service},
                )
                queue = False

        if queue:
            from coconut_jobs.modules.transcoding.tasks import transcode_source_task

            pending = [plan for plan, _ in to_reassign] + to_claim
            transcode_source_task.delay(
                source=source,
                input_url=input_url,
                outputs=[
                    {"format": plan.format, "path": plan.path, "key": plan.key}
                    for plan in pending
                ],
                storage=queued_storage,
                volume=target_volume.handle if target_volume is not None else None,
            )
            logger.info("Queued transcoding job", extra={"source": source})
            return TranscodeResult(
                job=None, outputs=reused, reused_formats=reused_formats, queued=True
            )

        try:
            job = await self.save_job(Job(
                source=source,
                input_url=input_url,
                input_url_hash=url_hash(input_url),
                status=JobStatus.STARTING.value,
                progress="0%",
                storage_params=storage_settings.to_params(include_credentials=False),
            ), is_new=True)

            owned: list[Output] = []
            for plan, output in to_reassign:
                self._assign_output(output, job, plan)
                owned.append(await self.output_service.save_output(output))

            for plan in to_claim:
                output = Output(job_id=job.id, source=source)
                self._assign_output(output, job, plan)
                stored, created = await self.output_service.claim_output(output)
                if created:
                    owned.append(stored)
                else:
                    reused.append(stored)
                    reused_formats.append(stored.format)

            if not owned:
                # Every missing output was created concurrently
                await self.job_repo.delete(job)
                await self.session.commit()
                return TranscodeResult(job=None, outputs=reused, reused_formats=reused_formats)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        await self.run_job(job, storage_settings, owned)
        return TranscodeResult(job=job, outputs=reused + owned, reused_formats=reused_formats)

    @staticmethod
    def _assign_output(output: Output, job: Job, plan: OutputPlan) -> None:
        output.job_id = job.id
        output.format = plan.format
        output.key = plan.key
        output.path = plan.path
        output.storage = plan.storage
        output.status = OutputStatus.PENDING.value
        output.url = None
        output.error = None
        output.progress = None

    def _output_params(self, output: Output) -> dict[str, Any]:
        params: dict[str, Any] = {"path": "/" + output.path.lstrip("/")}
        if output.volume:
            volume = self.storage.require_volume(output.volume)
            params["url"] = self.storage.get_adapter(volume).upload_url(output.path)
        return params

    def build_job_params(
        self, job: Job, storage: StorageSettings, outputs: list[Output]
    ) -> dict[str, Any]:
        """Parameters of the Coconut create-job request."""
        return {
            "input": {"url": job.input_url},
            "storage": storage.to_params(),
            "notification": {
                "type": "http",
                "url": self.settings.notification_url,
                "events": True,
                "metadata": True,
            },
            "outputs": {output.key: self._output_params(output) for output in outputs},
        }

    async def run_job(
        self,
        job: Job,
        storage: StorageSettings,
        outputs: Optional[list[Output]] = None,
    ) -> Job:
        """Submit a saved job to Coconut.

        Raises:
            JobAlreadySubmittedError: If the job already has a Coconut id
            CoconutConnectionError: If Coconut could not be reached
            CoconutAPIError: If Coconut rejected the job or returned no job id
        """
        if job.is_submitted:
            raise JobAlreadySubmittedError(f"Job {job.id} was already submitted as {job.coconut_id}")

        if outputs is None:
            outputs = [
                output for output in await self.output_repo.get_by_job(job.id)
                if output.status == OutputStatus.PENDING.value
            ]
        params = self.build_job_params(job, storage, outputs)

        try:
            data = await self.client.create_job(params)
            if not data.get("id"):
                raise CoconutAPIError(
                    "Coconut accepted the job without returning its id",
                    status_code=200,
                    error_code="invalid_response",
                    response=data,
                )
        except CoconutConnectionError as e:
            COCONUT_JOBS_SUBMITTED_TOTAL.labels(status="unreachable").inc()
            await self._record_submission_error(job, outputs, "connection_error", str(e))
            raise
        except CoconutAPIError as e:
            COCONUT_JOBS_SUBMITTED_TOTAL.labels(status="rejected").inc()
            await self._record_submission_error(job, outputs, e.error_code or "api_error", e.message)
            raise
        except Exception as e:
            COCONUT_JOBS_SUBMITTED_TOTAL.labels(status="failed").inc()
            await self._record_submission_error(job, outputs, "submission_error", str(e))
            raise

        try:
            populate_job_data(job, data)
            if data.get("status"):
                self._set_status(job, remote_job_status(data["status"]), strict=False)
            if job.submitted_at is None:
                job.submitted_at = datetime.now(timezone.utc)
            await self.save_job(job)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        COCONUT_JOBS_SUBMITTED_TOTAL.labels(status="submitted").inc()
        logger.info(
            "Submitted Coconut job",
            extra={"job_id": job.id, "coconut_id": job.coconut_id, "outputs_count": len(outputs)},
        )
        return job

    async def _record_submission_error(
        self, job: Job, outputs: list[Output], error_code: str, message: str
    ) -> None:
        logger.warning(
            "Coconut job submission failed",
            extra={"job_id": job.id, "error_code": error_code, "error": message},
        )
        try:
            self._set_status(job, JobStatus.ERROR, strict=False)
            job.error_code = error_code
            job.error_message = message
            for output in outputs:
                self._mark_output_errored(output, message)
                await self.output_service.save_output(output)
            await self.save_job(job)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    # ==================== Updates ====================

    async def update_job(self, job: Job, data: dict[str, Any]) -> Job:
        """Apply Coconut job data to a job and its outputs."""
        populate_job_data(job, data)

        input_data = data.get("input")
        if isinstance(input_data, dict):
            self._apply_input(job, input_data)

        for output_data in data.get("outputs") or []:
            if job.progress == "100%":
                output_data = {**output_data, "progress": "100%"}
            await self.update_job_output(job, output_data)

        if data.get("status"):
            status = remote_job_status(data["status"])
            if status == JobStatus.COMPLETED:
                await self._complete(job, data)
            elif status == JobStatus.ERROR:
                await self._fail(job, data)
            else:
                self._set_status(job, status, strict=False)

        return await self.save_job(job)

    def _apply_input(self, job: Job, input_data: dict[str, Any]) -> None:
        if input_data.get("status"):
            job.input_status = str(input_data["status"])
        if input_data.get("metadata"):
            job.input_metadata = input_data["metadata"]

    async def update_job_input(self, job: Job, input_data: dict[str, Any]) -> Job:
        """Apply Coconut input data; a transferred input starts processing."""
        self._apply_input(job, input_data)
        if job.status == JobStatus.STARTING.value:
            self._set_status(job, JobStatus.PROCESSING)
        return await self.save_job(job)

    async def update_job_output(self, job: Job, output_data: dict[str, Any]) -> Optional[Output]:
        """Apply Coconut output data to the job output with the same key.

        Raises:
            InvalidNotificationError: If the data has no output key
        """
        key = output_data.get("key")
        if not key:
            raise InvalidNotificationError("Output data is missing an output key")

        matches = await self.output_repo.find(job_id=job.id, key=key)
        if not matches:
            logger.warning("Unknown output key", extra={"job_id": job.id, "key": key})
            return None

        output = matches[0]
        if output.status != OutputStatus.PENDING.value:
            return output

        status = remote_output_status(output_data.get("status"))
        if status == OutputStatus.READY:
            self._mark_output_ready(output, output_data)
        elif status == OutputStatus.ERRORED:
            self._mark_output_errored(output, output_data.get("error") or "Output failed")
        elif output_data.get("progress"):
            output.progress = str(output_data["progress"])

        if output_data.get("metadata"):
            output.output_metadata = output_data["metadata"]

        return await self.output_service.save_output(output)

    def _mark_output_ready(self, output: Output, output_data: dict[str, Any]) -> None:
        if output.volume:
            volume = self.storage.require_volume(output.volume)
            output.url = self.storage.get_adapter(volume).public_url(output.path)
        else:
            urls = output_data.get("urls") or []
            output.url = output_data.get("url") or (urls[0] if urls else None)
        output.status = OutputStatus.READY.value
        output.progress = "100%"
        output.error = None
        COCONUT_OUTPUTS_TOTAL.labels(status=OutputStatus.READY.value).inc()

    @staticmethod
    def _mark_output_errored(output: Output, message: str) -> None:
        output.status = OutputStatus.ERRORED.value
        output.error = message
        COCONUT_OUTPUTS_TOTAL.labels(status=OutputStatus.ERRORED.value).inc()

    async def _complete(self, job: Job, data: dict[str, Any]) -> None:
        """Reconcile outputs of a completed job.

        Reported completed outputs become ready, every other pending output
        is errored. The job is completed with errors if any output errored.
        """
        reported = {
            item["key"]: item
            for item in data.get("outputs") or []
            if isinstance(item, dict) and item.get("key")
        }

        outputs = await self.output_repo.get_by_job(job.id)
        for output in outputs:
            if output.status != OutputStatus.PENDING.value:
                continue
            output_data = reported.get(output.key)
            if output_data is not None and remote_output_status(
                output_data.get("status") or "output.completed"
            ) == OutputStatus.READY:
                self._mark_output_ready(output, output_data)
            else:
                self._mark_output_errored(
                    output,
                    (output_data or {}).get("error") or "Output was not reported by the completed job",
                )
            if (output_data or {}).get("metadata"):
                output.output_metadata = output_data["metadata"]
            await self.output_service.save_output(output)

        has_errors = any(output.status == OutputStatus.ERRORED.value for output in outputs)
        self._set_status(
            job, JobStatus.COMPLETED_WITH_ERRORS if has_errors else JobStatus.COMPLETED
        )
        job.progress = "100%"
        if job.completed_at is None:
            job.completed_at = datetime.now(timezone.utc)

    async def _fail(self, job: Job, data: dict[str, Any]) -> None:
        self._set_status(job, JobStatus.ERROR)
        job.error_code = data.get("error_code") or "job_failed"
        job.error_message = data.get("message") or data.get("error")
        if job.completed_at is None:
            job.completed_at = datetime.now(timezone.utc)

        for output in await self.output_repo.get_by_job(job.id):
            if output.status == OutputStatus.PENDING.value:
                self._mark_output_errored(output, job.error_message or "Job failed")
                await self.output_service.save_output(output)

    # ==================== Notifications ====================

    async def handle_notification(self, payload: NotificationPayload) -> bool:
        """Apply a Coconut notification as one transaction.

        Returns:
            True if the notification was ignored because the job already
            reached a terminal status

        Raises:
            JobNotFoundError: If no job has the notified Coconut id
            InvalidNotificationError: If the payload can not be applied
        """
        event = payload.event
        job = await self.job_repo.get_by_coconut_id(payload.job_id)
        if job is None:
            COCONUT_NOTIFICATIONS_TOTAL.labels(event=event.value, result="unknown_job").inc()
            raise JobNotFoundError(f"No job found for Coconut job {payload.job_id}")

        if job.is_terminal:
            COCONUT_NOTIFICATIONS_TOTAL.labels(event=event.value, result="ignored").inc()
            logger.info(
                "Ignoring notification for finished job",
                extra={"job_id": job.id, "event": event.value, "status": job.status},
            )
            return True

        data = payload.data
        if event in (NotificationEvent.OUTPUT_COMPLETED, NotificationEvent.OUTPUT_FAILED) \
                and not data.get("key"):
            COCONUT_NOTIFICATIONS_TOTAL.labels(event=event.value, result="invalid").inc()
            raise InvalidNotificationError("Output notification is missing an output key")

        try:
            if event == NotificationEvent.INPUT_TRANSFERRED:
                await self.update_job_input(job, data.get("input") or data)
            elif event == NotificationEvent.OUTPUT_COMPLETED:
                await self.update_job_output(job, {"status": "output.completed", **data})
            elif event == NotificationEvent.OUTPUT_FAILED:
                await self.update_job_output(job, {"status": "output.failed", **data})
            elif event == NotificationEvent.JOB_COMPLETED:
                populate_job_data(job, data)
                await self._complete(job, data)
                await self.save_job(job)
            elif event == NotificationEvent.JOB_FAILED:
                await self._fail(job, data)
                await self.save_job(job)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            COCONUT_NOTIFICATIONS_TOTAL.labels(event=event.value, result="error").inc()
            raise

        COCONUT_NOTIFICATIONS_TOTAL.labels(event=event.value, result="applied").inc()
        logger.info(
            "Applied Coconut notification",
            extra={"job_id": job.id, "event": event.value, "status": job.status},
        )
        return False

    async def pull_job_info(self, job_id: int, include_metadata: bool = False) -> Job:
        """Refresh a job from the Coconut API.

        Raises:
            JobNotFoundError: If the job does not exist
            JobNotSubmittedError: If the job has no Coconut id
        """
        job = await self.require_job(job_id)
        if not job.is_submitted:
            raise JobNotSubmittedError(f"Job {job.id} was not submitted to Coconut")
        if job.is_terminal:
            return job

        data = await self.client.retrieve_job(job.coconut_id)
        if include_metadata:
            metadata = await self.client.retrieve_metadata(job.coconut_id)
            data = self._merge_metadata(data, metadata)

        try:
            await self.update_job(job, data)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return job

    @staticmethod
    def _merge_metadata(data: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        merged = dict(data)
        sections = metadata.get("metadata") or metadata
        if sections.get("input"):
            merged["input"] = {**(data.get("input") or {}), "metadata": sections["input"]}
        output_metadata = sections.get("outputs") or {}
        if output_metadata:
            merged["outputs"] = [
                {**item, "metadata": output_metadata.get(item.get("key"))}
                if output_metadata.get(item.get("key")) else item
                for item in data.get("outputs") or []
            ]
        return merged

    # ==================== Cancellation ====================

    async def cancel_job(self, job_id: int) -> Job:
        """Cancel a job unless an event handler vetoes it.

        Raises:
            JobNotFoundError: If the job does not exist
            JobCancellationVetoedError: If a handler invalidated the event
            InvalidJobTransitionError: If the job already finished
        """
        job = await self.require_job(job_id)

        event = self.events.trigger(EVENT_BEFORE_CANCEL_JOB, CancellableJobEvent(job=job))
        if not event.is_valid:
            raise JobCancellationVetoedError(f"Cancellation of job {job.id} was prevented")

        try:
            self._set_status(job, JobStatus.CANCELLED)
            job.completed_at = datetime.now(timezone.utc)
            for output in await self.output_repo.get_by_job(job.id):
                if output.status == OutputStatus.PENDING.value:
                    self._mark_output_errored(output, "Job was cancelled")
                    await self.output_service.save_output(output)
            await self.save_job(job)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        self.events.trigger(EVENT_AFTER_CANCEL_JOB, CancellableJobEvent(job=job))
        logger.info("Cancelled job", extra={"job_id": job.id})
        return job

    # ==================== Sources ====================

    async def get_format_outputs(
        self,
        source: str,
        formats: Optional[list[str]] = None,
        transcode_missing: bool = False,
        **options: Any,
    ) -> dict[str, list[Output]]:
        """Outputs of a source per format, transcoding missing formats first."""
        if transcode_missing and formats:
            grouped = await self.output_service.get_format_outputs(source, formats)
            missing = [format for format, outputs in grouped.items() if not outputs]
            if missing:
                await self.transcode(source, outputs=missing, **options)
        return await self.output_service.get_format_outputs(source, formats)

    async def batch_transcode(self, sources: list[str], **options: Any) -> BatchTranscodeResult:
        """Transcode several sources with the same options.

        Failures are logged and counted; they do not stop the batch.
        """
        result = BatchTranscodeResult(total=len(sources))
        for source in sources:
            try:
                transcoded = await self.transcode(source, **options)
            except (TranscodingServiceError, ConfigValidationError, CoconutClientError) as e:
                result.failed += 1
                result.errors[source] = str(e)
                logger.warning(
                    "Failed to transcode source",
                    extra={"source": source, "error": str(e)},
                )
                continue
            result.succeeded += 1
            result.outputs_count += len(transcoded.outputs)

        logger.info(
            "Batch transcoding finished",
            extra={"total": result.total, "succeeded": result.succeeded, "failed": result.failed},
        )
        return result

"""Tests for the Coconut job service.

Tests that:
- Ready outputs are reused instead of being transcoded again
- Errored outputs are resubmitted and concurrently created outputs reused
- Malformed requests create no job
- Remote errors move the job to error with the remote error code
- Notifications drive the job state machine and output reconciliation
- Cancellation can be vetoed by event handlers
"""

import asyncio
import string
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st
from sqlalchemy.exc import IntegrityError

from coconut_jobs.core.config import Settings
from coconut_jobs.core.events import EventDispatcher
from coconut_jobs.core.validators import ConfigValidationError
from coconut_jobs.modules.storage.adapters import VolumeAdapterFactory
from coconut_jobs.modules.storage.service import StorageResolver
from coconut_jobs.modules.transcoding.client import CoconutAPIError, CoconutConnectionError
from coconut_jobs.modules.transcoding.events import (
    EVENT_AFTER_SAVE_OUTPUT,
    EVENT_BEFORE_CANCEL_JOB,
    EVENT_BEFORE_CLEAR_OUTPUTS,
)
from coconut_jobs.modules.transcoding.models import Job, JobStatus, Output, OutputStatus
from coconut_jobs.modules.transcoding.repository import OutputRepository
from coconut_jobs.modules.transcoding.schemas import NotificationPayload
from coconut_jobs.modules.transcoding.service import (
    InvalidJobTransitionError,
    InvalidNotificationError,
    JobAlreadySubmittedError,
    JobCancellationVetoedError,
    JobNotFoundError,
    JobService,
    get_named_job_config,
)


INPUT_URL = "https://files.example.com/videos/clip.mov"
CDN_ROOT = "https://cdn.example.com/media"


class FakeJobRepository:
    """In-memory JobRepository."""

    def __init__(self):
        self.jobs: dict[int, Job] = {}
        self._next_id = 1

    async def add(self, job: Job) -> Job:
        job.id = self._next_id
        self._next_id += 1
        self.jobs[job.id] = job
        return job

    async def save(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    async def get_by_id(self, job_id: int) -> Optional[Job]:
        return self.jobs.get(job_id)

    async def get_by_coconut_id(self, coconut_id: str) -> Optional[Job]:
        return next((j for j in self.jobs.values() if j.coconut_id == coconut_id), None)

    async def get_for_input(self, input_url_hash: str) -> list[Job]:
        return [j for j in self.jobs.values() if j.input_url_hash == input_url_hash]

    async def delete(self, job: Job) -> None:
        self.jobs.pop(job.id, None)


class FakeOutputRepository:
    """In-memory OutputRepository honouring the (source, format) uniqueness."""

    def __init__(self):
        self.outputs: dict[int, Output] = {}
        self._next_id = 1

    async def save(self, output: Output) -> Output:
        if output.id is None:
            output.id = self._next_id
            self._next_id += 1
        self.outputs[output.id] = output
        return output

    async def claim(self, output: Output) -> tuple[Output, bool]:
        existing = await self.get_by_source_format(output.source, output.format)
        if existing is not None:
            return existing, False
        return await self.save(output), True

    async def get_by_id(self, output_id: int) -> Optional[Output]:
        return self.outputs.get(output_id)

    async def get_by_source_format(self, source: str, format: str) -> Optional[Output]:
        return next(
            (o for o in self.outputs.values() if o.source == source and o.format == format),
            None,
        )

    async def get_by_job(self, job_id: int) -> list[Output]:
        return [o for o in self.outputs.values() if o.job_id == job_id]

    async def find(self, **criteria: Any) -> list[Output]:
        def matches(output: Output) -> bool:
            for name, value in criteria.items():
                actual = getattr(output, name)
                if isinstance(value, (list, tuple, set)):
                    if actual not in value:
                        return False
                elif actual != value:
                    return False
            return True

        return [o for o in self.outputs.values() if matches(o)]

    async def delete(self, output: Output) -> None:
        self.outputs.pop(output.id, None)

    async def delete_many(self, output_ids: list[int]) -> int:
        return sum(1 for output_id in output_ids if self.outputs.pop(output_id, None))


class RacingOutputRepository(FakeOutputRepository):
    """Output repository where another request claims every output first."""

    def __init__(self):
        super().__init__()
        self.concurrent: dict[tuple[str, str], Output] = {}

    async def claim(self, output: Output) -> tuple[Output, bool]:
        winner = Output(
            id=1000 + len(self.concurrent),
            job_id=999,
            source=output.source,
            format=output.format,
            key=output.key,
            path=output.path,
            status=OutputStatus.PENDING.value,
        )
        self.concurrent[(output.source, output.format)] = winner
        return winner, False


def make_client(**overrides) -> MagicMock:
    client = MagicMock()
    client.create_job = AsyncMock(return_value={
        "id": "cj_1",
        "status": "job.starting",
        "progress": "0%",
        "created_at": "2026-10-19T10:00:00Z",
    })
    client.retrieve_job = AsyncMock()
    client.retrieve_metadata = AsyncMock()
    for name, value in overrides.items():
        setattr(client, name, value)
    return client


def make_service(client: Optional[MagicMock] = None, **setting_overrides) -> JobService:
    values = {
        "COCONUT_VOLUMES": {
            "coconut": {"type": "local", "root_url": CDN_ROOT, "path": "/tmp/coconut-tests"},
        },
        "COCONUT_STORAGES": {
            "archive": {"url": "ftp://archive.example.com/videos"},
        },
    }
    values.update(setting_overrides)
    app_settings = Settings(**values)
    events = EventDispatcher()
    service = JobService(
        AsyncMock(),
        client=client or make_client(),
        storage=StorageResolver(app_settings, events),
        events=events,
        app_settings=app_settings,
    )
    service.job_repo = FakeJobRepository()
    service.output_service.output_repo = FakeOutputRepository()
    return service


async def submitted_job(service: JobService, formats: list[str]) -> Job:
    result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=formats)
    return result.job


@pytest.fixture(autouse=True)
def reset_adapters():
    VolumeAdapterFactory.reset()
    yield
    VolumeAdapterFactory.reset()


# ==================== Submission ====================

class TestTranscode:
    """Tests for JobService.transcode."""

    @pytest.mark.asyncio
    async def test_submits_job_with_outputs(self) -> None:
        service = make_service()

        result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4:720p", "webm"])

        job = result.job
        assert job.coconut_id == "cj_1"
        assert job.status == JobStatus.STARTING.value
        assert job.submitted_at is not None
        assert [o.format for o in result.outputs] == ["mp4:720p", "webm"]
        assert all(o.status == OutputStatus.PENDING.value for o in result.outputs)
        assert result.reused_formats == []

        params = service.client.create_job.call_args.args[0]
        assert params["input"] == {"url": INPUT_URL}
        assert params["notification"]["url"].endswith("/api/v1/coconut/jobs/notify")
        assert set(params["outputs"]) == {"mp4-720p", "webm"}
        output_params = params["outputs"]["mp4-720p"]
        assert output_params["path"] == "/_coconut/videos/clip--mp4-720p.mp4"
        assert "volume=coconut" in output_params["url"]

    @pytest.mark.asyncio
    async def test_persisted_storage_has_no_credentials(self) -> None:
        service = make_service(COCONUT_STORAGES={
            "s3out": {
                "service": "s3",
                "region": "us-east-1",
                "bucket": "videos",
                "credentials": {"accessKeyId": "AK", "secretAccessKey": "SK"},
            },
        })

        result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"], storage="s3out")

        assert "credentials" not in result.job.storage_params
        sent = service.client.create_job.call_args.args[0]["storage"]
        assert sent["credentials"] == {"access_key_id": "AK", "secret_access_key": "SK"}
        assert result.outputs[0].storage == {"path": result.outputs[0].path, "service": "s3"}

    @pytest.mark.asyncio
    async def test_ready_output_reused_without_new_job(self) -> None:
        service = make_service()
        first = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])
        first.outputs[0].status = OutputStatus.READY.value

        second = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert second.job is None
        assert second.outputs == [first.outputs[0]]
        assert second.reused_formats == ["mp4"]
        assert service.client.create_job.await_count == 1
        assert len(service.job_repo.jobs) == 1

    @given(
        source=st.text(alphabet=string.ascii_letters + string.digits + "-", min_size=1, max_size=20),
        formats=st.lists(
            st.sampled_from(["mp4", "mp4:720p", "webm:1080p", "mp3", "gif:320x"]),
            min_size=1, max_size=5, unique=True,
        ),
    )
    @settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_resubmission_reuses_ready_outputs(self, source: str, formats: list[str]) -> None:
        """*For any* source and formats with ready outputs, resubmission creates no job."""
        async def scenario() -> None:
            service = make_service()
            first = await service.transcode(source, input_url=INPUT_URL, outputs=formats)
            for output in first.outputs:
                output.status = OutputStatus.READY.value

            second = await service.transcode(source, input_url=INPUT_URL, outputs=formats)

            assert second.job is None
            assert {o.id for o in second.outputs} == {o.id for o in first.outputs}
            assert len(service.job_repo.jobs) == 1

        asyncio.run(scenario())

    @pytest.mark.asyncio
    async def test_errored_output_is_resubmitted(self) -> None:
        service = make_service()
        first = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4", "webm"])
        mp4, webm = first.outputs
        mp4.status = OutputStatus.ERRORED.value
        mp4.error = "Output failed"
        webm.status = OutputStatus.READY.value
        service.client.create_job.return_value = {"id": "cj_2", "status": "job.starting"}

        second = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4", "webm"])

        assert second.job.coconut_id == "cj_2"
        assert second.reused_formats == ["webm"]
        assert mp4.job_id == second.job.id
        assert mp4.status == OutputStatus.PENDING.value
        assert mp4.error is None
        sent = service.client.create_job.call_args.args[0]["outputs"]
        assert list(sent) == ["mp4"]

    @pytest.mark.asyncio
    async def test_concurrently_created_outputs_are_reused(self) -> None:
        service = make_service()
        service.output_service.output_repo = RacingOutputRepository()

        result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert result.job is None
        assert result.reused_formats == ["mp4"]
        assert result.outputs[0].job_id == 999
        assert service.job_repo.jobs == {}
        service.client.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_named_job_config_supplies_outputs(self) -> None:
        service = make_service(COCONUT_JOBS={
            "web": {"outputs": {"mp4:720p": "web/{filename}.mp4"}, "storage": "archive"},
        })

        result = await service.transcode("asset-1", input_url=INPUT_URL, config="web")

        assert result.outputs[0].path == "web/clip.mp4"
        sent = service.client.create_job.call_args.args[0]
        assert sent["storage"] == {"url": "ftp://archive.example.com/videos"}

    @pytest.mark.asyncio
    async def test_after_save_output_event_fired_for_new_outputs(self) -> None:
        service = make_service()
        saved = []
        service.events.on(EVENT_AFTER_SAVE_OUTPUT, lambda e: saved.append((e.output.format, e.is_new)))

        await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert ("mp4", True) in saved


class TestTranscodeValidation:
    """Malformed submissions are rejected before any job is created."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"outputs": []},
        {"outputs": [{"path": "no-format.mp4"}]},
        {"outputs": [":720p"]},
        {"outputs": ["mp4"], "storage": {"service": "s3"}},
        {"outputs": ["mp4"], "storage": "nowhere"},
        {"outputs": ["mp4"], "volume": "nowhere"},
        {"outputs": ["mp4"], "config": "missing"},
    ])
    async def test_no_job_created(self, kwargs: dict) -> None:
        service = make_service()

        with pytest.raises(ConfigValidationError):
            await service.transcode("asset-1", input_url=INPUT_URL, **kwargs)

        assert service.job_repo.jobs == {}
        assert service.output_repo.outputs == {}
        service.client.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outputs", [
        [{"format": "mp4", "key": "video"}, {"format": "webm", "key": "video"}],
        ["mp4", "mp4"],
    ])
    async def test_duplicate_output_keys_rejected(self, outputs: list) -> None:
        service = make_service()

        with pytest.raises(ConfigValidationError) as exc_info:
            await service.transcode("asset-1", input_url=INPUT_URL, outputs=outputs)

        assert "used more than once" in str(exc_info.value)
        assert service.job_repo.jobs == {}
        service.client.create_job.assert_not_awaited()

    def test_named_job_config_forbids_input(self) -> None:
        app_settings = Settings(COCONUT_JOBS={"web": {"outputs": ["mp4"], "input": "x", "notification": {}}})

        with pytest.raises(ConfigValidationError) as exc_info:
            get_named_job_config("web", app_settings)

        assert 'can not contain forbidden key(s) "input, notification"' in str(exc_info.value)


class TestSubmissionErrors:
    """Remote errors after job creation."""

    @pytest.mark.asyncio
    async def test_connection_error_marks_job_errored(self) -> None:
        client = make_client(create_job=AsyncMock(side_effect=CoconutConnectionError("timed out")))
        service = make_service(client)

        with pytest.raises(CoconutConnectionError):
            await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        job = service.job_repo.jobs[1]
        assert job.status == JobStatus.ERROR.value
        assert job.error_code == "connection_error"
        assert job.coconut_id is None
        assert all(o.status == OutputStatus.ERRORED.value for o in service.output_repo.outputs.values())

    @pytest.mark.asyncio
    async def test_api_error_keeps_remote_error_code(self) -> None:
        client = make_client(create_job=AsyncMock(
            side_effect=CoconutAPIError("Storage is invalid", status_code=400, error_code="storage_invalid")
        ))
        service = make_service(client)

        with pytest.raises(CoconutAPIError):
            await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        job = service.job_repo.jobs[1]
        assert job.status == JobStatus.ERROR.value
        assert job.error_code == "storage_invalid"
        assert job.error_message == "Storage is invalid"

    @pytest.mark.asyncio
    async def test_errored_outputs_can_be_resubmitted_after_failure(self) -> None:
        client = make_client(create_job=AsyncMock(side_effect=[
            CoconutConnectionError("timed out"),
            {"id": "cj_2", "status": "job.starting"},
        ]))
        service = make_service(client)
        with pytest.raises(CoconutConnectionError):
            await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert result.job.coconut_id == "cj_2"
        assert result.outputs[0].status == OutputStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_response_without_id_marks_job_errored(self) -> None:
        client = make_client(create_job=AsyncMock(side_effect=[
            {},
            {"id": "cj_2", "status": "job.starting"},
        ]))
        service = make_service(client)

        with pytest.raises(CoconutAPIError) as exc_info:
            await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert exc_info.value.error_code == "invalid_response"
        job = service.job_repo.jobs[1]
        assert job.status == JobStatus.ERROR.value
        assert job.error_code == "invalid_response"

        retry = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert retry.job.coconut_id == "cj_2"
        assert retry.reused_formats == []
        assert client.create_job.await_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_job_errored(self) -> None:
        client = make_client(create_job=AsyncMock(side_effect=[
            RuntimeError("decoding failed"),
            {"id": "cj_2", "status": "job.starting"},
        ]))
        service = make_service(client)

        with pytest.raises(RuntimeError):
            await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        job = service.job_repo.jobs[1]
        assert job.status == JobStatus.ERROR.value
        assert job.error_code == "submission_error"
        assert all(o.status == OutputStatus.ERRORED.value for o in service.output_repo.outputs.values())

        retry = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert retry.job.coconut_id == "cj_2"
        assert retry.reused_formats == []

    @pytest.mark.asyncio
    async def test_pending_output_of_unsubmitted_job_is_reassigned(self) -> None:
        service = make_service()
        stale = await service.job_repo.add(Job(
            source="asset-1", input_url=INPUT_URL, status=JobStatus.STARTING.value,
        ))
        output = await service.output_repo.save(Output(
            job_id=stale.id, source="asset-1", format="mp4", key="mp4",
            path="_coconut/videos/clip--mp4.mp4", status=OutputStatus.PENDING.value,
        ))

        result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert result.job.coconut_id == "cj_1"
        assert output.job_id == result.job.id
        service.client.create_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pending_output_of_submitted_job_is_reused(self) -> None:
        service = make_service()
        first = await submitted_job(service, ["mp4"])

        second = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"])

        assert second.job is None
        assert second.reused_formats == ["mp4"]
        assert second.outputs[0].job_id == first.id
        service.client.create_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_job_refuses_submitted_jobs(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        with pytest.raises(JobAlreadySubmittedError):
            await service.run_job(job, service.storage.parse_storage("archive"))


S3_STORAGE = {
    "service": "s3",
    "region": "us-east-1",
    "bucket": "videos",
    "credentials": {"accessKeyId": "AK", "secretAccessKey": "SK"},
}


class TestQueuedSubmission:
    """Queued submissions hand only storage handles to the broker."""

    @pytest.mark.asyncio
    async def test_default_storage_credentials_not_queued(self) -> None:
        service = make_service(COCONUT_STORAGES={"s3out": S3_STORAGE}, COCONUT_DEFAULT_STORAGE="s3out")

        with patch("coconut_jobs.modules.transcoding.tasks.transcode_source_task") as task:
            result = await service.transcode("asset-1", input_url=INPUT_URL, outputs=["mp4"], use_queue=True)

        assert result.queued is True
        kwargs = task.delay.call_args.kwargs
        assert kwargs["storage"] is None
        assert kwargs["volume"] is None
        assert "SK" not in repr(kwargs)
        service.client.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_named_storage_queued_by_handle(self) -> None:
        service = make_service(COCONUT_STORAGES={"s3out": S3_STORAGE})

        with patch("coconut_jobs.modules.transcoding.tasks.transcode_source_task") as task:
            await service.transcode(
                "asset-1", input_url=INPUT_URL, outputs=["mp4"], storage="s3out", use_queue=True,
            )

        kwargs = task.delay.call_args.kwargs
        assert kwargs["storage"] == "s3out"
        assert kwargs["outputs"][0]["format"] == "mp4"

    @pytest.mark.asyncio
    async def test_volume_queued_by_handle(self) -> None:
        service = make_service()

        with patch("coconut_jobs.modules.transcoding.tasks.transcode_source_task") as task:
            await service.transcode(
                "asset-1", input_url=INPUT_URL, outputs=["mp4"], volume="coconut", use_queue=True,
            )

        kwargs = task.delay.call_args.kwargs
        assert kwargs["volume"] == "coconut"
        assert kwargs["storage"] is None

    @pytest.mark.asyncio
    async def test_inline_credentials_submitted_directly(self) -> None:
        service = make_service()

        with patch("coconut_jobs.modules.transcoding.tasks.transcode_source_task") as task:
            result = await service.transcode(
                "asset-1", input_url=INPUT_URL, outputs=["mp4"], storage=dict(S3_STORAGE), use_queue=True,
            )

        task.delay.assert_not_called()
        assert result.queued is False
        assert result.job.coconut_id == "cj_1"
        assert "credentials" not in result.job.storage_params


# ==================== Notifications ====================

class TestNotifications:
    """Tests for notification handling and output reconciliation."""

    @pytest.mark.asyncio
    async def test_input_transferred_starts_processing(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        ignored = await service.handle_notification(NotificationPayload(
            job_id="cj_1",
            event="input.transferred",
            data={"status": "input.transferred", "metadata": {"duration": 12.5}},
        ))

        assert ignored is False
        assert job.status == JobStatus.PROCESSING.value
        assert job.coconut_id == "cj_1"
        assert job.input_status == "input.transferred"
        assert job.input_metadata == {"duration": 12.5}

    @pytest.mark.asyncio
    async def test_completed_job_reconciles_outputs(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4:720p", "webm", "mp3"])

        await service.handle_notification(NotificationPayload(
            job_id="cj_1",
            event="job.completed",
            data={
                "status": "job.completed",
                "progress": "100%",
                "outputs": [
                    {"key": "mp4-720p", "status": "video.completed"},
                    {"key": "webm", "status": "video.completed"},
                ],
            },
        ))

        outputs = {o.key: o for o in await service.output_repo.get_by_job(job.id)}
        assert outputs["mp4-720p"].status == OutputStatus.READY.value
        assert outputs["webm"].status == OutputStatus.READY.value
        assert outputs["mp3"].status == OutputStatus.ERRORED.value
        assert job.status == JobStatus.COMPLETED_WITH_ERRORS.value
        assert job.progress == "100%"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_ready_output_url_comes_from_volume(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        await service.handle_notification(NotificationPayload(
            job_id="cj_1",
            event="output.completed",
            data={"key": "mp4", "url": "https://elsewhere.example.com/x.mp4"},
        ))

        output = (await service.output_repo.get_by_job(job.id))[0]
        assert output.status == OutputStatus.READY.value
        assert output.url == f"{CDN_ROOT}/_coconut/videos/clip--mp4.mp4"

    @pytest.mark.asyncio
    async def test_all_outputs_completed(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4", "webm"])
        for key in ("mp4", "webm"):
            await service.handle_notification(NotificationPayload(
                job_id="cj_1", event="output.completed", data={"key": key},
            ))

        await service.handle_notification(NotificationPayload(
            job_id="cj_1", event="job.completed", data={"progress": "100%"},
        ))

        assert job.status == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_failed_output_does_not_block_others(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4", "webm"])

        await service.handle_notification(NotificationPayload(
            job_id="cj_1", event="output.failed", data={"key": "mp4", "error": "codec error"},
        ))
        await service.handle_notification(NotificationPayload(
            job_id="cj_1", event="job.completed",
            data={"outputs": [{"key": "webm", "status": "video.completed"}]},
        ))

        outputs = {o.key: o for o in await service.output_repo.get_by_job(job.id)}
        assert outputs["mp4"].status == OutputStatus.ERRORED.value
        assert outputs["mp4"].error == "codec error"
        assert outputs["webm"].status == OutputStatus.READY.value
        assert job.status == JobStatus.COMPLETED_WITH_ERRORS.value

    @pytest.mark.asyncio
    async def test_job_failed(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        await service.handle_notification(NotificationPayload(
            job_id="cj_1", event="job.failed",
            data={"error_code": "input_not_found", "message": "Input could not be downloaded"},
        ))

        assert job.status == JobStatus.ERROR.value
        assert job.error_code == "input_not_found"
        output = (await service.output_repo.get_by_job(job.id))[0]
        assert output.status == OutputStatus.ERRORED.value

    @pytest.mark.asyncio
    async def test_unknown_job(self) -> None:
        service = make_service()

        with pytest.raises(JobNotFoundError):
            await service.handle_notification(NotificationPayload(
                job_id="cj_missing", event="job.completed",
            ))

    @pytest.mark.asyncio
    async def test_output_notification_without_key_changes_nothing(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        with pytest.raises(InvalidNotificationError):
            await service.handle_notification(NotificationPayload(
                job_id="cj_1", event="output.completed", data={"url": "https://x"},
            ))

        assert job.status == JobStatus.STARTING.value
        output = (await service.output_repo.get_by_job(job.id))[0]
        assert output.status == OutputStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_notifications_for_finished_jobs_are_ignored(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])
        job.status = JobStatus.CANCELLED.value

        ignored = await service.handle_notification(NotificationPayload(
            job_id="cj_1", event="job.completed", data={"outputs": [{"key": "mp4"}]},
        ))

        assert ignored is True
        assert job.status == JobStatus.CANCELLED.value


class TestPullJobInfo:
    """Tests for refreshing jobs from the Coconut API."""

    @pytest.mark.asyncio
    async def test_pull_completed_job(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4", "webm"])
        service.client.retrieve_job.return_value = {
            "id": "cj_1",
            "status": "job.completed",
            "progress": "100%",
            "completed_at": "2026-10-19T10:05:00Z",
            "outputs": [{"key": "mp4", "status": "video.completed"}],
        }

        refreshed = await service.pull_job_info(job.id)

        assert refreshed is job
        assert job.status == JobStatus.COMPLETED_WITH_ERRORS.value
        outputs = {o.key: o for o in await service.output_repo.get_by_job(job.id)}
        assert outputs["mp4"].status == OutputStatus.READY.value
        assert outputs["webm"].status == OutputStatus.ERRORED.value
        service.client.retrieve_job.assert_awaited_once_with("cj_1")


# ==================== Cancellation & clearing ====================

class TestCancellation:
    """Tests for vetoable job cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_without_listeners(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        cancelled = await service.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED.value
        output = (await service.output_repo.get_by_job(job.id))[0]
        assert output.status == OutputStatus.ERRORED.value

    @pytest.mark.asyncio
    async def test_vetoed_cancellation_leaves_job_unchanged(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])
        service.events.on(EVENT_BEFORE_CANCEL_JOB, lambda e: setattr(e, "is_valid", False))

        with pytest.raises(JobCancellationVetoedError):
            await service.cancel_job(job.id)

        assert job.status == JobStatus.STARTING.value

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])
        job.status = JobStatus.COMPLETED.value

        with pytest.raises(InvalidJobTransitionError):
            await service.cancel_job(job.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self) -> None:
        with pytest.raises(JobNotFoundError):
            await make_service().cancel_job(42)


class TestOutputs:
    """Tests for output queries and clearing."""

    @pytest.mark.asyncio
    async def test_clear_source_outputs(self) -> None:
        service = make_service()
        await submitted_job(service, ["mp4", "webm"])

        deleted = await service.output_service.clear_source_outputs(["asset-1"], ["mp4"])

        assert deleted == 1
        assert [o.format for o in await service.output_service.get_source_outputs("asset-1")] == ["webm"]

    @pytest.mark.asyncio
    async def test_delete_output_keeps_siblings(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4", "webm"])
        mp4 = next(o for o in await service.output_service.get_job_outputs(job.id) if o.format == "mp4")

        await service.output_service.delete_output(mp4)

        remaining = await service.output_service.get_job_outputs(job.id)
        assert [o.format for o in remaining] == ["webm"]

    @pytest.mark.asyncio
    async def test_clear_outputs_can_be_vetoed(self) -> None:
        service = make_service()
        await submitted_job(service, ["mp4"])
        service.events.on(EVENT_BEFORE_CLEAR_OUTPUTS, lambda e: setattr(e, "is_valid", False))

        deleted = await service.output_service.clear_source_outputs(["asset-1"])

        assert deleted == 0
        assert len(service.output_repo.outputs) == 1

    @pytest.mark.asyncio
    async def test_format_outputs_transcode_missing(self) -> None:
        service = make_service()
        await submitted_job(service, ["mp4"])
        service.client.create_job.return_value = {"id": "cj_2", "status": "job.starting"}

        grouped = await service.get_format_outputs(
            "asset-1", ["mp4", "webm"], transcode_missing=True, input_url=INPUT_URL
        )

        assert set(grouped) == {"mp4", "webm"}
        assert len(grouped["webm"]) == 1
        sent = service.client.create_job.call_args.args[0]["outputs"]
        assert list(sent) == ["webm"]

    @pytest.mark.asyncio
    async def test_jobs_for_input(self) -> None:
        service = make_service()
        job = await submitted_job(service, ["mp4"])

        assert await service.get_jobs_for_input(INPUT_URL) == [job]
        assert await service.get_job_by_coconut_id("cj_1") is job


class TestBatchTranscode:
    """Tests for batch transcoding."""

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self) -> None:
        client = make_client(create_job=AsyncMock(side_effect=[
            {"id": "cj_1", "status": "job.starting"},
            CoconutAPIError("Input is invalid", status_code=400, error_code="input_invalid"),
            {"id": "cj_3", "status": "job.starting"},
        ]))
        service = make_service(client)

        result = await service.batch_transcode(
            ["https://files.example.com/a.mov", "https://files.example.com/b.mov", "https://files.example.com/c.mov"],
            outputs=["mp4", "webm"],
        )

        assert result.total == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.outputs_count == 4
        assert result.errors == {"https://files.example.com/b.mov": "Input is invalid"}


class TestOutputRepositoryClaim:
    """Tests for the savepoint based output claim."""

    @staticmethod
    def make_session(flush_error: Optional[Exception], existing: Optional[Output]) -> MagicMock:
        savepoint = MagicMock()
        savepoint.__aenter__ = AsyncMock(return_value=savepoint)
        savepoint.__aexit__ = AsyncMock(return_value=False)

        result = MagicMock()
        result.scalar_one_or_none.return_value = existing

        session = MagicMock()
        session.begin_nested.return_value = savepoint
        session.flush = AsyncMock(side_effect=flush_error)
        session.execute = AsyncMock(return_value=result)
        return session

    @pytest.mark.asyncio
    async def test_claim_new_output(self) -> None:
        session = self.make_session(None, None)
        output = Output(source="asset-1", format="mp4")

        stored, created = await OutputRepository(session).claim(output)

        assert stored is output
        assert created is True
        session.add.assert_called_once_with(output)

    @pytest.mark.asyncio
    async def test_lost_claim_returns_existing_output(self) -> None:
        existing = Output(id=7, source="asset-1", format="mp4")
        session = self.make_session(IntegrityError("INSERT", {}, Exception("duplicate")), existing)

        stored, created = await OutputRepository(session).claim(Output(source="asset-1", format="mp4"))

        assert stored is existing
        assert created is False

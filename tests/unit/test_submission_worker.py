import pytest
from unittest.mock import AsyncMock, MagicMock

from erazor.core.exceptions import (
    ExternalAPIError,
    ProcessingUnavailableError,
    ProcessorTransientError,
    TempFileMissingError,
    TransientInfraError,
)
from erazor.integrations.processor import SubmissionResult
from erazor.modules.imagery.models import ImageStatus
from erazor.pipeline.jobs import JobEnvelope, JobKind, SubmitPayload
from erazor.pipeline.stages import SubmissionWorker


async def stage_upload(storage, data=b"image-bytes"):
    return await storage.upload(data, "cat.png", folder="tmp")


def submit_job(storage_key, owner_id="user_1", channel_id="user_1"):
    return JobEnvelope.submit(SubmitPayload(
        owner_id=owner_id,
        channel_id=channel_id,
        storage_key=storage_key,
        original_filename="cat.png",
        content_type="image/png",
    ))


def make_worker(storage, processor, tasks=None, queue=None, publisher=None):
    if tasks is None:
        tasks = AsyncMock()
        tasks.create.side_effect = lambda task: task
        tasks.save.side_effect = lambda task, **kwargs: task
    if queue is None:
        queue = AsyncMock()
        queue.enqueue.side_effect = lambda job: job.id
    return SubmissionWorker(
        storage=storage,
        processor=processor,
        tasks=tasks,
        queue=queue,
        publisher=publisher or AsyncMock(),
        initial_delay=5,
    )


@pytest.mark.asyncio
async def test_successful_submit_creates_task_and_schedules_first_poll(storage):
    # Arrange
    key = await stage_upload(storage)
    processor = AsyncMock()
    processor.submit.return_value = SubmissionResult(process_id="proc-1", status="queued", source_url="https://cdn/src.png")
    worker = make_worker(storage, processor)

    # Act
    task = await worker.handle(submit_job(key))

    # Assert
    assert task.status == ImageStatus.PROCESSING.value
    assert task.process_id == "proc-1"
    assert task.source_url_hq == "https://cdn/src.png"
    processor.submit.assert_awaited_once_with(b"image-bytes", "cat.png", "image/png")

    poll_job = worker.queue.enqueue.call_args.args[0]
    assert poll_job.kind == JobKind.POLL
    assert poll_job.attempt == 1
    assert poll_job.delay == 5
    assert poll_job.parsed_payload().process_id == "proc-1"

    assert not await storage.exists(key)


@pytest.mark.asyncio
async def test_successful_submit_notifies_channel(storage):
    key = await stage_upload(storage)
    processor = AsyncMock()
    processor.submit.return_value = SubmissionResult(process_id="proc-1", status="queued")
    publisher = AsyncMock()
    worker = make_worker(storage, processor, publisher=publisher)

    await worker.handle(submit_job(key, owner_id=None, channel_id="anon-abc"))

    identity, event = publisher.publish.call_args.args
    assert identity == "anon-abc"
    assert "cat.png is being processed" in event.data["message"]


@pytest.mark.asyncio
async def test_transient_submit_failure_creates_no_task_and_releases_file(storage):
    # Arrange
    key = await stage_upload(storage)
    processor = AsyncMock()
    processor.submit.side_effect = ProcessorTransientError("503", http_status=503)
    worker = make_worker(storage, processor)

    # Act
    with pytest.raises(ProcessingUnavailableError) as exc_info:
        await worker.handle(submit_job(key))

    # Assert
    assert exc_info.value.message == "Image processing is temporarily unavailable"
    worker.tasks.create.assert_not_called()
    worker.queue.enqueue.assert_not_called()
    assert not await storage.exists(key)


@pytest.mark.asyncio
async def test_rejected_submit_releases_file(storage):
    key = await stage_upload(storage)
    processor = AsyncMock()
    processor.submit.side_effect = ExternalAPIError("bad image", service="processor", http_status=422)
    worker = make_worker(storage, processor)

    with pytest.raises(ExternalAPIError):
        await worker.handle(submit_job(key))

    worker.tasks.create.assert_not_called()
    assert not await storage.exists(key)


@pytest.mark.asyncio
async def test_temp_file_released_exactly_once_on_every_path():
    # Arrange
    storage = MagicMock()
    storage.read = AsyncMock(return_value=b"data")
    storage.delete = AsyncMock(return_value=True)
    ok = AsyncMock()
    ok.submit.return_value = SubmissionResult(process_id="proc-1", status="queued")
    failing = AsyncMock()
    failing.submit.side_effect = ProcessorTransientError("down")

    # Act / Assert
    await make_worker(storage, ok).handle(submit_job("tmp/a.png"))
    storage.delete.assert_awaited_once_with("tmp/a.png")

    storage.delete.reset_mock()
    with pytest.raises(ProcessingUnavailableError):
        await make_worker(storage, failing).handle(submit_job("tmp/b.png"))
    storage.delete.assert_awaited_once_with("tmp/b.png")


@pytest.mark.asyncio
async def test_redelivered_submit_with_consumed_file_is_detected(storage):
    processor = AsyncMock()
    worker = make_worker(storage, processor)

    with pytest.raises(TempFileMissingError):
        await worker.handle(submit_job("tmp/already-gone.png"))

    processor.submit.assert_not_called()


@pytest.mark.asyncio
async def test_poll_enqueue_failure_leaves_task_retry_eligible(storage):
    # Arrange
    key = await stage_upload(storage)
    processor = AsyncMock()
    processor.submit.return_value = SubmissionResult(process_id="proc-1", status="queued")
    queue = AsyncMock()
    queue.enqueue.side_effect = TransientInfraError()
    worker = make_worker(storage, processor, queue=queue)

    # Act
    with pytest.raises(TransientInfraError):
        await worker.handle(submit_job(key))

    # Assert
    saved = worker.tasks.save.call_args.args[0]
    assert saved.status == ImageStatus.QUEUED.value
    assert saved.failure_kind == "error"
    assert not await storage.exists(key)

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

from erazor.pipeline import tasks as worker_tasks
from erazor.pipeline.jobs import JobEnvelope, PollPayload, SubmitPayload


def poll_envelope():
    return JobEnvelope.poll(PollPayload(process_id="proc-1", owner_id="user_1"), attempt=4).model_dump(mode="json")


def run_with_retries(envelope, retries):
    worker_tasks.run_job.push_request(retries=retries)
    try:
        return worker_tasks.run_job.run(envelope)
    finally:
        worker_tasks.run_job.pop_request()


@pytest.fixture
def release(monkeypatch):
    released = MagicMock()
    monkeypatch.setattr(worker_tasks, "release_stranded_poll", released)
    return released


def test_exhausted_poll_retries_release_the_task(monkeypatch, release):
    # Arrange
    error = RedisConnectionError("refused")
    monkeypatch.setattr(worker_tasks, "execute_job", AsyncMock(side_effect=error))

    # Act
    with pytest.raises(RedisConnectionError):
        run_with_retries(poll_envelope(), retries=worker_tasks.run_job.max_retries)

    # Assert
    release.assert_called_once()
    job, raised = release.call_args.args
    assert job.parsed_payload().process_id == "proc-1"
    assert raised is error


def test_unexpected_poll_error_releases_the_task(monkeypatch, release):
    monkeypatch.setattr(worker_tasks, "execute_job", AsyncMock(side_effect=RuntimeError("boom")))

    with pytest.raises(RuntimeError):
        run_with_retries(poll_envelope(), retries=0)

    release.assert_called_once()


def test_unexpected_submit_error_does_not_touch_poll_state(monkeypatch, release):
    envelope = JobEnvelope.submit(SubmitPayload(
        storage_key="k",
        original_filename="cat.png",
        content_type="image/png",
        channel_id="anon_1",
    )).model_dump(mode="json")
    monkeypatch.setattr(worker_tasks, "execute_job", AsyncMock(side_effect=RuntimeError("boom")))

    with pytest.raises(RuntimeError):
        run_with_retries(envelope, retries=0)

    release.assert_not_called()


def test_release_failure_is_logged_not_raised(monkeypatch):
    monkeypatch.setattr(worker_tasks, "abandon_poll", AsyncMock(side_effect=RedisConnectionError("refused")))
    job = JobEnvelope.model_validate(poll_envelope())

    worker_tasks.release_stranded_poll(job, RuntimeError("boom"))

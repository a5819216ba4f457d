import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError as PydanticValidationError

from erazor.core.exceptions import InvalidTransitionError
from erazor.modules.imagery.models import FailureKind, ImageStatus, ImageTask
from erazor.pipeline.jobs import (
    JobEnvelope,
    JobKind,
    JobState,
    PollPayload,
    SubmitPayload,
    advance,
)


def test_submit_envelope_round_trips_through_json():
    job = JobEnvelope.submit(SubmitPayload(
        owner_id=None,
        channel_id="anon-1",
        storage_key="tmp/x.png",
        original_filename="x.png",
    ))

    restored = JobEnvelope.model_validate(job.model_dump(mode="json"))

    assert restored.kind == JobKind.SUBMIT
    assert restored.id == job.id
    assert isinstance(restored.parsed_payload(), SubmitPayload)
    assert restored.parsed_payload().channel_id == "anon-1"


def test_payload_must_match_kind():
    with pytest.raises(PydanticValidationError):
        JobEnvelope(kind=JobKind.POLL, payload={"storage_key": "tmp/x.png"})


def test_poll_envelope_carries_attempt_and_delay():
    job = JobEnvelope.poll(PollPayload(process_id="proc-1"), attempt=4, delay=12)

    assert (job.kind, job.attempt, job.delay) == (JobKind.POLL, 4, 12)


@pytest.mark.parametrize("path", [
    [JobState.QUEUED_SUBMIT, JobState.SUBMITTED, JobState.POLLING, JobState.POLLING, JobState.READY],
    [JobState.QUEUED_SUBMIT, JobState.SUBMITTED, JobState.READY],
    [JobState.QUEUED_SUBMIT, JobState.SUBMITTED, JobState.POLLING, JobState.TIMEOUT],
    [JobState.QUEUED_SUBMIT, JobState.FAILED],
])
def test_valid_lifecycles(path):
    state = path[0]
    for target in path[1:]:
        state = advance(state, target)
    assert state == path[-1]


@pytest.mark.parametrize("current,target", [
    (JobState.QUEUED_SUBMIT, JobState.POLLING),
    (JobState.READY, JobState.POLLING),
    (JobState.TIMEOUT, JobState.READY),
])
def test_invalid_job_transitions(current, target):
    with pytest.raises(InvalidTransitionError):
        advance(current, target)


def test_task_status_only_moves_forward():
    task = ImageTask(process_id="proc-1", status=ImageStatus.PROCESSING.value)
    task.mark_ready("lq-src", "lq", "hq", include_hq=False)

    with pytest.raises(InvalidTransitionError):
        task.mark_retry_eligible(FailureKind.TIMEOUT)
    assert task.status == ImageStatus.READY.value


def test_retry_eligible_task_can_be_requeued():
    task = ImageTask(process_id="proc-1", status=ImageStatus.PROCESSING.value)

    task.mark_retry_eligible(FailureKind.TIMEOUT, "slow")
    task.mark_requeued()

    assert task.status == ImageStatus.PROCESSING.value
    assert task.failure_kind is None


def test_transition_reports_the_status_it_left():
    task = ImageTask(process_id="proc-1", status=ImageStatus.PROCESSING.value)

    assert task.mark_retry_eligible(FailureKind.ERROR) == ImageStatus.PROCESSING
    assert task.mark_requeued() == ImageStatus.QUEUED


def test_new_task_timestamps_are_utc_aware():
    task = ImageTask(process_id="proc-1")

    assert task.created_at.tzinfo is not None
    assert task.created_at.utcoffset() == timedelta(0)


@pytest.mark.parametrize("created_at", [
    datetime(2026, 1, 1, 12, 30),
    datetime(2026, 1, 1, 12, 30, tzinfo=timezone.utc),
    datetime(2026, 1, 1, 14, 30, tzinfo=timezone(timedelta(hours=2))),
])
def test_response_timestamps_are_utc(created_at):
    task = ImageTask(process_id="proc-1", created_at=created_at, updated_at=created_at)

    data = task.to_response_dict()

    assert data["createdAt"] == "2026-01-01T12:30:00Z"
    assert data["updatedAt"] == "2026-01-01T12:30:00Z"

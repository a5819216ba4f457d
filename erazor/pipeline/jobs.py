"""
Job Envelope and Lifecycle

Every queue message is a JobEnvelope tagged with its kind. The payload is
validated against the kind's own model, so a handler always receives a
well-formed SubmitPayload or PollPayload.

Lifecycle of one image:

    QUEUED_SUBMIT -> SUBMITTED -> POLLING -> READY | FAILED | TIMEOUT
                         |                     ^
                         +---------------------+   (first poll may finish it)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from erazor.core.exceptions import InvalidTransitionError


class JobKind(str, Enum):
    SUBMIT = "submit"
    POLL = "poll"


class JobState(str, Enum):
    QUEUED_SUBMIT = "queued_submit"
    SUBMITTED = "submitted"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"
    TIMEOUT = "timeout"


JOB_TRANSITIONS = {
    JobState.QUEUED_SUBMIT: {JobState.SUBMITTED, JobState.FAILED},
    JobState.SUBMITTED: {JobState.POLLING, JobState.READY, JobState.FAILED, JobState.TIMEOUT},
    JobState.POLLING: {JobState.POLLING, JobState.READY, JobState.FAILED, JobState.TIMEOUT},
    JobState.READY: set(),
    JobState.FAILED: set(),
    JobState.TIMEOUT: set(),
}

TERMINAL_JOB_STATES = {JobState.READY, JobState.FAILED, JobState.TIMEOUT}


def advance(current: JobState, target: JobState) -> JobState:
    """Validate a lifecycle step and return the new state."""
    if target not in JOB_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)
    return target


class SubmitPayload(BaseModel):
    """Input contract of a submit job."""
    owner_id: Optional[str] = None
    channel_id: str = Field(..., description="Realtime identity: owner id, or the anonymous id")
    storage_key: str
    original_filename: str
    content_type: str = "image/png"


class PollPayload(BaseModel):
    """Input contract of a poll job."""
    process_id: str
    owner_id: Optional[str] = None
    channel_id: Optional[str] = None
    transient_failures: int = 0


PAYLOAD_MODELS = {
    JobKind.SUBMIT: SubmitPayload,
    JobKind.POLL: PollPayload,
}


class JobEnvelope(BaseModel):
    """A unit of work on the durable queue."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: JobKind
    payload: Dict[str, Any]
    attempt: int = Field(default=1, ge=1)
    priority: int = Field(default=0, ge=0, le=9)
    delay: int = Field(default=0, ge=0, description="Seconds before the job becomes visible")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _payload_matches_kind(self) -> "JobEnvelope":
        PAYLOAD_MODELS[self.kind].model_validate(self.payload)
        return self

    def parsed_payload(self):
        return PAYLOAD_MODELS[self.kind].model_validate(self.payload)

    @classmethod
    def submit(cls, payload: SubmitPayload, priority: int = 0) -> "JobEnvelope":
        return cls(kind=JobKind.SUBMIT, payload=payload.model_dump(), priority=priority)

    @classmethod
    def poll(cls, payload: PollPayload, attempt: int = 1, delay: int = 0, priority: int = 0) -> "JobEnvelope":
        return cls(
            kind=JobKind.POLL,
            payload=payload.model_dump(),
            attempt=attempt,
            delay=delay,
            priority=priority
        )

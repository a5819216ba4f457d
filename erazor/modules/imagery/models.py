"""
ImageTask Model with Lifecycle Status Tracking

One row per background-removal request that reached the processor:
- Source and result asset URLs (HQ result only for paid owners)
- Forward-only status, with a reset to QUEUED on failure or timeout
- Failure diagnostics for manual or automatic requeue
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from sqlalchemy import DateTime

from erazor.core.exceptions import InvalidTransitionError


class ImageStatus(str, Enum):
    """Task status states."""
    QUEUED = "queued"             # Retry-eligible (initial or after failure/timeout)
    PROCESSING = "processing"     # Submitted to the processor, being polled
    READY = "ready"               # Result assets persisted
    FAILED = "failed"             # Processor rejected the task permanently


class FailureKind(str, Enum):
    """Why a task was sent back to QUEUED."""
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


# Allowed status moves. Everything else is a bug or a stale duplicate job.
STATUS_TRANSITIONS = {
    ImageStatus.QUEUED: {ImageStatus.PROCESSING},
    ImageStatus.PROCESSING: {ImageStatus.READY, ImageStatus.FAILED, ImageStatus.QUEUED},
    ImageStatus.READY: set(),
    ImageStatus.FAILED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ImageTask(SQLModel, table=True):
    """
    Background-removal task record.

    Created by the submission worker; mutated only by the completion and
    failure handlers (and the manual requeue endpoint). Never deleted here.
    """
    __tablename__ = "image_tasks"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Owner identity, null for anonymous submissions
    owner_id: Optional[str] = Field(default=None, index=True)

    # Processor reference
    process_id: str = Field(unique=True, index=True)

    # Input
    original_filename: str = Field(default="")
    source_url_hq: Optional[str] = None
    source_url_lq: Optional[str] = None

    # Results
    result_filename_hq: Optional[str] = None
    result_filename_lq: Optional[str] = None
    result_url_hq: Optional[str] = None
    result_url_lq: Optional[str] = None

    # Lifecycle
    status: str = Field(default=ImageStatus.QUEUED.value, index=True)
    failure_kind: Optional[str] = None
    last_error: Optional[str] = None

    # Timestamps, always UTC
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def transition(self, target: ImageStatus) -> ImageStatus:
        """Move to `target`, enforcing the forward-only status graph.

        Returns the status the task left. The repository writes the change
        only if the row still holds that status, so two writers racing from
        the same read cannot both win.
        """
        current = ImageStatus(self.status)
        if target not in STATUS_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        self.status = target.value
        self.updated_at = utcnow()
        return current

    def mark_ready(
        self,
        source_url_lq: Optional[str],
        result_url_lq: Optional[str],
        result_url_hq: Optional[str],
        include_hq: bool,
    ) -> ImageStatus:
        """Persist result assets. The HQ asset is only stored when `include_hq`."""
        previous = self.transition(ImageStatus.READY)
        self.source_url_lq = source_url_lq
        self.result_filename_lq = f"erazor_bg_rmv_{self.id}_lq.png"
        self.result_url_lq = result_url_lq
        if include_hq:
            self.result_filename_hq = f"erazor_bg_rmv_{self.id}.png"
            self.result_url_hq = result_url_hq
        self.failure_kind = None
        self.last_error = None
        return previous

    def mark_retry_eligible(self, kind: FailureKind, error: Optional[str] = None) -> ImageStatus:
        """Reset to QUEUED after a processor failure or an exhausted poll budget."""
        previous = self.transition(ImageStatus.QUEUED)
        self.failure_kind = kind.value
        self.last_error = error
        return previous

    def mark_failed(self, error: str) -> ImageStatus:
        """Hard failure: the processor will never produce a result for this task."""
        previous = self.transition(ImageStatus.FAILED)
        self.failure_kind = FailureKind.ERROR.value
        self.last_error = error
        return previous

    def mark_requeued(self) -> ImageStatus:
        """Put a retry-eligible task back into polling."""
        previous = self.transition(ImageStatus.PROCESSING)
        self.failure_kind = None
        self.last_error = None
        return previous

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API / realtime payload format."""
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "processId": self.process_id,
            "originalFileName": self.original_filename,
            "originalImageUrlHQ": self.source_url_hq,
            "originalImageUrlLQ": self.source_url_lq,
            "bgRemovedFileNameHQ": self.result_filename_hq,
            "bgRemovedFileNameLQ": self.result_filename_lq,
            "bgRemovedImageUrlHQ": self.result_url_hq,
            "bgRemovedImageUrlLQ": self.result_url_lq,
            "status": self.status,
            "failureKind": self.failure_kind,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

"""
Job Handlers

Async handlers for the two job kinds on the queue:

1. SubmissionWorker - uploads the temp file to the processor, creates the
   ImageTask and schedules the first poll
2. StatusPoller     - cache-first status check, progressive reschedule,
   bounded by an attempt budget
3. CompletionHandler / FailureHandler - finalize the task, bill, notify

Handlers hold no cross-job state: everything they need is in the envelope,
the database or Redis.
"""

from enum import Enum
from typing import List, Optional

from redis.exceptions import RedisError

from erazor.core.config import settings
from erazor.core.exceptions import (
    BillingError,
    ExternalAPIError,
    InvalidTransitionError,
    NotFoundError,
    ProcessingUnavailableError,
    ProcessorTransientError,
    TempFileMissingError,
    TransientInfraError,
)
from erazor.core.logging import get_logger, with_logging
from erazor.core.metrics import record_cache_lookup, record_poll_finished, record_usage_event
from erazor.core.storage import IStorage
from erazor.engines.quota.repositories import SubscriptionCache
from erazor.integrations.billing import BillingClient
from erazor.integrations.processor import ProcessorClient, ProcessorState, ProcessorStatus
from erazor.modules.imagery.models import FailureKind, ImageStatus, ImageTask
from erazor.modules.imagery.repositories import ImageTaskRepository
from erazor.pipeline.cache import StatusCacheRepository
from erazor.pipeline.jobs import (
    JobEnvelope,
    JobKind,
    JobState,
    PollPayload,
    SubmitPayload,
    advance,
)
from erazor.pipeline.queue import JobQueue
from erazor.realtime.hub import UpdateEvent

logger = get_logger(__name__)

STATUS_EVENT = "image-status-update"
NOTIFICATION_EVENT = "new-notification"


class PollOutcome(str, Enum):
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


def poll_delay(attempt: int, schedule: List[int]) -> int:
    """Delay before poll `attempt + 1`; holds at the last value."""
    return schedule[min(attempt, len(schedule)) - 1]


def transient_delay(failures: int, base: int, cap: int) -> int:
    """Exponential backoff after `failures` consecutive transient errors."""
    return min(base * (2 ** failures), cap)


async def notify(publisher, identity: Optional[str], event: UpdateEvent) -> int:
    """Best-effort realtime push. A dead pub/sub must not fail the job."""
    if not identity:
        return 0
    try:
        return await publisher.publish(identity, event)
    except RedisError as e:
        logger.warning("realtime_publish_failed", identity=identity, event_name=event.event, error=str(e))
        return 0


async def commit_transition(
    tasks: ImageTaskRepository,
    task: ImageTask,
    previous: ImageStatus,
) -> Optional[ImageTask]:
    """Write a status change; None if a concurrent writer moved the row first."""
    try:
        return await tasks.save(task, expected_status=previous)
    except InvalidTransitionError:
        logger.info("task_transition_lost", task_id=task.id, process_id=task.process_id, target=task.status)
        return None


# =============================================================================
# Submission
# =============================================================================

class SubmissionWorker:
    """Consumes submit jobs."""

    def __init__(
        self,
        storage: IStorage,
        processor: ProcessorClient,
        tasks: ImageTaskRepository,
        queue: JobQueue,
        publisher,
        initial_delay: int = settings.POLL_INITIAL_DELAY_SECONDS,
    ):
        self.storage = storage
        self.processor = processor
        self.tasks = tasks
        self.queue = queue
        self.publisher = publisher
        self.initial_delay = initial_delay

    @with_logging("submit")
    async def handle(self, job: JobEnvelope) -> ImageTask:
        payload: SubmitPayload = job.parsed_payload()
        try:
            return await self._submit(payload)
        except (ProcessingUnavailableError, ExternalAPIError) as e:
            message = e.message if isinstance(e, ProcessingUnavailableError) else (
                f"Your image {payload.original_filename} could not be processed."
            )
            await notify(self.publisher, payload.channel_id, UpdateEvent(
                event=NOTIFICATION_EVENT,
                data={"title": "Processing Failed", "message": message},
            ))
            raise
        finally:
            # released exactly once, whatever happened above
            released = await self.storage.delete(payload.storage_key)
            logger.debug("temp_file_released", storage_key=payload.storage_key, existed=released)

    async def _submit(self, payload: SubmitPayload) -> ImageTask:
        state = JobState.QUEUED_SUBMIT

        try:
            file_data = await self.storage.read(payload.storage_key)
        except FileNotFoundError as e:
            raise TempFileMissingError(payload.storage_key) from e

        try:
            result = await self.processor.submit(file_data, payload.original_filename, payload.content_type)
        except ProcessorTransientError as e:
            logger.warning("submission_unavailable", error=str(e))
            raise ProcessingUnavailableError() from e
        state = advance(state, JobState.SUBMITTED)

        task = await self.tasks.create(ImageTask(
            owner_id=payload.owner_id,
            process_id=result.process_id,
            original_filename=payload.original_filename,
            source_url_hq=result.source_url,
            status=ImageStatus.PROCESSING.value,
        ))

        poll_job = JobEnvelope.poll(
            PollPayload(
                process_id=task.process_id,
                owner_id=payload.owner_id,
                channel_id=payload.channel_id,
            ),
            attempt=1,
            delay=self.initial_delay,
        )
        try:
            await self.queue.enqueue(poll_job)
        except TransientInfraError:
            # no poll will ever run; leave the row retry-eligible
            previous = task.mark_retry_eligible(FailureKind.ERROR, "Could not schedule status polling")
            await self.tasks.save(task, expected_status=previous)
            raise

        logger.info(
            "task_submitted",
            task_id=task.id,
            process_id=task.process_id,
            job_state=state.value,
            first_poll_in=self.initial_delay
        )

        await notify(self.publisher, payload.channel_id, UpdateEvent(
            event=NOTIFICATION_EVENT,
            data={
                "title": "Processing Image",
                "message": f"Your image {payload.original_filename} is being processed.",
                "taskId": task.id,
            },
        ))
        return task


# =============================================================================
# Completion / Failure
# =============================================================================

class CompletionHandler:
    """Finalizes a task the processor reported ready."""

    def __init__(
        self,
        tasks: ImageTaskRepository,
        subscriptions: SubscriptionCache,
        billing: BillingClient,
        cache: StatusCacheRepository,
        publisher,
    ):
        self.tasks = tasks
        self.subscriptions = subscriptions
        self.billing = billing
        self.cache = cache
        self.publisher = publisher

    async def _owner_is_paid(self, owner_id: Optional[str]) -> bool:
        if not owner_id:
            return False
        try:
            return await self.subscriptions.is_paid(owner_id)
        except (BillingError, RedisError) as e:
            # withholding HQ is the safe side
            logger.warning("tier_lookup_failed", owner_id=owner_id, error=str(e))
            return False

    async def handle(
        self,
        task: ImageTask,
        status: ProcessorStatus,
        channel_id: Optional[str] = None,
    ) -> Optional[ImageTask]:
        """Persist the result. Returns None if another delivery finalized the task first."""
        is_paid = await self._owner_is_paid(task.owner_id)

        previous = task.mark_ready(
            source_url_lq=status.source_thumb_url,
            result_url_lq=status.result_thumb_url,
            result_url_hq=status.result_url,
            include_hq=is_paid,
        )
        task = await commit_transition(self.tasks, task, previous)
        if task is None:
            return None

        # only the delivery that won the status write bills
        if task.owner_id:
            await self._record_usage(task)

        await self.cache.delete(task.process_id)
        recipient = task.owner_id or channel_id
        await notify(self.publisher, recipient, UpdateEvent(event=STATUS_EVENT, data=task.to_response_dict()))
        await notify(self.publisher, recipient, UpdateEvent(
            event=NOTIFICATION_EVENT,
            data={
                "title": "Image Ready",
                "message": f"Your image {task.original_filename} is ready.",
                "taskId": task.id,
            },
        ))

        logger.info("task_completed", task_id=task.id, process_id=task.process_id, paid=is_paid)
        return task

    async def _record_usage(self, task: ImageTask):
        try:
            await self.billing.ingest_usage_event(task.owner_id, metadata={"task_id": task.id})
        except BillingError as e:
            record_usage_event("failed")
            logger.error("usage_event_failed", owner_id=task.owner_id, task_id=task.id, error=str(e))
            return
        record_usage_event("sent")


class FailureHandler:
    """Sends a failed or timed-out task back to the retry-eligible state."""

    def __init__(self, tasks: ImageTaskRepository, cache: StatusCacheRepository, publisher):
        self.tasks = tasks
        self.cache = cache
        self.publisher = publisher

    async def handle(
        self,
        task: ImageTask,
        kind: FailureKind,
        error: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Optional[ImageTask]:
        previous = task.mark_retry_eligible(kind, error)
        task = await commit_transition(self.tasks, task, previous)
        if task is None:
            return None
        await self.cache.delete(task.process_id)

        await notify(
            self.publisher,
            task.owner_id or channel_id,
            UpdateEvent(event=STATUS_EVENT, data=task.to_response_dict()),
        )

        logger.warning("task_retry_eligible", task_id=task.id, process_id=task.process_id, failure_kind=kind.value)
        return task

# =============================================================================
# Polling
# =============================================================================

class StatusPoller:
    """Consumes poll jobs. Each poll schedules at most one successor."""

    def __init__(
        self,
        tasks: ImageTaskRepository,
        processor: ProcessorClient,
        cache: StatusCacheRepository,
        queue: JobQueue,
        completion: CompletionHandler,
        failure: FailureHandler,
        schedule: Optional[List[int]] = None,
        max_attempts: int = settings.POLL_MAX_ATTEMPTS,
        transient_base: int = settings.POLL_TRANSIENT_BACKOFF_BASE_SECONDS,
        transient_max: int = settings.POLL_TRANSIENT_BACKOFF_MAX_SECONDS,
    ):
        self.tasks = tasks
        self.processor = processor
        self.cache = cache
        self.queue = queue
        self.completion = completion
        self.failure = failure
        self.schedule = schedule or settings.poll_backoff_schedule
        self.max_attempts = max_attempts
        self.transient_base = transient_base
        self.transient_max = transient_max

    @with_logging("poll")
    async def handle(self, job: JobEnvelope) -> PollOutcome:
        payload: PollPayload = job.parsed_payload()
        return await self.poll(
            payload.process_id,
            payload.owner_id,
            job.attempt,
            channel_id=payload.channel_id,
            transient_failures=payload.transient_failures,
        )

    async def lookup(self, process_id: str) -> ProcessorStatus:
        """Cache-first status read. Terminal answers are never served from cache."""
        cached = await self.cache.get(process_id)
        record_cache_lookup("processor_status", cached is not None)
        if cached is not None:
            return cached

        status = await self.processor.get_status(process_id)
        await self.cache.set(process_id, status)
        return status

    async def poll(
        self,
        process_id: str,
        owner_id: Optional[str],
        attempt: int,
        channel_id: Optional[str] = None,
        transient_failures: int = 0,
    ) -> PollOutcome:
        task = await self.tasks.get_by_process_id(process_id)
        if task is None:
            raise NotFoundError(f"No task for process {process_id}")

        # duplicate delivery or stale poll after a manual requeue
        if task.status != ImageStatus.PROCESSING.value:
            logger.info("poll_skipped", process_id=process_id, status=task.status, attempt=attempt)
            return PollOutcome.SKIPPED

        state = JobState.SUBMITTED if attempt == 1 else JobState.POLLING

        try:
            status = await self.lookup(process_id)
        except ProcessorTransientError as e:
            return await self._retry_transient(task, owner_id, channel_id, attempt, transient_failures, state, e)
        except ExternalAPIError as e:
            logger.error("poll_failed", process_id=process_id, attempt=attempt, error=str(e))
            previous = task.mark_failed(e.message)
            await commit_transition(self.tasks, task, previous)
            await self.cache.delete(process_id)
            record_poll_finished(PollOutcome.FAILED.value, attempt)
            raise

        if status.state == ProcessorState.READY:
            advance(state, JobState.READY)
            if await self.completion.handle(task, status, channel_id) is None:
                return PollOutcome.SKIPPED
            record_poll_finished(PollOutcome.COMPLETED.value, attempt)
            return PollOutcome.COMPLETED

        if status.state == ProcessorState.FAILED:
            advance(state, JobState.FAILED)
            if await self.failure.handle(task, FailureKind.FAILED, status.error, channel_id) is None:
                return PollOutcome.SKIPPED
            record_poll_finished(PollOutcome.FAILED.value, attempt)
            return PollOutcome.FAILED

        if status.state == ProcessorState.UNKNOWN:
            logger.warning("processor_status_unknown", process_id=process_id, status=status.status)

        return await self._reschedule(
            task, owner_id, channel_id, attempt, state,
            delay=poll_delay(attempt, self.schedule),
            transient_failures=0,
        )

    async def abandon(self, process_id: str, error: str, channel_id: Optional[str] = None) -> bool:
        """Send a task whose poll chain broke back to retry-eligible."""
        task = await self.tasks.get_by_process_id(process_id)
        if task is None or task.status != ImageStatus.PROCESSING.value:
            return False
        return (await self.failure.handle(task, FailureKind.ERROR, error, channel_id)) is not None

    async def _retry_transient(
        self,
        task: ImageTask,
        owner_id: Optional[str],
        channel_id: Optional[str],
        attempt: int,
        transient_failures: int,
        state: JobState,
        error: ProcessorTransientError,
    ) -> PollOutcome:
        logger.warning(
            "poll_transient_error",
            process_id=task.process_id,
            attempt=attempt,
            consecutive=transient_failures + 1,
            error=str(error)
        )
        return await self._reschedule(
            task, owner_id, channel_id, attempt, state,
            delay=transient_delay(transient_failures, self.transient_base, self.transient_max),
            transient_failures=transient_failures + 1,
        )

    async def _reschedule(
        self,
        task: ImageTask,
        owner_id: Optional[str],
        channel_id: Optional[str],
        attempt: int,
        state: JobState,
        delay: int,
        transient_failures: int,
    ) -> PollOutcome:
        if attempt >= self.max_attempts:
            advance(state, JobState.TIMEOUT)
            finalized = await self.failure.handle(
                task,
                FailureKind.TIMEOUT,
                f"No terminal status after {attempt} polls",
                channel_id,
            )
            if finalized is None:
                return PollOutcome.SKIPPED
            record_poll_finished(PollOutcome.TIMED_OUT.value, attempt)
            return PollOutcome.TIMED_OUT

        advance(state, JobState.POLLING)
        await self.queue.enqueue(JobEnvelope.poll(
            PollPayload(
                process_id=task.process_id,
                owner_id=owner_id,
                channel_id=channel_id,
                transient_failures=transient_failures,
            ),
            attempt=attempt + 1,
            delay=delay,
        ))
        logger.info("poll_rescheduled", process_id=task.process_id, next_attempt=attempt + 1, delay_seconds=delay)
        return PollOutcome.RESCHEDULED


# =============================================================================
# Dispatch
# =============================================================================

class JobRunner:
    """Routes an envelope to the handler for its kind."""

    def __init__(self, submission: SubmissionWorker, poller: StatusPoller):
        self.handlers = {
            JobKind.SUBMIT: submission.handle,
            JobKind.POLL: poller.handle,
        }

    async def run(self, job: JobEnvelope):
        return await self.handlers[job.kind](job)

"""
Celery Tasks for the Background-Removal Pipeline

One task, `run_job`, consumes every envelope on the queue and dispatches it
by kind. Handlers are async; each job gets a fresh event loop and its own
Redis, HTTP and database clients, which are closed before the job acks.
"""

import asyncio
import traceback
from typing import Any, Dict

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from erazor.core.celery_app import celery_app
from erazor.core.config import settings
from erazor.core.database import create_worker_session_maker
from erazor.core.exceptions import TempFileMissingError, TransientInfraError
from erazor.core.logging import clear_job_context, get_logger, set_job_context
from erazor.core.metrics import record_job
from erazor.core.storage import get_storage
from erazor.engines.quota.repositories import SubscriptionCache
from erazor.integrations.billing import BillingClient
from erazor.integrations.processor import ProcessorClient
from erazor.modules.imagery.repositories import ImageTaskRepository
from erazor.pipeline.cache import StatusCacheRepository
from erazor.pipeline.jobs import JobEnvelope, JobKind
from erazor.pipeline.queue import CeleryJobQueue
from erazor.pipeline.stages import (
    CompletionHandler,
    FailureHandler,
    JobRunner,
    PollOutcome,
    StatusPoller,
    SubmissionWorker,
)
from erazor.realtime.relay import RedisRealtimePublisher

logger = get_logger(__name__)

# Safe to redeliver: the poller skips tasks that are no longer processing
RETRYABLE_POLL_ERRORS = (TransientInfraError, RedisError)


class WorkerContext:
    """Builds the handler graph for one job and tears it down afterwards."""

    async def __aenter__(self) -> "WorkerContext":
        self.redis = aioredis.from_url(settings.REDIS_URL)
        self.engine, session_maker = create_worker_session_maker()
        self.processor = ProcessorClient()
        self.billing = BillingClient()

        tasks = ImageTaskRepository(session_maker)
        cache = StatusCacheRepository(self.redis)
        publisher = RedisRealtimePublisher(self.redis)
        queue = CeleryJobQueue()

        completion = CompletionHandler(
            tasks=tasks,
            subscriptions=SubscriptionCache(self.redis, self.billing),
            billing=self.billing,
            cache=cache,
            publisher=publisher,
        )
        failure = FailureHandler(tasks=tasks, cache=cache, publisher=publisher)
        self.poller = StatusPoller(
            tasks=tasks,
            processor=self.processor,
            cache=cache,
            queue=queue,
            completion=completion,
            failure=failure,
        )

        self.runner = JobRunner(
            submission=SubmissionWorker(
                storage=get_storage(),
                processor=self.processor,
                tasks=tasks,
                queue=queue,
                publisher=publisher,
            ),
            poller=self.poller,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.processor.aclose()
        await self.billing.aclose()
        await self.redis.aclose()
        await self.engine.dispose()
        return False


async def execute_job(job: JobEnvelope):
    async with WorkerContext() as context:
        return await context.runner.run(job)


async def abandon_poll(job: JobEnvelope, error: Exception) -> bool:
    payload = job.parsed_payload()
    async with WorkerContext() as context:
        return await context.poller.abandon(payload.process_id, str(error), payload.channel_id)


def run_async(coro):
    """Run a coroutine to completion on a new event loop."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
        asyncio.set_event_loop(None)


def release_stranded_poll(job: JobEnvelope, error: Exception):
    """Return the task to retry-eligible when its poll chain ends without an answer."""
    try:
        released = run_async(abandon_poll(job, error))
    except Exception as e:
        # the task stays in processing; a manual requeue can still recover it
        logger.error("poll_release_failed", kind=job.kind.value, error=str(e))
        return
    logger.warning("poll_released", released=released, error=str(error))


@celery_app.task(
    bind=True,
    name="erazor.pipeline.tasks.run_job",
    max_retries=3,
    default_retry_delay=10,
    acks_late=True
)
def run_job(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
    """
    Celery entry point for every queue message.
    """
    job = JobEnvelope.model_validate(envelope)
    set_job_context(job.id, job.kind.value)

    try:
        logger.info("task_run_job_started", kind=job.kind.value, attempt=job.attempt)

        result = run_async(execute_job(job))

        record_job(job.kind.value, "success")
        if isinstance(result, PollOutcome):
            return {"job_id": job.id, "kind": job.kind.value, "outcome": result.value}
        return {"job_id": job.id, "kind": job.kind.value, "task_id": result.id}

    except TempFileMissingError as e:
        # redelivered submit whose upload was already consumed
        logger.warning("task_run_job_duplicate", kind=job.kind.value, error=e.message)
        record_job(job.kind.value, "duplicate")
        return {"job_id": job.id, "kind": job.kind.value, "outcome": "duplicate"}

    except RETRYABLE_POLL_ERRORS as e:
        if job.kind != JobKind.POLL:
            logger.error("task_run_job_failed", kind=job.kind.value, error=str(e))
            record_job(job.kind.value, "failed")
            raise
        if self.request.retries >= self.max_retries:
            logger.error("task_run_job_retries_exhausted", retries=self.request.retries, error=str(e))
            record_job(job.kind.value, "failed")
            release_stranded_poll(job, e)
            raise
        record_job(job.kind.value, "retried")
        logger.warning("task_run_job_retrying", retries=self.request.retries, error=str(e))
        raise self.retry(exc=e, countdown=10 * (2 ** self.request.retries))

    except Exception as e:
        logger.error("task_run_job_failed", kind=job.kind.value, error=str(e), traceback=traceback.format_exc())
        record_job(job.kind.value, "failed")
        if job.kind == JobKind.POLL:
            release_stranded_poll(job, e)
        raise

    finally:
        clear_job_context()

"""
Durable Work Queue

Thin async facade over Celery. Jobs are sent by task name so callers never
import the worker module; delayed jobs use Celery's countdown.
"""

import asyncio
from abc import ABC, abstractmethod

from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from erazor.core.celery_app import celery_app
from erazor.core.config import settings
from erazor.core.exceptions import TransientInfraError
from erazor.core.logging import get_logger
from erazor.pipeline.jobs import JobEnvelope

logger = get_logger(__name__)

RUN_JOB_TASK = "erazor.pipeline.tasks.run_job"


class JobQueue(ABC):
    """Interface for enqueueing job envelopes."""

    @abstractmethod
    async def enqueue(self, job: JobEnvelope) -> str:
        """Enqueue a job and return its id."""


class CeleryJobQueue(JobQueue):
    """At-least-once delayed queue backed by Celery + Redis."""

    def __init__(self, app=celery_app, queue_name: str = settings.CELERY_QUEUE):
        self.app = app
        self.queue_name = queue_name

    async def enqueue(self, job: JobEnvelope) -> str:
        try:
            await asyncio.to_thread(
                self.app.send_task,
                RUN_JOB_TASK,
                args=[job.model_dump(mode="json")],
                countdown=job.delay or None,
                priority=job.priority,
                queue=self.queue_name,
                task_id=job.id,
            )
        except (OperationalError, RedisError, ConnectionError) as e:
            logger.error("job_enqueue_failed", kind=job.kind.value, error=str(e))
            raise TransientInfraError() from e

        logger.info(
            "job_enqueued",
            enqueued_job_id=job.id,
            kind=job.kind.value,
            attempt=job.attempt,
            delay_seconds=job.delay
        )
        return job.id

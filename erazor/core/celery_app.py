"""
Celery Application Configuration

The durable work queue for the job lifecycle:
- One queue carrying tagged job envelopes (submit, poll)
- Late acknowledgment so a crashed worker's job is redelivered
- Small bounded per-worker concurrency
"""

from celery import Celery
from kombu import Queue

from erazor.core.config import settings

broker_url = settings.CELERY_BROKER_URL or settings.REDIS_URL

# Create Celery app
celery_app = Celery(
    "erazor_jobs",
    broker=broker_url,
    include=[
        "erazor.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Job state lives in the database, not the result backend
    task_ignore_result=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard limit
    task_soft_time_limit=240,  # 4 minute soft limit

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,

    # Queue definitions
    task_default_queue=settings.CELERY_QUEUE,
    task_queues=(
        Queue(settings.CELERY_QUEUE, routing_key=settings.CELERY_QUEUE),
    ),

    # Task routing
    task_routes={
        "erazor.pipeline.tasks.run_job": {"queue": settings.CELERY_QUEUE},
    },

    # Late acknowledgment for reliability (at-least-once delivery)
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Delayed poll jobs must survive longer than the longest countdown
    broker_transport_options={"visibility_timeout": 3600},
)

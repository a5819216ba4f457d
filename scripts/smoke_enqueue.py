#!/usr/bin/env python3
"""
Queue Smoke Test - Enqueue a Submit Job for a 1x1 PNG

Verifies the API-side wiring end to end without going through HTTP:
1. Stages a tiny PNG on shared storage
2. Enqueues a submit job on the Celery queue
3. Prints the job id so the worker logs can be followed

Run with a worker attached:
    celery -A erazor.core.celery_app:celery_app worker -Q image_jobs
    python scripts/smoke_enqueue.py --owner user_123
"""

import io
import sys
import asyncio
import logging
import argparse
from pathlib import Path

from PIL import Image

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from erazor.core.config import settings
from erazor.core.storage import get_storage
from erazor.integrations.identity import mint_anonymous_id
from erazor.pipeline.jobs import JobEnvelope, SubmitPayload
from erazor.pipeline.queue import CeleryJobQueue

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def tiny_png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", (1, 1), (255, 0, 0, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


async def smoke_enqueue(owner_id: str = None) -> str:
    channel_id = owner_id or mint_anonymous_id()
    storage_key = await get_storage().upload(tiny_png(), "smoke.png", folder=settings.TEMP_UPLOAD_FOLDER)
    logger.info(f"Staged upload: {storage_key}")

    job = JobEnvelope.submit(SubmitPayload(
        owner_id=owner_id,
        channel_id=channel_id,
        storage_key=storage_key,
        original_filename="smoke.png",
        content_type="image/png",
    ))
    job_id = await CeleryJobQueue().enqueue(job)
    logger.info(f"Enqueued submit job {job_id} (channel {channel_id})")
    return job_id


def main():
    parser = argparse.ArgumentParser(
        description="Enqueue a submit job for a 1x1 PNG"
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Owner identity; omit to submit as a fresh anonymous caller"
    )
    args = parser.parse_args()

    asyncio.run(smoke_enqueue(args.owner))


if __name__ == "__main__":
    main()

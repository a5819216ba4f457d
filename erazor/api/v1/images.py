"""
Image Endpoints

POST /api/v1/images/process           - Upload an image for background removal
GET  /api/v1/images/updates/{id}      - Server-Sent Events stream of task updates
WS   /api/v1/images/ws                - WebSocket room join, same events
GET  /api/v1/images/user/{owner_id}   - Cursor-paginated task history
GET  /api/v1/images/{task_id}         - Single task
POST /api/v1/images/{task_id}/requeue - Resume polling for a retry-eligible task
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile, WebSocket
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketDisconnect

from erazor.api.dependencies import (
    get_caller,
    get_identity_resolver,
    get_job_queue,
    get_realtime_hub,
    get_task_repository,
    get_usage_policy,
)
from erazor.core.config import settings
from erazor.core.exceptions import AuthorizationError, NotFoundError, TransientInfraError
from erazor.core.logging import get_logger, log_context
from erazor.core.storage import IStorage, get_storage
from erazor.engines.quota.schemas import CallerIdentity
from erazor.engines.quota.services import UsagePolicy
from erazor.integrations.identity import IdentityResolver
from erazor.modules.imagery.models import FailureKind, ImageStatus, ImageTask
from erazor.modules.imagery.repositories import ImageTaskRepository
from erazor.modules.imagery.validation import validate_upload
from erazor.pipeline.jobs import JobEnvelope, PollPayload, SubmitPayload
from erazor.pipeline.queue import JobQueue
from erazor.realtime.hub import RealtimeHub

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class ApiResponse(BaseModel):
    """Envelope shared by every successful response."""
    success: bool = True
    message: str
    data: Optional[Any] = None


def _require_self(caller: Optional[CallerIdentity], identity: Optional[str]):
    if caller is None or not identity or caller.identity != identity:
        raise AuthorizationError()


async def _owned_task(task_id: str, caller: CallerIdentity, tasks: ImageTaskRepository) -> ImageTask:
    task = await tasks.get(task_id)
    if task is None:
        raise NotFoundError(f"Image {task_id} not found")
    _require_self(caller, task.owner_id)
    return task


# =============================================================================
# Upload
# =============================================================================

@router.post("/process", response_model=ApiResponse)
async def process_image(
    request: Request,
    response: Response,
    file: UploadFile = File(...),
    caller: CallerIdentity = Depends(get_caller),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    policy: UsagePolicy = Depends(get_usage_policy),
    storage: IStorage = Depends(get_storage),
    queue: JobQueue = Depends(get_job_queue),
):
    """
    Accept an upload and enqueue it.

    Flow:
    1. Resolve the caller's tier
    2. Validate type, content and tier-specific size (never enqueued on failure)
    3. Run the quota and credit chain
    4. Stage the file on shared storage and enqueue a submit job
    """
    resolver.persist(response, caller)

    tier = await policy.resolve_tier(caller)
    file_data = await file.read()
    filename = file.filename or "upload"

    with log_context(stage="upload"):
        logger.info(
            "upload_received",
            identity=caller.identity,
            tier=tier.value,
            filename=filename,
            size_bytes=len(file_data)
        )

        validate_upload(file_data, filename, file.content_type, tier)
        await policy.enforce(caller, tier, route=f"{request.method}:{request.url.path}")

        storage_key = await storage.upload(file_data, filename, folder=settings.TEMP_UPLOAD_FOLDER)
        job = JobEnvelope.submit(SubmitPayload(
            owner_id=None if caller.is_anonymous else caller.identity,
            channel_id=caller.identity,
            storage_key=storage_key,
            original_filename=filename,
            content_type=file.content_type or "application/octet-stream",
        ))

        try:
            await queue.enqueue(job)
        except TransientInfraError:
            await storage.delete(storage_key)
            raise

    data = {"anonId": caller.identity} if caller.is_anonymous else {"ownerId": caller.identity}
    return ApiResponse(message="Image queued for processing", data=data)


# =============================================================================
# Realtime
# =============================================================================

@router.get("/updates/{identity}")
async def stream_updates(
    identity: str,
    request: Request,
    resolver: IdentityResolver = Depends(get_identity_resolver),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    """Server-Sent Events stream of the caller's own task updates."""
    _require_self(resolver.resolve(request, mint=False), identity)
    subscription = hub.subscribe(identity)

    async def event_stream():
        try:
            yield ": connected\n\n"
            while True:
                event = await subscription.get(timeout=settings.REALTIME_HEARTBEAT_SECONDS)
                if event is None:
                    if subscription.cancelled or await request.is_disconnected():
                        break
                    yield ": heartbeat\n\n"
                    continue
                yield event.to_sse()
        finally:
            subscription.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )


@router.websocket("/ws")
async def updates_websocket(
    websocket: WebSocket,
    resolver: IdentityResolver = Depends(get_identity_resolver),
    hub: RealtimeHub = Depends(get_realtime_hub),
):
    """
    Room-join WebSocket.

    The client sends {"action": "join", "room": "<identity>"}; joining any
    room other than its own closes the socket.
    """
    caller = resolver.resolve(websocket, mint=False)
    await websocket.accept()
    subscription = None
    try:
        message = await websocket.receive_json()
        room = message.get("room") if isinstance(message, dict) else None

        if caller is None or room != caller.identity:
            logger.warning("realtime_join_rejected", room=room)
            await websocket.send_json({"type": "error", "message": "You can only join your own room"})
            await websocket.close(code=4403)
            return

        subscription = hub.subscribe(room)
        await websocket.send_json({"type": "joined", "room": room})

        async for event in subscription:
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        pass
    finally:
        if subscription is not None:
            subscription.cancel()


# =============================================================================
# Reconciliation
# =============================================================================

@router.get("/user/{owner_id}", response_model=ApiResponse)
async def list_images(
    owner_id: str,
    limit: int = Query(10, ge=1, le=100),
    cursor: Optional[str] = None,
    search: Optional[str] = None,
    status: Optional[ImageStatus] = None,
    caller: CallerIdentity = Depends(get_caller),
    tasks: ImageTaskRepository = Depends(get_task_repository),
):
    """Newest-first history for the caller."""
    _require_self(caller, owner_id)
    items, next_cursor = await tasks.list_for_owner(
        owner_id, limit=limit, cursor=cursor, search=search, status=status
    )
    return ApiResponse(
        message="Images retrieved successfully",
        data={
            "items": [task.to_response_dict() for task in items],
            "nextCursor": next_cursor,
        }
    )


@router.get("/{task_id}", response_model=ApiResponse)
async def get_image(
    task_id: str,
    caller: CallerIdentity = Depends(get_caller),
    tasks: ImageTaskRepository = Depends(get_task_repository),
):
    task = await _owned_task(task_id, caller, tasks)
    return ApiResponse(message="Image retrieved successfully", data=task.to_response_dict())


@router.post("/{task_id}/requeue", response_model=ApiResponse)
async def requeue_image(
    task_id: str,
    caller: CallerIdentity = Depends(get_caller),
    tasks: ImageTaskRepository = Depends(get_task_repository),
    queue: JobQueue = Depends(get_job_queue),
):
    """Resume polling for a task that failed or timed out."""
    task = await _owned_task(task_id, caller, tasks)
    previous = task.mark_requeued()
    task = await tasks.save(task, expected_status=previous)

    try:
        await queue.enqueue(JobEnvelope.poll(
            PollPayload(process_id=task.process_id, owner_id=task.owner_id, channel_id=task.owner_id),
            attempt=1,
        ))
    except TransientInfraError:
        previous = task.mark_retry_eligible(FailureKind.ERROR, "Could not schedule status polling")
        await tasks.save(task, expected_status=previous)
        raise

    logger.info("task_requeued", task_id=task.id, process_id=task.process_id)
    return ApiResponse(message="Image requeued for processing", data=task.to_response_dict())

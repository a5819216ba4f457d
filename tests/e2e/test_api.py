import asyncio
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from erazor.core.exceptions import TransientInfraError
from erazor.integrations.billing import ActiveSubscription, CustomerState, MeterBalance
from erazor.modules.imagery.models import FailureKind, ImageStatus, ImageTask
from erazor.pipeline.jobs import JobKind


def upload(png_bytes, name="cat.png", content_type="image/png"):
    return {"file": (name, png_bytes, content_type)}


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["version"]
    assert float(response.headers["X-Process-Time"]) >= 0


@pytest.mark.asyncio
async def test_anonymous_upload_is_enqueued_and_sets_cookie(client, png_bytes, job_queue):
    response = await client.post("/api/v1/images/process", files=upload(png_bytes))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    anon_id = body["data"]["anonId"]
    assert anon_id.startswith("anon-")
    assert response.cookies.get("anon_id") == anon_id

    job = job_queue.enqueue.call_args.args[0]
    assert job.kind == JobKind.SUBMIT
    payload = job.parsed_payload()
    assert payload.owner_id is None
    assert payload.channel_id == anon_id


@pytest.mark.asyncio
async def test_anonymous_quota_is_enforced(client, png_bytes, job_queue):
    headers = {"X-Browser-Fingerprint": "device-1"}
    statuses = []
    for _ in range(4):
        response = await client.post("/api/v1/images/process", files=upload(png_bytes), headers=headers)
        statuses.append(response.status_code)

    assert statuses == [200, 200, 200, 429]
    assert job_queue.enqueue.await_count == 3
    assert response.json()["success"] is False
    assert response.json()["statusCode"] == 429


@pytest.mark.asyncio
async def test_authenticated_upload_reports_owner(client, png_bytes, job_queue, auth_headers):
    response = await client.post("/api/v1/images/process", files=upload(png_bytes), headers=auth_headers("user_1"))

    assert response.status_code == 200
    assert response.json()["data"] == {"ownerId": "user_1"}
    assert job_queue.enqueue.call_args.args[0].parsed_payload().owner_id == "user_1"


@pytest.mark.asyncio
async def test_paid_caller_without_credit_gets_402(client, png_bytes, billing, auth_headers):
    billing.get_subscription_state.return_value = CustomerState(
        active_subscriptions=[ActiveSubscription(amount=900)],
        active_meters=[MeterBalance(balance=0)],
    )

    response = await client.post("/api/v1/images/process", files=upload(png_bytes), headers=auth_headers("paid_1"))

    assert response.status_code == 402


@pytest.mark.asyncio
async def test_invalid_upload_is_rejected_and_never_enqueued(client, job_queue):
    response = await client.post(
        "/api/v1/images/process",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 400
    job_queue.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_enqueue_failure_is_503_and_releases_temp_file(client, png_bytes, job_queue, storage):
    job_queue.enqueue.side_effect = TransientInfraError()

    response = await client.post("/api/v1/images/process", files=upload(png_bytes))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"
    assert list((storage.base_path / "tmp").glob("*")) == []


@pytest.mark.asyncio
async def test_quota_store_outage_is_503(client, png_bytes, fake_redis, job_queue):
    async def broken(*args, **kwargs):
        raise RedisConnectionError("refused")
    fake_redis.incr = broken

    response = await client.post("/api/v1/images/process", files=upload(png_bytes))

    assert response.status_code == 503
    job_queue.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_update_stream_rejects_other_identity(client, auth_headers):
    response = await client.get("/api/v1/images/updates/user_2", headers=auth_headers("user_1"))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_update_stream_rejects_unknown_caller(client):
    response = await client.get("/api/v1/images/updates/anon-123")

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_history_is_owner_only_and_paginated(client, task_repo, auth_headers):
    # Arrange
    for n in range(3):
        await task_repo.create(ImageTask(owner_id="user_1", process_id=f"proc-{n}", original_filename=f"{n}.png"))

    # Act
    forbidden = await client.get("/api/v1/images/user/user_1", headers=auth_headers("user_2"))
    page = await client.get("/api/v1/images/user/user_1?limit=2", headers=auth_headers("user_1"))

    # Assert
    assert forbidden.status_code == 403
    data = page.json()["data"]
    assert len(data["items"]) == 2
    assert data["nextCursor"] is not None


@pytest.mark.asyncio
async def test_get_single_task(client, task_repo, auth_headers):
    task = await task_repo.create(ImageTask(owner_id="user_1", process_id="proc-1", original_filename="a.png"))

    found = await client.get(f"/api/v1/images/{task.id}", headers=auth_headers("user_1"))
    missing = await client.get("/api/v1/images/does-not-exist", headers=auth_headers("user_1"))

    assert found.status_code == 200
    assert found.json()["data"]["processId"] == "proc-1"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_requeue_resumes_polling_for_retry_eligible_task(client, task_repo, job_queue, auth_headers):
    # Arrange
    task = ImageTask(owner_id="user_1", process_id="proc-1", status=ImageStatus.PROCESSING.value)
    task.mark_retry_eligible(FailureKind.TIMEOUT, "slow")
    task = await task_repo.create(task)

    # Act
    response = await client.post(f"/api/v1/images/{task.id}/requeue", headers=auth_headers("user_1"))
    again = await client.post(f"/api/v1/images/{task.id}/requeue", headers=auth_headers("user_1"))

    # Assert
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "processing"
    job = job_queue.enqueue.call_args.args[0]
    assert job.kind == JobKind.POLL
    assert job.parsed_payload().process_id == "proc-1"
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_concurrent_requeues_schedule_a_single_poll(client, task_repo, job_queue, auth_headers):
    # Arrange
    task = ImageTask(owner_id="user_1", process_id="proc-1", status=ImageStatus.PROCESSING.value)
    task.mark_retry_eligible(FailureKind.TIMEOUT, "slow")
    task = await task_repo.create(task)
    url = f"/api/v1/images/{task.id}/requeue"

    # Act
    responses = await asyncio.gather(
        client.post(url, headers=auth_headers("user_1")),
        client.post(url, headers=auth_headers("user_1")),
    )

    # Assert
    assert sorted(r.status_code for r in responses) == [200, 409]
    assert job_queue.enqueue.await_count == 1
    assert (await task_repo.get(task.id)).status == ImageStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    response = await client.get("/api/v1/metrics")

    assert response.status_code == 200
    assert "erazor_jobs_total" in response.text

import httpx
import pytest

from erazor.core.exceptions import ExternalAPIError, ProcessorTransientError
from erazor.integrations.processor import ProcessorClient, ProcessorState, classify_status


def make_client(handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProcessorClient(base_url="http://processor", api_key="secret", http_client=http_client)


@pytest.mark.asyncio
async def test_submit_sends_multipart_image_with_token():
    # Arrange
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = request.url
        seen["body"] = request.content
        return httpx.Response(200, json={"id": 42, "statusName": "queue", "source": {"url": "https://cdn/src.png"}})

    client = make_client(handler)

    # Act
    result = await client.submit(b"png-bytes", "cat.png", "image/png")

    # Assert
    assert result.process_id == "42"
    assert result.source_url == "https://cdn/src.png"
    assert seen["url"].path == "/process_image"
    assert seen["url"].params["token"] == "secret"
    assert b'name="image"' in seen["body"]


@pytest.mark.asyncio
async def test_get_status_parses_processed_assets():
    def handler(request):
        return httpx.Response(200, json={
            "statusName": "ready",
            "source": {"url": "s", "thumb2x_url": "s2"},
            "processed": {"url": "p", "thumb2x_url": "p2"},
        })

    status = await make_client(handler).get_status("42")

    assert status.state == ProcessorState.READY
    assert (status.result_url, status.result_thumb_url, status.source_thumb_url) == ("p", "p2", "s2")


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [429, 500, 503])
async def test_retryable_status_codes_are_transient(code):
    client = make_client(lambda request: httpx.Response(code, text="busy"))

    with pytest.raises(ProcessorTransientError):
        await client.get_status("42")


@pytest.mark.asyncio
async def test_client_errors_are_not_transient():
    client = make_client(lambda request: httpx.Response(400, text="bad"))

    with pytest.raises(ExternalAPIError) as exc_info:
        await client.get_status("42")

    assert not isinstance(exc_info.value, ProcessorTransientError)
    assert exc_info.value.http_status == 400


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProcessorTransientError):
        await make_client(handler).submit(b"x", "x.png", "image/png")


@pytest.mark.parametrize("raw,state", [
    ("ready", ProcessorState.READY),
    ("READY", ProcessorState.READY),
    ("queue", ProcessorState.PENDING),
    ("processing", ProcessorState.PENDING),
    ("error", ProcessorState.FAILED),
    ("something_new", ProcessorState.UNKNOWN),
    (None, ProcessorState.UNKNOWN),
])
def test_status_classification(raw, state):
    assert classify_status(raw) == state


@pytest.mark.asyncio
async def test_html_body_on_200_is_transient():
    client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))

    with pytest.raises(ProcessorTransientError):
        await client.get_status("42")


@pytest.mark.asyncio
async def test_non_object_json_on_200_is_transient():
    client = make_client(lambda request: httpx.Response(200, json=["ready"]))

    with pytest.raises(ProcessorTransientError):
        await client.submit(b"x", "x.png", "image/png")


@pytest.mark.asyncio
async def test_status_tolerates_unexpected_nested_shapes():
    client = make_client(lambda request: httpx.Response(200, json={
        "statusName": "processing",
        "source": "s",
        "processed": None,
    }))

    status = await client.get_status("42")

    assert status.state == ProcessorState.PENDING
    assert status.source_url is None
    assert status.result_url is None

"""
Background-Removal Processor Client

The processor is an external HTTP service:
    POST /process_image?token=...          multipart "image" -> {id, statusName, source}
    GET  /process_image/{id}?token=...     -> {statusName, source, processed}

Network errors, timeouts, 429, 5xx and unparseable 200 bodies raise ProcessorTransientError
so callers can retry; anything else raises ExternalAPIError.
"""

import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from erazor.core.config import settings
from erazor.core.exceptions import ExternalAPIError, ProcessorTransientError
from erazor.core.logging import get_logger
from erazor.core.metrics import record_processor_call

logger = get_logger(__name__)


class ProcessorState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    UNKNOWN = "unknown"


PENDING_STATUSES = {"queue", "queued", "pending", "processing"}
FAILED_STATUSES = {"failed", "error"}
READY_STATUSES = {"ready"}


def classify_status(status_name: Optional[str]) -> ProcessorState:
    name = (status_name or "").strip().lower()
    if name in READY_STATUSES:
        return ProcessorState.READY
    if name in FAILED_STATUSES:
        return ProcessorState.FAILED
    if name in PENDING_STATUSES:
        return ProcessorState.PENDING
    return ProcessorState.UNKNOWN


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class SubmissionResult(BaseModel):
    process_id: str
    status: str
    source_url: Optional[str] = None


class ProcessorStatus(BaseModel):
    status: str
    source_url: Optional[str] = None
    source_thumb_url: Optional[str] = None
    result_url: Optional[str] = None
    result_thumb_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def state(self) -> ProcessorState:
        return classify_status(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProcessorState.READY, ProcessorState.FAILED)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ProcessorStatus":
        source = _section(data, "source")
        processed = _section(data, "processed")
        return cls(
            status=str(data.get("statusName") or data.get("status") or ""),
            source_url=_text(source.get("url")),
            source_thumb_url=_text(source.get("thumb2x_url")),
            result_url=_text(processed.get("url")),
            result_thumb_url=_text(processed.get("thumb2x_url")),
            error=_text(data.get("error") or data.get("message")),
        )


class ProcessorClient:
    """Async client for the background-removal processor."""

    def __init__(
        self,
        base_url: str = settings.PROCESSOR_API_URL,
        api_key: Optional[str] = settings.PROCESSOR_API_KEY,
        timeout: float = settings.PROCESSOR_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _params(self) -> Dict[str, str]:
        return {"token": self.api_key} if self.api_key else {}

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> Dict[str, Any]:
        start = time.time()
        try:
            response = await self._client.request(method, url, params=self._params(), **kwargs)
        except httpx.TimeoutException as e:
            record_processor_call(operation, "timeout", time.time() - start)
            raise ProcessorTransientError(f"Processor {operation} timed out") from e
        except httpx.TransportError as e:
            record_processor_call(operation, "network_error", time.time() - start)
            raise ProcessorTransientError(f"Processor {operation} unreachable: {e}") from e

        latency = time.time() - start
        if response.status_code == 429 or response.status_code >= 500:
            record_processor_call(operation, "transient_error", latency)
            raise ProcessorTransientError(
                f"Processor {operation} returned {response.status_code}",
                http_status=response.status_code
            )
        if response.status_code >= 400:
            record_processor_call(operation, "error", latency)
            raise ExternalAPIError(
                f"Processor {operation} rejected request: {response.text[:200]}",
                service="processor",
                http_status=response.status_code
            )

        # A 200 from a gateway or proxy in front of the processor can carry an
        # HTML error page; treat it like any other upstream hiccup
        try:
            data = response.json()
        except ValueError as e:
            record_processor_call(operation, "malformed", latency)
            raise ProcessorTransientError(f"Processor {operation} returned a non-JSON body") from e
        if not isinstance(data, dict):
            record_processor_call(operation, "malformed", latency)
            raise ProcessorTransientError(f"Processor {operation} returned {type(data).__name__}, expected an object")

        record_processor_call(operation, "success", latency)
        return data

    async def submit(self, file_data: bytes, filename: str, content_type: str) -> SubmissionResult:
        """Upload an image for background removal."""
        data = await self._request(
            "submit",
            "POST",
            f"{self.base_url}/process_image",
            files={"image": (filename, file_data, content_type)},
        )
        if not data.get("id"):
            raise ExternalAPIError("Processor response missing process id", service="processor")

        source = _section(data, "source")
        result = SubmissionResult(
            process_id=str(data["id"]),
            status=str(data.get("statusName") or data.get("status") or ""),
            source_url=_text(source.get("url")),
        )
        logger.info("processor_submitted", process_id=result.process_id, status=result.status)
        return result

    async def get_status(self, process_id: str) -> ProcessorStatus:
        """Fetch the current processing status of a submitted image."""
        data = await self._request(
            "get_status",
            "GET",
            f"{self.base_url}/process_image/{process_id}",
        )
        return ProcessorStatus.from_api(data)

"""HTTP generation back-end.

Speaks the editor's JSON routes:

    POST {base_url}/api/generate/image    -> {"predictionId": ...}
    POST {base_url}/api/generate/video    -> {"taskId": ...}
    POST {base_url}/api/generate/upscale  -> {"id": ...}

    GET  {base_url}/api/poll?predictionId=<id>
    GET  {base_url}/api/poll?taskId=<id>&type=video
    GET  {base_url}/api/generate/upscale?id=<id>
         -> {"status": ..., "output": ..., "error": ..., "progress": ...}

Request bodies are the camelCase form of the job request models.
"""

import logging
from typing import Any

import httpx

from canvasflow.core.graph_schema import JobKind
from canvasflow.core.inputs import JobRequest
from canvasflow.core.job_driver import (
    JobFailedError,
    JobStatus,
    RemoteStatus,
    SubmissionError,
    TransientPollError,
)

logger = logging.getLogger(__name__)

# Response field holding the external job ID, per job kind
_ID_FIELDS = {
    JobKind.IMAGE: "predictionId",
    JobKind.VIDEO: "taskId",
    JobKind.UPSCALE: "id",
}

_FAILED_STATUSES = {"failed", "canceled", "cancelled", "error", "expired"}
_SUCCEEDED_STATUSES = {"succeeded", "completed"}


def _poll_request(external_job_id: str, kind: JobKind) -> tuple[str, dict[str, str]]:
    """Route and query parameters for a status query."""
    if kind == JobKind.IMAGE:
        return "/api/poll", {"predictionId": external_job_id}
    if kind == JobKind.VIDEO:
        return "/api/poll", {"taskId": external_job_id, "type": "video"}
    # Upscale jobs are tracked by the upscale route itself
    return "/api/generate/upscale", {"id": external_job_id}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase or f"HTTP {response.status_code}"


def parse_poll_response(body: dict[str, Any]) -> JobStatus:
    """Map a poll response body onto JobStatus.

    Provider statuses other than the terminal ones ("queued", "running", ...)
    are reported as processing.
    """
    raw = str(body.get("status") or "").lower()
    if raw in _SUCCEEDED_STATUSES:
        status = RemoteStatus.SUCCEEDED
    elif raw in _FAILED_STATUSES:
        status = RemoteStatus.FAILED
    elif raw == RemoteStatus.STARTING.value:
        status = RemoteStatus.STARTING
    else:
        status = RemoteStatus.PROCESSING

    output = body.get("output")
    if isinstance(output, list):
        output = output[0] if output else None

    progress = body.get("progress")
    return JobStatus(
        status=status,
        output_ref=output,
        error_message=body.get("error"),
        progress=float(progress) if isinstance(progress, int | float) else None,
    )


class HttpGenerationBackend:
    """GenerationBackend over the editor's HTTP API.

    USAGE:
        async with HttpGenerationBackend("http://localhost:3000") as backend:
            driver = JobDriver(backend)
            ...
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "HttpGenerationBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit_job(self, kind: JobKind, request: JobRequest) -> str:
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            response = await self._client.post(f"/api/generate/{kind.value}", json=payload)
        except httpx.RequestError as e:
            raise SubmissionError(f"Generation request failed: {e}")

        if response.status_code >= 400:
            raise SubmissionError(
                f"Generation failed: {_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            raise SubmissionError("Generation response is not valid JSON")

        job_id = body.get(_ID_FIELDS[kind]) if isinstance(body, dict) else None
        if not job_id:
            raise SubmissionError(
                f"Generation response has no '{_ID_FIELDS[kind]}'",
                status_code=response.status_code,
            )
        logger.debug(f"Submitted {kind.value} job {job_id}")
        return str(job_id)

    async def poll_job(self, external_job_id: str, kind: JobKind) -> JobStatus:
        path, params = _poll_request(external_job_id, kind)
        try:
            response = await self._client.get(path, params=params)
        except httpx.RequestError as e:
            raise TransientPollError(f"Status query failed: {e}")

        if response.status_code >= 500:
            raise TransientPollError(f"Status query failed: {_error_detail(response)}")
        if response.status_code >= 400:
            # Unknown or expired job; retrying will not bring it back
            raise JobFailedError(f"Job {external_job_id}: {_error_detail(response)}")

        try:
            body = response.json()
        except ValueError:
            raise TransientPollError("Status response is not valid JSON")
        if not isinstance(body, dict):
            raise TransientPollError("Status response is not a JSON object")

        return parse_poll_response(body)

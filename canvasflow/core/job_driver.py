"""Job driver: runs one generator node's external job to completion.

PROTOCOL:
1. Mark the node running and submit the job to the back-end
2. Record the external job ID on the node
3. Poll at a fixed interval until the job succeeds, fails, or the attempt
   budget for its kind runs out

PROGRESS:
    While polling, progress is an estimate that never decreases and never
    exceeds POLL_PROGRESS_CAP. Only the success transition sets 100, so a
    node never looks finished before the back-end says it is.

CANCELLATION:
    An optional asyncio.Event is checked around every sleep and poll. The
    sleep wakes as soon as the event is set, so a cancelled run stops polling
    within one scheduling step instead of waiting out its interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, field_validator

from canvasflow.core.graph_schema import GeneratorState, JobKind, Node
from canvasflow.core.inputs import JobRequest

logger = logging.getLogger(__name__)

POLL_PROGRESS_CAP = 90.0


class JobError(Exception):
    """Base class for failures of a single external job."""

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.node_id = node_id


class SubmissionError(JobError):
    """The back-end rejected the job-creation call."""

    def __init__(self, message: str, status_code: int | None = None, node_id: str | None = None):
        super().__init__(message, node_id)
        self.status_code = status_code


class JobFailedError(JobError):
    """The back-end reported the job as failed."""

    pass


class JobTimeoutError(JobError, TimeoutError):
    """The poll budget ran out before the job reached a terminal status."""

    pass


class JobCancelledError(JobError):
    """The owning run was cancelled while the job was in flight."""

    pass


class TransientPollError(JobError):
    """A status query failed in a way worth retrying (network blip, 5xx)."""

    pass


class RemoteStatus(str, Enum):
    """Status of an external job as reported by the back-end."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatus(BaseModel):
    """One poll response."""

    status: RemoteStatus
    output_ref: str | None = None
    error_message: str | None = None
    progress: float | None = None  # Optional hint from the provider (0-100)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        # Video providers report "completed" for a finished task
        if isinstance(v, str) and v.lower() == "completed":
            return RemoteStatus.SUCCEEDED
        return v


class GenerationBackend(Protocol):
    """Submit/poll contract of a generation back-end."""

    async def submit_job(self, kind: JobKind, request: JobRequest) -> str:
        """Create a job and return its external ID; raise SubmissionError on rejection."""
        ...

    async def poll_job(self, external_job_id: str, kind: JobKind) -> JobStatus:
        """Return the current status of a job."""
        ...


@dataclass
class PollPolicy:
    """Polling budget and progress curve for one job kind."""

    max_attempts: int = 120
    interval: float = 1.0  # seconds between polls
    base_progress: float = 10.0
    progress_step: float = 2.0
    max_poll_errors: int = 3  # consecutive transient poll failures tolerated

    def estimate_progress(self, attempt: int) -> float:
        """Progress estimate after ``attempt`` non-terminal polls."""
        return min(POLL_PROGRESS_CAP, self.base_progress + attempt * self.progress_step)


# Images finish in seconds, videos in minutes, upscales in under a minute
DEFAULT_POLL_POLICIES: dict[JobKind, PollPolicy] = {
    JobKind.IMAGE: PollPolicy(max_attempts=120, progress_step=2.0),
    JobKind.VIDEO: PollPolicy(max_attempts=300, progress_step=0.5),
    JobKind.UPSCALE: PollPolicy(max_attempts=60, progress_step=3.0),
}


@dataclass
class JobResult:
    """Successful outcome of a job."""

    output_ref: str
    external_job_id: str
    polls: int


NodeUpdateCallback = Callable[[str, GeneratorState], None]


def error_message(exc: BaseException) -> str:
    """Readable message for an exception, falling back to its type name."""
    return str(exc) or type(exc).__name__


class JobDriver:
    """Drive generator nodes through the submit/poll protocol.

    USAGE:
        driver = JobDriver(backend)
        result = await driver.run_job(node, request)
        print(result.output_ref)

    Every state change on the node is reported through ``on_node_update``
    with a copy of the node's GeneratorState.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        policies: dict[JobKind, PollPolicy] | None = None,
        on_node_update: NodeUpdateCallback | None = None,
    ):
        self.backend = backend
        self.policies = {**DEFAULT_POLL_POLICIES, **(policies or {})}
        self.on_node_update = on_node_update

    def policy_for(self, kind: JobKind) -> PollPolicy:
        return self.policies[kind]

    async def run_job(
        self,
        node: Node,
        request: JobRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> JobResult:
        """Submit a job for ``node`` and wait for it to finish.

        Raises:
            SubmissionError: The back-end rejected the job
            JobFailedError: The back-end reported failure
            JobTimeoutError: The poll budget ran out
            JobCancelledError: ``cancel_event`` was set
            TypeError: ``node`` is not a generator
        """
        kind = node.generator_config.job_kind
        policy = self.policy_for(kind)

        self._raise_if_cancelled(node, cancel_event)
        token = node.state.claim()
        self._update(
            node,
            token,
            is_running=True,
            progress=0.0,
            output_ref=None,
            last_error=None,
            external_job_id=None,
        )

        try:
            external_job_id = await self.backend.submit_job(kind, request)
            self._update(node, token, external_job_id=external_job_id)
            logger.info(f"Node {node.id}: submitted {kind.value} job {external_job_id}")

            output_ref, polls = await self._poll_until_terminal(
                node, token, kind, external_job_id, policy, cancel_event
            )
        except asyncio.CancelledError:
            self._update(node, token, is_running=False, progress=0.0, last_error="Cancelled")
            raise
        except Exception as e:
            if isinstance(e, JobError) and e.node_id is None:
                e.node_id = node.id
            self._update(node, token, is_running=False, progress=0.0, last_error=error_message(e))
            raise

        self._update(node, token, is_running=False, progress=100.0, output_ref=output_ref, last_error=None)
        logger.info(f"Node {node.id}: job {external_job_id} succeeded after {polls} poll(s)")
        return JobResult(output_ref=output_ref, external_job_id=external_job_id, polls=polls)

    async def _poll_until_terminal(
        self,
        node: Node,
        token: object,
        kind: JobKind,
        external_job_id: str,
        policy: PollPolicy,
        cancel_event: asyncio.Event | None,
    ) -> tuple[str, int]:
        consecutive_errors = 0

        for attempt in range(1, policy.max_attempts + 1):
            await self._sleep(policy.interval, cancel_event)
            self._raise_if_cancelled(node, cancel_event)

            try:
                status = await self.backend.poll_job(external_job_id, kind)
            except TransientPollError as e:
                consecutive_errors += 1
                if consecutive_errors > policy.max_poll_errors:
                    raise
                logger.warning(
                    f"Node {node.id}: poll {attempt} failed ({e}), "
                    f"retry {consecutive_errors}/{policy.max_poll_errors}"
                )
                continue
            consecutive_errors = 0

            # A result that arrives after cancellation is discarded
            self._raise_if_cancelled(node, cancel_event)
            logger.debug(f"Node {node.id}: poll {attempt} -> {status.status.value}")

            if status.status == RemoteStatus.SUCCEEDED:
                if not status.output_ref:
                    raise JobFailedError("Job succeeded without an output", node.id)
                return status.output_ref, attempt

            if status.status == RemoteStatus.FAILED:
                raise JobFailedError(status.error_message or "Generation failed", node.id)

            estimate = policy.estimate_progress(attempt)
            if status.progress is not None:
                estimate = max(estimate, min(status.progress, POLL_PROGRESS_CAP))
            self._update(node, token, progress=max(node.state.progress, estimate))

        raise JobTimeoutError(
            f"Generation timed out after {policy.max_attempts} polls", node.id
        )

    async def _sleep(self, interval: float, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await asyncio.sleep(interval)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass  # Interval elapsed without cancellation

    def _raise_if_cancelled(self, node: Node, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError("Cancelled", node.id)

    def _update(self, node: Node, token: object, **changes) -> None:
        if not node.state.is_owned_by(token):
            # A newer job call took over the node; this one only unwinds
            return
        for key, value in changes.items():
            setattr(node.state, key, value)
        if self.on_node_update is not None:
            self.on_node_update(node.id, node.state.model_copy())

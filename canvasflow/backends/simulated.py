"""In-process back-end that fakes generation jobs.

Used by ``canvasflow run --simulate`` to dry-run a workflow without a
generation server. Every job reports progress for a fixed number of polls
and then succeeds with a placeholder output reference. A job whose prompt
contains ``fail_marker`` fails instead.
"""

import itertools
import logging
from dataclasses import dataclass

from canvasflow.core.graph_schema import JobKind
from canvasflow.core.inputs import JobRequest, UpscaleJobRequest
from canvasflow.core.job_driver import JobFailedError, JobStatus, RemoteStatus

logger = logging.getLogger(__name__)

_EXTENSIONS = {JobKind.IMAGE: "png", JobKind.VIDEO: "mp4", JobKind.UPSCALE: "png"}


@dataclass
class _SimulatedJob:
    kind: JobKind
    fail: bool
    polls: int = 0


class SimulatedBackend:
    """GenerationBackend that completes jobs after ``polls_to_complete`` polls."""

    def __init__(self, polls_to_complete: int = 3, fail_marker: str = "[fail]"):
        self.polls_to_complete = polls_to_complete
        self.fail_marker = fail_marker
        self.jobs: dict[str, _SimulatedJob] = {}
        self._ids = itertools.count(1)

    async def submit_job(self, kind: JobKind, request: JobRequest) -> str:
        job_id = f"sim-{kind.value}-{next(self._ids)}"
        prompt = "" if isinstance(request, UpscaleJobRequest) else request.prompt
        self.jobs[job_id] = _SimulatedJob(kind=kind, fail=self.fail_marker in prompt)
        logger.debug(f"Simulated {kind.value} job {job_id} created")
        return job_id

    async def poll_job(self, external_job_id: str, kind: JobKind) -> JobStatus:
        job = self.jobs.get(external_job_id)
        if job is None:
            raise JobFailedError(f"Unknown job {external_job_id}")

        job.polls += 1
        if job.polls < self.polls_to_complete:
            return JobStatus(
                status=RemoteStatus.PROCESSING,
                progress=100.0 * job.polls / self.polls_to_complete,
            )
        if job.fail:
            return JobStatus(status=RemoteStatus.FAILED, error_message="Simulated failure")
        return JobStatus(
            status=RemoteStatus.SUCCEEDED,
            output_ref=f"sim://{external_job_id}.{_EXTENSIONS[job.kind]}",
        )

# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the canvasflow test suite.

This module provides foundational fixtures used across all test modules:
- A fluent builder for canvas graphs
- A scripted fake generation back-end that records every call
- Job drivers and poll policies with a zero poll interval

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

import pytest
import yaml

from canvasflow.core.executor import WorkflowScheduler
from canvasflow.core.graph_schema import (
    Edge,
    JobKind,
    Node,
    NodeType,
    PromptConfig,
    ReferenceConfig,
    WorkflowGraph,
)
from canvasflow.core.inputs import JobRequest
from canvasflow.core.job_driver import (
    DEFAULT_POLL_POLICIES,
    JobDriver,
    JobStatus,
    PollPolicy,
    RemoteStatus,
)


# =============================================================================
# Graph Fixtures
# =============================================================================


class GraphBuilder:
    """Fluent builder for test graphs.

    Example:
        graph = (
            GraphBuilder()
            .prompt("P", "a cat")
            .image("I")
            .connect("P", "I")
            .build()
        )
    """

    def __init__(self):
        self.nodes: list[Node] = []
        self.edges: list[Edge] = []

    def prompt(self, node_id: str, text: str = "", negative: str = "") -> GraphBuilder:
        self.nodes.append(
            Node(
                id=node_id,
                type=NodeType.PROMPT,
                prompt_config=PromptConfig(prompt=text, negative_prompt=negative),
            )
        )
        return self

    def reference(
        self,
        node_id: str,
        url: str | None = None,
        role: str = "single",
        urls: list[str] | None = None,
    ) -> GraphBuilder:
        self.nodes.append(
            Node(
                id=node_id,
                type=NodeType.REFERENCE,
                reference_config=ReferenceConfig(image_url=url, image_urls=urls or [], role=role),
            )
        )
        return self

    def image(self, node_id: str) -> GraphBuilder:
        self.nodes.append(Node(id=node_id, type=NodeType.IMAGE))
        return self

    def video(self, node_id: str) -> GraphBuilder:
        self.nodes.append(Node(id=node_id, type=NodeType.VIDEO))
        return self

    def upscale(self, node_id: str) -> GraphBuilder:
        self.nodes.append(Node(id=node_id, type=NodeType.UPSCALE))
        return self

    def output(self, node_id: str) -> GraphBuilder:
        self.nodes.append(Node(id=node_id, type=NodeType.OUTPUT))
        return self

    def connect(self, source: str, *targets: str) -> GraphBuilder:
        for target in targets:
            self.edges.append(Edge(id=f"{source}->{target}", source=source, target=target))
        return self

    def build(self, name: str = "Test workflow") -> WorkflowGraph:
        return WorkflowGraph(name=name, nodes=list(self.nodes), edges=list(self.edges))


@pytest.fixture
def graph_builder() -> type[GraphBuilder]:
    """The GraphBuilder class; call it to start a new graph."""
    return GraphBuilder


@pytest.fixture
def prompt_to_image(graph_builder) -> WorkflowGraph:
    """Smallest runnable graph: P(prompt) -> I(image)."""
    return graph_builder().prompt("P", "a red fox").image("I").connect("P", "I").build()


@pytest.fixture
def diamond_graph(graph_builder) -> WorkflowGraph:
    """P -> I1, P -> I2, I1 -> V, I2 -> V."""
    return (
        graph_builder()
        .prompt("P", "forest at dawn")
        .image("I1")
        .image("I2")
        .video("V")
        .connect("P", "I1", "I2")
        .connect("I1", "V")
        .connect("I2", "V")
        .build()
    )


@pytest.fixture
def workflow_file(tmp_path: Path, prompt_to_image: WorkflowGraph) -> Path:
    """prompt_to_image written as YAML."""
    path = tmp_path / "workflow.yaml"
    data = prompt_to_image.model_dump(mode="json", exclude_none=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


# =============================================================================
# Back-end Fixtures
# =============================================================================


Matcher = Callable[[JobKind, JobRequest], bool]


def prompt_is(text: str) -> Matcher:
    return lambda kind, request: getattr(request, "prompt", None) == text


def kind_is(job_kind: JobKind) -> Matcher:
    return lambda kind, request: kind == job_kind


def processing(progress: float | None = None) -> JobStatus:
    return JobStatus(status=RemoteStatus.PROCESSING, progress=progress)


def succeeded(output_ref: str | None = None) -> JobStatus:
    return JobStatus(status=RemoteStatus.SUCCEEDED, output_ref=output_ref)


def failed(message: str = "Generation failed") -> JobStatus:
    return JobStatus(status=RemoteStatus.FAILED, error_message=message)


@dataclass
class ScriptedJob:
    kind: JobKind
    request: JobRequest
    outcomes: list[JobStatus | Exception]
    polls: int = 0


@dataclass
class ScriptedBackend:
    """Fake GenerationBackend driven by per-job outcome scripts.

    Each poll consumes the next outcome of the job's script; the last outcome
    repeats forever. Outcomes may be exceptions, which are raised. A
    succeeded outcome without an output gets ``out://<job_id>``.

    ``events`` records "submit:<job_id>" and "done:<job_id>" in call order so
    tests can assert on interleaving.
    """

    default_polls: int = 1
    submissions: list[tuple[JobKind, JobRequest]] = field(default_factory=list)
    polls: list[str] = field(default_factory=list)
    events: list[str] = field(default_factory=list)
    jobs: dict[str, ScriptedJob] = field(default_factory=dict)
    _scripts: list[tuple[Matcher, list]] = field(default_factory=list)
    _submit_errors: list[tuple[Matcher, Exception]] = field(default_factory=list)

    def script(self, match: Matcher, outcomes: list[JobStatus | Exception]) -> None:
        self._scripts.append((match, outcomes))

    def fail_submit(self, match: Matcher, error: Exception) -> None:
        self._submit_errors.append((match, error))

    def submitted_prompts(self) -> list[str | None]:
        return [getattr(request, "prompt", None) for _, request in self.submissions]

    async def submit_job(self, kind: JobKind, request: JobRequest) -> str:
        self.submissions.append((kind, request))
        for match, error in self._submit_errors:
            if match(kind, request):
                raise error

        job_id = f"job-{len(self.submissions)}"
        outcomes = next((list(o) for m, o in self._scripts if m(kind, request)), None)
        if outcomes is None:
            outcomes = [processing()] * (self.default_polls - 1) + [succeeded()]

        self.jobs[job_id] = ScriptedJob(kind=kind, request=request, outcomes=outcomes)
        self.events.append(f"submit:{job_id}")
        return job_id

    async def poll_job(self, external_job_id: str, kind: JobKind) -> JobStatus:
        self.polls.append(external_job_id)
        job = self.jobs[external_job_id]
        job.polls += 1
        outcome = job.outcomes.pop(0) if len(job.outcomes) > 1 else job.outcomes[0]

        if isinstance(outcome, Exception):
            raise outcome
        if outcome.status == RemoteStatus.SUCCEEDED and outcome.output_ref is None:
            outcome = succeeded(f"out://{external_job_id}")
        if outcome.status in (RemoteStatus.SUCCEEDED, RemoteStatus.FAILED):
            self.events.append(f"done:{external_job_id}")
        return outcome


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def fast_policies() -> dict[JobKind, PollPolicy]:
    """Default poll policies with no delay between polls."""
    return {kind: replace(policy, interval=0) for kind, policy in DEFAULT_POLL_POLICIES.items()}


@pytest.fixture
def driver(backend: ScriptedBackend, fast_policies) -> JobDriver:
    return JobDriver(backend, policies=fast_policies)


@pytest.fixture
def make_scheduler(driver: JobDriver) -> Callable[[WorkflowGraph], WorkflowScheduler]:
    """Factory for schedulers sharing the scripted back-end."""
    return lambda graph: WorkflowScheduler(graph, driver)

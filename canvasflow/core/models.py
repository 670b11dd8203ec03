"""Run-record models for workflow executions.

Uses Pydantic so records can be snapshotted (model_copy) and serialized
(model_dump_json) for observers and the CLI.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of a whole workflow run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != ExecutionStatus.RUNNING


class NodeRunStatus(str, Enum):
    """Status of one generator node within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class NodeResult(BaseModel):
    """Outcome of one node in a run."""

    status: NodeRunStatus = NodeRunStatus.PENDING
    output_ref: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


class WorkflowExecution(BaseModel):
    """Record of one end-to-end run of the scheduler.

    Created by the scheduler when a run starts, mutated only by the scheduler
    while running, and left untouched once ``status`` is terminal.
    """

    id: str
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING

    execution_order: list[str] = Field(default_factory=list)
    completed_nodes: list[str] = Field(default_factory=list)
    current_node: str | None = None
    failed_node: str | None = None

    node_results: dict[str, NodeResult] = Field(default_factory=dict)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def failed_nodes(self) -> list[str]:
        return [
            node_id
            for node_id, result in self.node_results.items()
            if result.status == NodeRunStatus.FAILED
        ]

    def snapshot(self) -> "WorkflowExecution":
        """Deep copy safe to hand to observers."""
        return self.model_copy(deep=True)

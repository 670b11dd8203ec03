"""Core modules for the canvasflow engine."""

from canvasflow.core.executor import (
    ExecutionOptions,
    ExecutionStore,
    SchedulerError,
    WorkflowScheduler,
)
from canvasflow.core.graph_schema import Edge, Node, NodeType, WorkflowGraph
from canvasflow.core.job_driver import GenerationBackend, JobDriver, JobStatus, RemoteStatus
from canvasflow.core.models import (
    ExecutionStatus,
    NodeResult,
    NodeRunStatus,
    WorkflowExecution,
)

__all__ = [
    "Edge",
    "ExecutionOptions",
    "ExecutionStatus",
    "ExecutionStore",
    "GenerationBackend",
    "JobDriver",
    "JobStatus",
    "Node",
    "NodeResult",
    "NodeRunStatus",
    "NodeType",
    "RemoteStatus",
    "SchedulerError",
    "WorkflowExecution",
    "WorkflowGraph",
    "WorkflowScheduler",
]

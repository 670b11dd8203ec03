"""Workflow scheduler: runs every generator node of a graph in dependency order.

RUN LIFECYCLE:
1. Pre-flight: structural validation, cycle detection, generator filtering,
   optional resume point. Failures here raise before any record exists.
2. Running: a WorkflowExecution is created with every node pending and
   registered in the ExecutionStore (one active run per store).
3. Nodes run layer by layer (parallel) or one by one (sequential). Each node
   gathers its direct inputs, builds a request and goes through the job
   driver.
4. Terminal: completed, failed or cancelled. ``completed_at`` is set once and
   the record is never touched again.

PARALLEL MODE:
    Every node of a layer starts before any is awaited, and the whole layer is
    joined (successes and failures alike) before the next layer starts. When
    ``stop_on_error`` is set and a node fails, the rest of its layer still
    finishes and is recorded; the run is then marked failed and later layers
    never start.

NOTIFICATION:
    ``on_progress`` receives a deep-copied snapshot after every mutation of the
    record. It is the only notification channel.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from canvasflow.core.graph_schema import WorkflowGraph
from canvasflow.core.inputs import build_job_request, get_connected_inputs
from canvasflow.core.job_driver import JobDriver, JobResult, error_message
from canvasflow.core.models import (
    ExecutionStatus,
    NodeResult,
    NodeRunStatus,
    WorkflowExecution,
)
from canvasflow.core.resolver import get_execution_layers, topo_sort

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Error raised before or around a workflow run."""

    pass


class CycleDetectedError(SchedulerError):
    """The graph contains a circular dependency."""

    def __init__(self, cycle_path: list[str]):
        self.cycle_path = cycle_path
        path = " → ".join(cycle_path) if cycle_path else "unknown cycle"
        super().__init__(f"Circular dependency detected: {path}")


class NoRunnableNodesError(SchedulerError):
    """There are no generator nodes to run."""

    pass


class InvalidStartNodeError(SchedulerError):
    """The requested resume point is not a generator node of the graph."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Start node '{node_id}' not found in execution order")


class InvalidGraphError(SchedulerError):
    """The graph has structural errors (duplicate IDs, dangling edges)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid workflow graph: {'; '.join(errors)}")


class ExecutionInProgressError(SchedulerError):
    """Another run is already active on the same execution store."""

    pass


ProgressCallback = Callable[[WorkflowExecution], None]


@dataclass
class ExecutionOptions:
    """Options for a single run."""

    parallel: bool = True
    stop_on_error: bool = True
    start_node_id: str | None = None  # Resume from this node (suffix of the order)
    on_progress: ProgressCallback | None = None


@dataclass
class ActiveRun:
    """The run currently owned by an ExecutionStore."""

    execution: WorkflowExecution
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    on_progress: ProgressCallback | None = None


class ExecutionStore:
    """Tracks the single active run of a canvas.

    Share one store between schedulers that work on the same canvas to get
    single-flight behavior across them.
    """

    def __init__(self):
        self._active: ActiveRun | None = None

    @property
    def active(self) -> ActiveRun | None:
        return self._active

    @property
    def is_busy(self) -> bool:
        return self._active is not None

    def begin(self, execution: WorkflowExecution, on_progress: ProgressCallback | None) -> ActiveRun:
        """Register ``execution`` as the active run.

        Raises:
            ExecutionInProgressError: If another run is active
        """
        if self._active is not None:
            raise ExecutionInProgressError(
                f"Execution '{self._active.execution.id}' is still running"
            )
        self._active = ActiveRun(execution=execution, on_progress=on_progress)
        return self._active

    def release(self, run: ActiveRun) -> None:
        if self._active is run:
            self._active = None


def _now() -> datetime:
    return datetime.now(UTC)


class WorkflowScheduler:
    """Run the generator nodes of one graph snapshot.

    USAGE:
        scheduler = WorkflowScheduler(graph, JobDriver(backend))
        execution = await scheduler.execute(ExecutionOptions(parallel=True))
        if execution.status == ExecutionStatus.FAILED:
            print(execution.failed_node, execution.error)
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        driver: JobDriver,
        store: ExecutionStore | None = None,
    ):
        self.graph = graph
        self.driver = driver
        self.store = store or ExecutionStore()
        self._nodes = graph.node_map()

    @property
    def active_execution(self) -> WorkflowExecution | None:
        run = self.store.active
        return run.execution if run else None

    # ========== Planning ==========

    def plan(self, start_node_id: str | None = None) -> list[str]:
        """Compute the generator execution order.

        Raises:
            InvalidGraphError: On duplicate IDs or dangling edges
            CycleDetectedError: If the graph has a cycle
            InvalidStartNodeError: If ``start_node_id`` is not a generator in the order
            NoRunnableNodesError: If no generator node remains
        """
        errors = self.graph.validate_graph()
        if errors:
            raise InvalidGraphError(errors)

        result = topo_sort(self.graph.nodes, self.graph.edges)
        if result.has_cycle:
            raise CycleDetectedError(result.cycle_path)

        # Non-generator nodes are pure inputs and are never run
        order = [node_id for node_id in result.order if self._nodes[node_id].is_generator]

        if start_node_id is not None:
            if start_node_id not in order:
                raise InvalidStartNodeError(start_node_id)
            order = order[order.index(start_node_id):]

        if not order:
            raise NoRunnableNodesError("No generator nodes to execute")

        return order

    def generator_layers(self, execution_order: list[str]) -> list[list[str]]:
        """Execution layers restricted to ``execution_order``, empty layers dropped."""
        selected = set(execution_order)
        layers = [
            [node_id for node_id in layer if node_id in selected]
            for layer in get_execution_layers(self.graph.nodes, self.graph.edges)
        ]
        return [layer for layer in layers if layer]

    # ========== Run lifecycle ==========

    async def execute(self, options: ExecutionOptions | None = None) -> WorkflowExecution:
        """Run the workflow and return its final record.

        Node failures never raise from here; they are recorded in the returned
        execution. Pre-flight problems raise SchedulerError subclasses.
        """
        options = options or ExecutionOptions()

        if self.store.is_busy:
            raise ExecutionInProgressError(
                f"Execution '{self.store.active.execution.id}' is still running"
            )

        execution_order = self.plan(options.start_node_id)

        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            execution_order=execution_order,
            node_results={node_id: NodeResult() for node_id in execution_order},
        )
        run = self.store.begin(execution, options.on_progress)
        logger.info(
            f"Starting execution {execution.id}: {len(execution_order)} node(s), "
            f"{'parallel' if options.parallel else 'sequential'}, "
            f"stop_on_error={options.stop_on_error}"
        )
        self._notify(run)

        try:
            if options.parallel:
                await self._run_layers(run, execution_order, options.stop_on_error)
            else:
                await self._run_sequential(run, execution_order, options.stop_on_error)
            self._finish(run, ExecutionStatus.COMPLETED)
        except Exception as e:
            logger.error(f"Execution {execution.id} aborted: {e}")
            self._finish(run, ExecutionStatus.FAILED, error=error_message(e))
            raise
        finally:
            self.store.release(run)

        return execution

    def cancel(self) -> bool:
        """Cancel the active run.

        Nodes that have not started are marked skipped, nodes in flight are
        marked failed with "Cancelled", the run becomes cancelled and in-flight
        jobs are told to stop polling.

        Returns:
            True if a run was cancelled, False if none was active
        """
        run = self.store.active
        if run is None or run.execution.is_terminal:
            return False

        run.cancel_event.set()
        now = _now()
        for result in run.execution.node_results.values():
            if result.status == NodeRunStatus.PENDING:
                result.status = NodeRunStatus.SKIPPED
            elif result.status == NodeRunStatus.RUNNING:
                result.status = NodeRunStatus.FAILED
                result.error = "Cancelled"
                result.completed_at = now
                if result.started_at is not None:
                    result.duration_ms = int((now - result.started_at).total_seconds() * 1000)
        self._finish(run, ExecutionStatus.CANCELLED, error="Cancelled")
        self.store.release(run)
        return True

    async def _run_layers(self, run: ActiveRun, execution_order: list[str], stop_on_error: bool):
        layers = self.generator_layers(execution_order)
        for index, layer in enumerate(layers):
            if run.execution.is_terminal:
                return
            logger.info(f"Layer {index + 1}/{len(layers)}: {', '.join(layer)}")

            results = await asyncio.gather(
                *[self._run_node(run, node_id) for node_id in layer],
                return_exceptions=True,
            )

            if run.execution.is_terminal:
                return
            for node_id, result in zip(layer, results):
                if isinstance(result, BaseException) and stop_on_error:
                    self._finish(
                        run,
                        ExecutionStatus.FAILED,
                        failed_node=node_id,
                        error=error_message(result),
                    )
                    return

    async def _run_sequential(
        self, run: ActiveRun, execution_order: list[str], stop_on_error: bool
    ):
        for node_id in execution_order:
            if run.execution.is_terminal:
                return
            try:
                await self._run_node(run, node_id)
            except Exception as e:
                if run.execution.is_terminal:
                    return
                if stop_on_error:
                    self._finish(
                        run,
                        ExecutionStatus.FAILED,
                        failed_node=node_id,
                        error=error_message(e),
                    )
                    return

    async def _run_node(self, run: ActiveRun, node_id: str) -> JobResult | None:
        """Run one node and record its outcome.

        Node errors are recorded and re-raised so the caller can apply
        ``stop_on_error``. Outcomes arriving after the run turned terminal are
        dropped.
        """
        execution = run.execution
        if execution.is_terminal:
            return None

        node = self._nodes[node_id]
        started_at = _now()
        started = time.monotonic()
        execution.current_node = node_id
        execution.node_results[node_id] = NodeResult(
            status=NodeRunStatus.RUNNING, started_at=started_at
        )
        self._notify(run)

        try:
            inputs = get_connected_inputs(self.graph, node_id)
            request = build_job_request(node, inputs)
            result = await self.driver.run_job(node, request, run.cancel_event)
        except Exception as e:
            if not execution.is_terminal:
                message = error_message(e)
                logger.warning(f"Node {node_id} failed: {message}")
                execution.node_results[node_id] = NodeResult(
                    status=NodeRunStatus.FAILED,
                    error=message,
                    started_at=started_at,
                    completed_at=_now(),
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                self._notify(run)
            raise

        if not execution.is_terminal:
            execution.node_results[node_id] = NodeResult(
                status=NodeRunStatus.SUCCESS,
                output_ref=result.output_ref,
                started_at=started_at,
                completed_at=_now(),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            execution.completed_nodes.append(node_id)
            self._notify(run)
        return result

    def _finish(
        self,
        run: ActiveRun,
        status: ExecutionStatus,
        failed_node: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Move the run to a terminal status; no-op if it already is terminal."""
        execution = run.execution
        if execution.is_terminal:
            return False

        execution.status = status
        execution.completed_at = _now()
        if failed_node is not None:
            execution.failed_node = failed_node
        if error is not None:
            execution.error = error

        duration = (execution.completed_at - execution.started_at).total_seconds()
        if status == ExecutionStatus.COMPLETED:
            logger.info(
                f"Execution {execution.id} completed in {duration:.2f}s "
                f"({len(execution.completed_nodes)}/{len(execution.execution_order)} succeeded)"
            )
        else:
            logger.info(f"Execution {execution.id} {status.value} after {duration:.2f}s: {error}")

        self._notify(run)
        return True

    def _notify(self, run: ActiveRun) -> None:
        if run.on_progress is None:
            return
        try:
            run.on_progress(run.execution.snapshot())
        except Exception:
            logger.exception("Progress callback raised; continuing execution")

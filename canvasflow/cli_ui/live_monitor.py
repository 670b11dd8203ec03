"""Live execution monitoring for workflow runs.

Provides a real-time terminal display fed by the scheduler's progress
snapshots and the job driver's node updates.
"""

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from canvasflow.cli_ui.graph_renderer import StatusTableRenderer
from canvasflow.core.graph_schema import GeneratorState, WorkflowGraph
from canvasflow.core.models import ExecutionStatus, NodeRunStatus, WorkflowExecution


class LiveExecutionMonitor:
    """
    Real-time terminal UI for one workflow run.

    USAGE:
        monitor = LiveExecutionMonitor(graph)
        driver = JobDriver(backend, on_node_update=monitor.on_node_update)
        with monitor:
            await scheduler.execute(ExecutionOptions(on_progress=monitor.on_progress))

    Design Notes:
    - Push-based: nothing polls, every callback re-renders once
    - Reuses one Progress widget to avoid flickering
    """

    def __init__(self, workflow: WorkflowGraph, console: Console | None = None):
        self.workflow = workflow
        self.console = console or Console()
        self.status_renderer = StatusTableRenderer(self.console)
        self.execution: WorkflowExecution | None = None
        self.node_states: dict[str, GeneratorState] = {}

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        )
        self._progress_task_id = self._progress.add_task("Nodes: 0/0", total=1)
        self._live: Live | None = None

    def __enter__(self) -> "LiveExecutionMonitor":
        self._live = Live(self.render(), console=self.console, refresh_per_second=4)
        self._live.__enter__()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._live is not None:
            self._live.update(self.render())
            self._live.__exit__(*exc_info)
            self._live = None

    def on_progress(self, execution: WorkflowExecution) -> None:
        """Scheduler progress callback."""
        self.execution = execution
        self._refresh()

    def on_node_update(self, node_id: str, state: GeneratorState) -> None:
        """Job driver node-state callback."""
        self.node_states[node_id] = state
        self._refresh()

    def render(self) -> Panel:
        safe_name = escape(self.workflow.name)
        execution = self.execution
        if execution is None:
            return Panel(f"[bold]{safe_name}[/] [dim]waiting to start[/]")

        if execution.status == ExecutionStatus.RUNNING:
            header = f"[bold blue]⟳ Executing:[/] {safe_name}"
        elif execution.status == ExecutionStatus.COMPLETED:
            header = f"[bold green]✓ Completed:[/] {safe_name}"
        elif execution.status == ExecutionStatus.FAILED:
            header = f"[bold red]✗ Failed:[/] {safe_name}"
        else:
            header = f"[bold yellow]⊘ Cancelled:[/] {safe_name}"

        finished = sum(
            1
            for r in execution.node_results.values()
            if r.status in (NodeRunStatus.SUCCESS, NodeRunStatus.FAILED, NodeRunStatus.SKIPPED)
        )
        total = len(execution.execution_order)
        self._progress.update(
            self._progress_task_id,
            total=max(total, 1),
            completed=finished,
            description=f"Nodes: {finished}/{total}",
        )

        table = self.status_renderer.render_status_table(
            self.workflow, execution, self.node_states
        )
        return Panel(Group(header, table, self._progress), title="canvasflow")

    def _refresh(self) -> None:
        if self._live is not None:
            self._live.update(self.render())

"""CLI entry point for canvasflow.

Commands:
- canvasflow validate: Check a workflow file (schema, structure, cycles)
- canvasflow plan: Show execution order, layers and critical path
- canvasflow run: Execute a workflow against the generation back-end
- canvasflow templates: List built-in workflow templates
- canvasflow new: Create a workflow file from a template
- canvasflow version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from canvasflow import __version__
from canvasflow.backends import HttpGenerationBackend, SimulatedBackend
from canvasflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from canvasflow.cli_ui.live_monitor import LiveExecutionMonitor
from canvasflow.core.config import ConfigError, EngineConfig, load_config
from canvasflow.core.executor import (
    CycleDetectedError,
    ExecutionOptions,
    SchedulerError,
    WorkflowScheduler,
)
from canvasflow.core.graph_schema import WorkflowGraph
from canvasflow.core.job_driver import JobDriver
from canvasflow.core.models import ExecutionStatus, WorkflowExecution
from canvasflow.core.resolver import find_critical_path, topo_sort
from canvasflow.core.templates import (
    TemplateError,
    TemplateNotFoundError,
    instantiate_template,
    list_templates,
)

console = Console()

# Poll interval used with --simulate so dry runs finish quickly
SIMULATED_POLL_INTERVAL = 0.05


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _load_workflow(workflow_file: str) -> WorkflowGraph:
    """Load a workflow file, printing errors and exiting on failure."""
    try:
        return WorkflowGraph.from_file(workflow_file)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing YAML file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        console.print("[red]Error validating workflow:[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)


def _load_config(config_path: str | None) -> EngineConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (defaults to logging.level from config)",
)
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """canvasflow - workflow engine for node-based image and video generation."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    if log_level:
        _configure_logging(log_level)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file: str) -> None:
    """Validate a workflow file."""
    workflow = _load_workflow(workflow_file)

    errors = workflow.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            # SECURITY: escape error messages that may contain user data
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    result = topo_sort(workflow.nodes, workflow.edges)
    if result.has_cycle:
        console.print(f"[red]{escape(str(CycleDetectedError(result.cycle_path)))}[/red]")
        sys.exit(1)

    generators = workflow.generator_nodes()
    console.print("[green]✓ Workflow is valid[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)} ({len(generators)} generator(s))")
    console.print(f"  Edges: {len(workflow.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--start", "start_node", help="Resume from this generator node")
def plan(workflow_file: str, start_node: str | None) -> None:
    """Show the execution plan of a workflow."""
    workflow = _load_workflow(workflow_file)
    scheduler = WorkflowScheduler(workflow, JobDriver(SimulatedBackend()))

    try:
        order = scheduler.plan(start_node)
    except SchedulerError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    node_map = workflow.node_map()
    table = Table(title="Execution Order")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Type", style="magenta")
    for index, node_id in enumerate(order, start=1):
        node = node_map[node_id]
        table.add_row(str(index), escape(node.label or node.id), node.type.value)
    console.print(table)

    renderer = TerminalGraphRenderer(console)
    console.print(renderer.render_layers(workflow, generators_only=True))

    critical = find_critical_path(workflow.nodes, workflow.edges)
    if critical:
        labels = [escape(node_map[n].label or n) for n in critical]
        console.print(f"[bold]Critical path:[/] {' → '.join(labels)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--sequential", is_flag=True, help="Run one node at a time")
@click.option("--continue-on-error", is_flag=True, help="Keep going after a node fails")
@click.option("--start", "start_node", help="Resume from this generator node")
@click.option("--simulate", is_flag=True, help="Use the in-process simulated back-end")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file")
@click.option("--json", "as_json", is_flag=True, help="Print the run record as JSON")
@click.pass_context
def run(
    ctx: click.Context,
    workflow_file: str,
    sequential: bool,
    continue_on_error: bool,
    start_node: str | None,
    simulate: bool,
    config_path: str | None,
    as_json: bool,
) -> None:
    """Execute a workflow."""
    config = _load_config(config_path)
    if not ctx.obj.get("log_level"):
        _configure_logging(config.log_level)

    workflow = _load_workflow(workflow_file)
    policies = config.poll_policies()
    if simulate:
        policies = {
            kind: replace(policy, interval=SIMULATED_POLL_INTERVAL)
            for kind, policy in policies.items()
        }

    options = ExecutionOptions(
        parallel=config.parallel and not sequential,
        stop_on_error=config.stop_on_error and not continue_on_error,
        start_node_id=start_node,
    )
    monitor = None if as_json else LiveExecutionMonitor(workflow, console)

    async def execute(backend) -> WorkflowExecution:
        driver = JobDriver(
            backend,
            policies=policies,
            on_node_update=monitor.on_node_update if monitor else None,
        )
        scheduler = WorkflowScheduler(workflow, driver)
        if monitor:
            options.on_progress = monitor.on_progress

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, scheduler.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # No signal support (Windows, non-main thread)

        try:
            if monitor:
                with monitor:
                    return await scheduler.execute(options)
            return await scheduler.execute(options)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    async def main_async() -> WorkflowExecution:
        if simulate:
            return await execute(SimulatedBackend())
        async with HttpGenerationBackend(config.backend_url, config.backend_timeout) as backend:
            return await execute(backend)

    try:
        execution = asyncio.run(main_async())
    except SchedulerError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(execution.model_dump_json(indent=2))
    else:
        _print_summary(workflow, execution)

    if execution.status != ExecutionStatus.COMPLETED:
        sys.exit(1)


def _print_summary(workflow: WorkflowGraph, execution: WorkflowExecution) -> None:
    console.print(StatusTableRenderer(console).render_status_table(workflow, execution))

    if execution.status == ExecutionStatus.COMPLETED:
        failed = execution.failed_nodes
        if failed:
            console.print(
                f"[yellow]Workflow completed with {len(failed)} failed node(s): "
                f"{escape(', '.join(failed))}[/yellow]"
            )
        else:
            console.print("[green]Workflow completed successfully[/green]")
    elif execution.status == ExecutionStatus.FAILED:
        node = f" at {escape(execution.failed_node)}" if execution.failed_node else ""
        console.print(f"[red]Workflow failed{node}: {escape(execution.error or '')}[/red]")
    else:
        console.print("[yellow]Workflow cancelled[/yellow]")


@main.command()
def templates() -> None:
    """List built-in workflow templates."""
    try:
        available = list_templates()
    except TemplateError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Workflow Templates")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Category", style="magenta")
    table.add_column("Nodes", justify="right")
    table.add_column("Description", style="dim")

    for template in available:
        table.add_row(
            template.id,
            template.name,
            template.category,
            str(len(template.nodes)),
            template.description,
        )

    console.print(table)


@main.command()
@click.argument("template_id")
@click.argument("out_file", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def new(template_id: str, out_file: str, force: bool) -> None:
    """Create a workflow file from a template."""
    path = Path(out_file)
    if path.exists() and not force:
        console.print(f"[red]{escape(out_file)} already exists (use --force to overwrite)[/red]")
        sys.exit(1)

    try:
        workflow = instantiate_template(template_id)
    except TemplateNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        console.print("Run 'canvasflow templates' to list available templates.")
        sys.exit(1)
    except TemplateError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    data = workflow.model_dump(
        mode="json",
        exclude_none=True,
        exclude={"nodes": {"__all__": {"state"}}},
    )
    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")

    console.print(f"[green]Created {escape(out_file)} from template '{escape(template_id)}'[/green]")


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"canvasflow v{__version__}")
    console.print("Workflow engine for node-based image and video generation")


if __name__ == "__main__":
    main()

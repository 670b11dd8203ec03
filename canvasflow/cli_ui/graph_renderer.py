"""Terminal rendering for workflow graphs and run records.

Provides layer-tree and status-table views using Rich.
"""

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from canvasflow.core.graph_schema import GeneratorState, Node, NodeType, WorkflowGraph
from canvasflow.core.models import NodeRunStatus, WorkflowExecution
from canvasflow.core.resolver import get_execution_layers


class TerminalGraphRenderer:
    """
    Renders workflow graphs as Rich trees grouped by execution layer.

    Nodes in the same layer have no dependency on each other and run
    concurrently in parallel mode.
    """

    # Node type symbols and colors
    NODE_STYLES = {
        NodeType.PROMPT: ("[T]", "white"),
        NodeType.REFERENCE: ("[R]", "magenta"),
        NodeType.IMAGE: ("[I]", "cyan"),
        NodeType.VIDEO: ("[V]", "blue"),
        NodeType.UPSCALE: ("[U]", "green"),
        NodeType.OUTPUT: ("[O]", "yellow"),
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def node_text(self, node: Node) -> str:
        symbol, color = self.NODE_STYLES.get(node.type, ("[ ]", "white"))
        # SECURITY: Escape node labels to prevent Rich markup injection
        safe_label = escape(node.label or node.id)
        if node.label:
            return f"[{color}]{symbol} {safe_label}[/] [dim]({escape(node.id)})[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def render_layers(self, workflow: WorkflowGraph, generators_only: bool = False) -> Tree:
        """Render the graph as a tree with one branch per execution layer.

        Returns a tree with an error line if the graph has a cycle.
        """
        tree = Tree(f"[bold]{escape(workflow.name)}[/]")
        node_map = workflow.node_map()

        layers = get_execution_layers(workflow.nodes, workflow.edges)
        if not layers and workflow.nodes:
            tree.add("[red]Error: graph has a cycle[/]")
            return tree

        index = 0
        for layer in layers:
            members = [node_map[n] for n in layer if not generators_only or node_map[n].is_generator]
            if not members:
                continue
            index += 1
            branch = tree.add(f"[bold]Layer {index}[/] [dim]({len(members)} node(s))[/]")
            for node in members:
                branch.add(self.node_text(node))

        return tree


class StatusTableRenderer:
    """Renders node execution status as a Rich table.

    SECURITY: All user-controlled strings (node labels, outputs, errors) are escaped
    to prevent Rich markup injection.
    """

    STATUS_TEXT = {
        NodeRunStatus.PENDING: "[dim]○ Pending[/]",
        NodeRunStatus.RUNNING: "[blue]⟳ Running[/]",
        NodeRunStatus.SUCCESS: "[green]✓ Success[/]",
        NodeRunStatus.FAILED: "[red]✗ Failed[/]",
        NodeRunStatus.SKIPPED: "[dim]⊘ Skipped[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(
        self,
        workflow: WorkflowGraph,
        execution: WorkflowExecution,
        node_states: dict[str, GeneratorState] | None = None,
    ) -> Table:
        """
        Render a run record as a table, one row per scheduled node.

        ``node_states`` supplies live progress; without it progress is taken
        from the nodes of ``workflow``.
        """
        safe_exec_id = escape(execution.id[:8])
        table = Table(title=f"Execution: {safe_exec_id}... ({execution.status.value})")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Progress", justify="right")
        table.add_column("Output / Error", max_width=48)

        node_map = workflow.node_map()
        for node_id in execution.execution_order:
            node = node_map.get(node_id)
            if node is None:
                continue
            result = execution.node_results.get(node_id)
            status = result.status if result else NodeRunStatus.PENDING

            state = (node_states or {}).get(node_id) or node.state
            progress = f"{state.progress:.0f}%" if state else ""

            if result and result.error:
                detail = f"[red]{escape(result.error)}[/]"
            elif result and result.output_ref:
                detail = escape(result.output_ref)
            else:
                detail = ""

            table.add_row(
                escape(node.label or node.id),
                node.type.value,
                self.STATUS_TEXT[status],
                progress,
                detail,
            )

        return table

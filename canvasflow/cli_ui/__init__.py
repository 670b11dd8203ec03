"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Visualizing workflow graphs by execution layer
- Real-time run monitoring
"""

from canvasflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from canvasflow.cli_ui.live_monitor import LiveExecutionMonitor

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
    "LiveExecutionMonitor",
]

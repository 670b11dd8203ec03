"""Generation back-end adapters."""

from canvasflow.backends.http import HttpGenerationBackend
from canvasflow.backends.simulated import SimulatedBackend

__all__ = ["HttpGenerationBackend", "SimulatedBackend"]

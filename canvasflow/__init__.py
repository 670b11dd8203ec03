"""canvasflow - workflow engine for node-based image and video generation.

Resolves the dependency order of a canvas graph and drives each generator
node through the submit-and-poll protocol of a generation back-end.
"""

__version__ = "0.1.0"

"""Input aggregation for generator nodes.

Collects what a generator node receives from its direct predecessors and
turns it into the typed request the generation back-end expects.

SINGLE-HOP INVARIANT:
    Only immediate predecessors are considered. A node two hops upstream is
    never read; a chain such as prompt -> image -> video passes data forward
    through the image node's own ``output_ref``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import Field

from canvasflow.core.graph_schema import (
    ImageSettings,
    JobKind,
    Node,
    NodeType,
    PromptConfig,
    ReferenceConfig,
    UpscaleSettings,
    VideoSettings,
    WireModel,
    WorkflowGraph,
)

PROMPT_SEPARATOR = ". "


class NodeValidationError(Exception):
    """A generator node lacks the inputs it needs to submit a job."""

    def __init__(self, node_id: str, message: str):
        super().__init__(message)
        self.node_id = node_id


@dataclass(frozen=True)
class GeneratedOutput:
    """Output of an upstream generator node, available for chaining."""

    node_id: str
    kind: JobKind
    output_ref: str | None


@dataclass
class ConnectedInputs:
    """Direct predecessor data for one node, grouped by kind.

    All lists follow original node-list order.
    """

    prompts: list[PromptConfig] = field(default_factory=list)
    references: list[ReferenceConfig] = field(default_factory=list)
    generated: list[GeneratedOutput] = field(default_factory=list)
    # References grouped by role for before/after transition workflows
    before_images: list[ReferenceConfig] = field(default_factory=list)
    after_images: list[ReferenceConfig] = field(default_factory=list)

    @property
    def prompt_text(self) -> str:
        return PROMPT_SEPARATOR.join(p.prompt for p in self.prompts if p.prompt.strip())

    @property
    def negative_prompt(self) -> str:
        return PROMPT_SEPARATOR.join(
            p.negative_prompt for p in self.prompts if p.negative_prompt.strip()
        )

    @property
    def reference_urls(self) -> list[str]:
        return [url for url in (r.primary_url for r in self.references) if url]

    @property
    def generated_image_urls(self) -> list[str]:
        return [
            g.output_ref
            for g in self.generated
            if g.kind in (JobKind.IMAGE, JobKind.UPSCALE) and g.output_ref
        ]

    @property
    def source_images(self) -> list[str]:
        """Reference images first, then generated images."""
        return self.reference_urls + self.generated_image_urls


# --- Job requests ---


class ImageJobRequest(WireModel):
    prompt: str
    negative_prompt: str | None = None
    reference_url: str | None = None
    settings: ImageSettings


class VideoJobRequest(WireModel):
    prompt: str
    negative_prompt: str | None = None
    source_images: list[str] = Field(default_factory=list)
    before_images: list[str] = Field(default_factory=list)
    after_images: list[str] = Field(default_factory=list)
    settings: VideoSettings


class UpscaleJobRequest(WireModel):
    image_url: str
    settings: UpscaleSettings


JobRequest = ImageJobRequest | VideoJobRequest | UpscaleJobRequest


def get_connected_inputs(graph: WorkflowGraph, node_id: str) -> ConnectedInputs:
    """Collect the data of every direct predecessor of ``node_id``."""
    source_ids = {e.source for e in graph.edges if e.target == node_id}
    inputs = ConnectedInputs()

    for node in graph.nodes:
        if node.id not in source_ids:
            continue

        if node.type == NodeType.PROMPT:
            inputs.prompts.append(node.prompt_config)
        elif node.type == NodeType.REFERENCE:
            ref = node.reference_config
            inputs.references.append(ref)
            if ref.role == "before":
                inputs.before_images.append(ref)
            elif ref.role == "after":
                inputs.after_images.append(ref)
        elif node.is_generator:
            inputs.generated.append(
                GeneratedOutput(
                    node_id=node.id,
                    kind=node.generator_config.job_kind,
                    output_ref=node.state.output_ref,
                )
            )
        # OUTPUT nodes are sinks and contribute nothing

    return inputs


def build_job_request(node: Node, inputs: ConnectedInputs) -> JobRequest:
    """Build the back-end request for a generator node.

    Raises:
        NodeValidationError: If the node's inputs cannot form a valid job
        TypeError: If the node is not a generator
    """
    return node.generator_config.submit_params_for(node.id, inputs)

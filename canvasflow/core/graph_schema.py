"""Workflow graph schema definitions using Pydantic models.

A workflow is a snapshot of the canvas: typed nodes (prompt, reference,
generator, output) wired together by directed edges. Each node carries the
configuration for its own kind only, and generator nodes additionally carry a
mutable runtime state that the job driver updates while a job is in flight.

The graph itself is rebuilt per execution request; nothing here owns a
long-lived canvas.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Literal

import networkx as nx
import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from canvasflow.core.inputs import (
        ConnectedInputs,
        ImageJobRequest,
        UpscaleJobRequest,
        VideoJobRequest,
    )


class NodeType(str, Enum):
    """Supported node kinds on the canvas"""

    PROMPT = "prompt"  # Text prompt (and negative prompt)
    REFERENCE = "reference"  # Reference image(s), optionally tagged before/after
    IMAGE = "image"  # Image generator
    VIDEO = "video"  # Video generator
    UPSCALE = "upscale"  # Image upscaler
    OUTPUT = "output"  # Display/export sink

    @property
    def is_generator(self) -> bool:
        return self in GENERATOR_TYPES


GENERATOR_TYPES = frozenset({NodeType.IMAGE, NodeType.VIDEO, NodeType.UPSCALE})


class JobKind(str, Enum):
    """Kind of external generation job a generator node submits."""

    IMAGE = "image"
    VIDEO = "video"
    UPSCALE = "upscale"


class WireModel(BaseModel):
    """Base for models that travel over the wire in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Generator settings ---


class ImageSettings(WireModel):
    model: str = "flux-schnell"
    model_version: str | None = None
    aspect_ratio: str = "1:1"
    guidance_scale: float = 3.5
    num_inference_steps: int = 4
    seed: int | None = None
    output_format: Literal["png", "jpg", "webp"] = "png"
    output_quality: int = Field(default=90, ge=0, le=100)
    resolution: Literal["1K", "2K", "4K"] | None = None


class VideoSettings(WireModel):
    model: str = "seedance-1.5-pro"
    model_version: str | None = None
    duration: int = 5  # seconds
    resolution: Literal["480p", "720p", "1080p", "4k"] = "1080p"
    fps: int = 24
    camera_movement: Literal[
        "static", "pan_left", "pan_right", "zoom_in", "zoom_out", "tilt_up", "tilt_down"
    ] = "static"
    seed: int | None = None
    draft: bool = False  # Fast 480p preview


class UpscaleSettings(WireModel):
    model: Literal["stability-conservative"] = "stability-conservative"
    output_format: Literal["png", "webp", "jpeg"] = "png"


# --- Kind-specific node configuration ---


class PromptConfig(BaseModel):
    """Configuration for PROMPT nodes"""

    prompt: str = ""
    negative_prompt: str = ""


class ReferenceConfig(BaseModel):
    """Configuration for REFERENCE nodes.

    ``role`` pairs references for transition workflows: a "before" and an
    "after" reference feeding the same video node.
    """

    image_url: str | None = None  # Single image mode
    image_urls: list[str] = Field(default_factory=list)  # Character mode (up to 6)
    character_name: str | None = None
    description: str | None = None
    reference_type: Literal["style", "character", "composition"] = "style"
    strength: float = Field(default=0.75, ge=0.0, le=1.0)
    role: Literal["before", "after", "single"] = "single"

    @property
    def primary_url(self) -> str | None:
        if self.image_url:
            return self.image_url
        return self.image_urls[0] if self.image_urls else None


class ImageConfig(BaseModel):
    """Configuration for IMAGE generator nodes"""

    settings: ImageSettings = Field(default_factory=ImageSettings)

    job_kind: ClassVar[JobKind] = JobKind.IMAGE

    def submit_params_for(self, node_id: str, inputs: ConnectedInputs) -> ImageJobRequest:
        from canvasflow.core.inputs import ImageJobRequest, NodeValidationError

        prompt = inputs.prompt_text
        reference_url = next(iter(inputs.reference_urls + inputs.generated_image_urls), None)
        if not prompt.strip() and reference_url is None:
            raise NodeValidationError(node_id, "Image node requires a prompt or reference")

        return ImageJobRequest(
            prompt=prompt or "artistic image",
            negative_prompt=inputs.negative_prompt or None,
            reference_url=reference_url,
            settings=self.settings,
        )


class VideoConfig(BaseModel):
    """Configuration for VIDEO generator nodes"""

    settings: VideoSettings = Field(default_factory=VideoSettings)

    job_kind: ClassVar[JobKind] = JobKind.VIDEO

    def submit_params_for(self, node_id: str, inputs: ConnectedInputs) -> VideoJobRequest:
        from canvasflow.core.inputs import NodeValidationError, VideoJobRequest

        prompt = inputs.prompt_text
        source_images = inputs.source_images
        if not prompt.strip() and not source_images:
            raise NodeValidationError(node_id, "Video node requires a prompt or source image")

        return VideoJobRequest(
            prompt=prompt or "cinematic video, smooth motion",
            negative_prompt=inputs.negative_prompt or None,
            source_images=source_images,
            before_images=[url for url in (r.primary_url for r in inputs.before_images) if url],
            after_images=[url for url in (r.primary_url for r in inputs.after_images) if url],
            settings=self.settings,
        )


class UpscaleConfig(BaseModel):
    """Configuration for UPSCALE generator nodes"""

    settings: UpscaleSettings = Field(default_factory=UpscaleSettings)

    job_kind: ClassVar[JobKind] = JobKind.UPSCALE

    def submit_params_for(self, node_id: str, inputs: ConnectedInputs) -> UpscaleJobRequest:
        from canvasflow.core.inputs import NodeValidationError, UpscaleJobRequest

        # A generated image wins over a static reference
        image_url = next(iter(inputs.generated_image_urls + inputs.reference_urls), None)
        if image_url is None:
            raise NodeValidationError(node_id, "Upscale node requires an input image")

        return UpscaleJobRequest(image_url=image_url, settings=self.settings)


class OutputConfig(BaseModel):
    """Configuration for OUTPUT nodes"""

    output_type: Literal["image", "video"] = "image"
    filename: str | None = None


class GeneratorState(BaseModel):
    """Live runtime state of a generator node.

    While ``is_running`` is set, ``output_ref`` and ``last_error`` are both
    cleared; a terminal transition sets exactly one of them.
    """

    is_running: bool = False
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    output_ref: str | None = None
    last_error: str | None = None
    external_job_id: str | None = None

    # Token of the job call that currently owns this state
    _owner: object | None = PrivateAttr(default=None)

    def claim(self) -> object:
        """Hand ownership to a new job call and return its token."""
        self._owner = object()
        return self._owner

    def is_owned_by(self, token: object) -> bool:
        return self._owner is token


CONFIG_FIELDS = {
    NodeType.PROMPT: ("prompt_config", PromptConfig),
    NodeType.REFERENCE: ("reference_config", ReferenceConfig),
    NodeType.IMAGE: ("image_config", ImageConfig),
    NodeType.VIDEO: ("video_config", VideoConfig),
    NodeType.UPSCALE: ("upscale_config", UpscaleConfig),
    NodeType.OUTPUT: ("output_config", OutputConfig),
}


class Edge(BaseModel):
    """Directed edge: the source's output feeds the target's input"""

    id: str
    source: str
    target: str


class Node(BaseModel):
    """Canvas node with kind-specific configuration"""

    id: str
    type: NodeType
    label: str | None = None

    # Kind-specific configuration (only the one matching `type` may be set)
    prompt_config: PromptConfig | None = None
    reference_config: ReferenceConfig | None = None
    image_config: ImageConfig | None = None
    video_config: VideoConfig | None = None
    upscale_config: UpscaleConfig | None = None
    output_config: OutputConfig | None = None

    # Generator runtime state (set for generator kinds only)
    state: GeneratorState | None = None

    # UI metadata (position, styling) from the canvas
    ui_metadata: dict | None = None

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Node ID must be a non-empty string")
        return v

    @model_validator(mode="after")
    def validate_config_for_type(self) -> "Node":
        """Fill in the default config for the node kind and reject mismatches."""
        expected_name, expected_cls = CONFIG_FIELDS[self.type]

        for node_type, (config_name, _) in CONFIG_FIELDS.items():
            if node_type != self.type and getattr(self, config_name) is not None:
                raise ValueError(
                    f"Node '{self.id}' of type '{self.type.value}' has unexpected "
                    f"'{config_name}' (should only have '{expected_name}')"
                )

        if getattr(self, expected_name) is None:
            setattr(self, expected_name, expected_cls())

        if self.type.is_generator:
            if self.state is None:
                self.state = GeneratorState()
        elif self.state is not None:
            raise ValueError(f"Node '{self.id}' of type '{self.type.value}' cannot carry state")

        return self

    @property
    def is_generator(self) -> bool:
        return self.type.is_generator

    @property
    def config(self) -> BaseModel:
        """The kind-specific configuration of this node."""
        return getattr(self, CONFIG_FIELDS[self.type][0])

    @property
    def generator_config(self) -> ImageConfig | VideoConfig | UpscaleConfig:
        if not self.is_generator:
            raise TypeError(f"Node '{self.id}' of type '{self.type.value}' is not a generator")
        return self.config


class WorkflowGraph(BaseModel):
    """Snapshot of a canvas: nodes and the edges between them"""

    id: str = "canvas"
    name: str = "Untitled workflow"
    description: str | None = None

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: str | Path) -> "WorkflowGraph":
        """Load a graph from a YAML or JSON file.

        Raises:
            ValueError: If the file does not hold a mapping
            yaml.YAMLError / json.JSONDecodeError: On malformed content
            pydantic.ValidationError: On schema violations
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ValueError(
                f"Invalid workflow content in '{path}'. "
                f"Expected a mapping, got {type(data).__name__}."
            )
        return cls.model_validate(data)

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure.
        Returns list of validation errors. Cycles (including self-loops) are
        left to the resolver, which reports a concrete cycle path.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in seen_node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in seen_node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

        return errors

    def node_map(self) -> dict[str, Node]:
        """Build O(1) lookup map for nodes by ID."""
        return {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def generator_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.is_generator]

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id, type=node.type.value)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

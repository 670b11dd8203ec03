"""Tests for the workflow graph schema."""

import json

import pytest
from pydantic import ValidationError

from canvasflow.core.graph_schema import (
    Edge,
    GeneratorState,
    ImageConfig,
    JobKind,
    Node,
    NodeType,
    PromptConfig,
    VideoConfig,
    WorkflowGraph,
)


class TestNode:
    def test_default_config_is_filled_for_kind(self):
        node = Node(id="I", type=NodeType.IMAGE)
        assert isinstance(node.image_config, ImageConfig)
        assert node.config is node.image_config

    def test_generator_gets_fresh_state(self):
        node = Node(id="V", type=NodeType.VIDEO)
        assert node.state == GeneratorState()
        assert node.state.progress == 0.0
        assert node.state.is_running is False

    def test_non_generator_has_no_state(self):
        node = Node(id="P", type=NodeType.PROMPT)
        assert node.state is None
        assert not node.is_generator

    def test_non_generator_rejects_state(self):
        with pytest.raises(ValidationError, match="cannot carry state"):
            Node(id="P", type=NodeType.PROMPT, state=GeneratorState())

    def test_mismatched_config_rejected(self):
        with pytest.raises(ValidationError, match="unexpected 'video_config'"):
            Node(id="I", type=NodeType.IMAGE, video_config=VideoConfig())

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError, match="non-empty"):
            Node(id="  ", type=NodeType.IMAGE)

    def test_generator_config_job_kind(self):
        assert Node(id="I", type=NodeType.IMAGE).generator_config.job_kind == JobKind.IMAGE
        assert Node(id="V", type=NodeType.VIDEO).generator_config.job_kind == JobKind.VIDEO
        assert Node(id="U", type=NodeType.UPSCALE).generator_config.job_kind == JobKind.UPSCALE

    def test_generator_config_on_prompt_raises(self):
        with pytest.raises(TypeError, match="not a generator"):
            Node(id="P", type=NodeType.PROMPT).generator_config

    def test_progress_bounds(self):
        with pytest.raises(ValidationError):
            GeneratorState(progress=101)

    def test_camel_case_settings_accepted(self):
        node = Node.model_validate(
            {
                "id": "I",
                "type": "image",
                "image_config": {"settings": {"aspectRatio": "16:9", "numInferenceSteps": 8}},
            }
        )
        assert node.image_config.settings.aspect_ratio == "16:9"
        assert node.image_config.settings.num_inference_steps == 8


class TestWorkflowGraph:
    def test_valid_graph_has_no_errors(self, diamond_graph):
        assert diamond_graph.validate_graph() == []

    def test_duplicate_node_ids(self):
        graph = WorkflowGraph(
            nodes=[Node(id="A", type=NodeType.IMAGE), Node(id="A", type=NodeType.VIDEO)]
        )
        assert "Duplicate node ID: 'A'" in graph.validate_graph()

    def test_duplicate_edge_ids(self):
        graph = WorkflowGraph(
            nodes=[Node(id="A", type=NodeType.PROMPT), Node(id="B", type=NodeType.IMAGE)],
            edges=[Edge(id="e", source="A", target="B"), Edge(id="e", source="A", target="B")],
        )
        assert "Duplicate edge ID: 'e'" in graph.validate_graph()

    def test_dangling_edges_reported(self):
        graph = WorkflowGraph(
            nodes=[Node(id="A", type=NodeType.IMAGE)],
            edges=[Edge(id="e1", source="ghost", target="A"), Edge(id="e2", source="A", target="nowhere")],
        )
        errors = graph.validate_graph()
        assert "Edge e1: source 'ghost' not found" in errors
        assert "Edge e2: target 'nowhere' not found" in errors

    def test_cycles_are_not_structural_errors(self, graph_builder):
        graph = graph_builder().image("A").image("B").connect("A", "B").connect("B", "A").build()
        assert graph.validate_graph() == []

    def test_generator_nodes(self, diamond_graph):
        assert [n.id for n in diamond_graph.generator_nodes()] == ["I1", "I2", "V"]

    def test_get_node(self, diamond_graph):
        assert diamond_graph.get_node("V").type == NodeType.VIDEO
        assert diamond_graph.get_node("missing") is None

    def test_to_networkx(self, diamond_graph):
        G = diamond_graph.to_networkx()
        assert set(G.nodes) == {"P", "I1", "I2", "V"}
        assert G.has_edge("I1", "V")
        assert G.nodes["P"]["type"] == "prompt"


class TestFromFile:
    def test_yaml(self, workflow_file):
        graph = WorkflowGraph.from_file(workflow_file)
        assert [n.id for n in graph.nodes] == ["P", "I"]
        assert graph.nodes[0].prompt_config == PromptConfig(prompt="a red fox")

    def test_json(self, tmp_path, prompt_to_image):
        path = tmp_path / "workflow.json"
        path.write_text(prompt_to_image.model_dump_json())
        graph = WorkflowGraph.from_file(path)
        assert graph.edges[0].source == "P"

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="Expected a mapping"):
            WorkflowGraph.from_file(path)

    def test_schema_violation(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"nodes": [{"id": "X", "type": "hologram"}]}))
        with pytest.raises(ValidationError):
            WorkflowGraph.from_file(path)

"""Tests for the dependency resolver.

Covers ordering stability, cycle reporting, execution layers and
reachability, plus structural properties checked over several graph shapes.
"""

import pytest

from canvasflow.core.resolver import (
    find_critical_path,
    find_cycle,
    get_downstream_nodes,
    get_execution_layers,
    get_execution_order_from_node,
    get_upstream_nodes,
    topo_sort,
)


@pytest.fixture
def chain(graph_builder):
    """P -> I -> U -> O."""
    return (
        graph_builder()
        .prompt("P")
        .image("I")
        .upscale("U")
        .output("O")
        .connect("P", "I")
        .connect("I", "U")
        .connect("U", "O")
        .build()
    )


@pytest.fixture
def acyclic_graphs(graph_builder, diamond_graph, chain):
    wide = (
        graph_builder()
        .prompt("P1")
        .prompt("P2")
        .reference("R", "http://img/r.png")
        .image("A")
        .image("B")
        .video("V")
        .upscale("U")
        .connect("P1", "A", "V")
        .connect("P2", "B")
        .connect("R", "A", "B")
        .connect("A", "V", "U")
        .connect("B", "V")
        .build()
    )
    isolated = graph_builder().image("X").image("Y").video("Z").build()
    return [diamond_graph, chain, wide, isolated]


class TestTopoSort:
    def test_dependencies_come_first(self, diamond_graph):
        result = topo_sort(diamond_graph.nodes, diamond_graph.edges)
        assert not result.has_cycle
        assert result.order == ["P", "I1", "I2", "V"]

    def test_ready_nodes_keep_node_list_order(self, graph_builder):
        graph = graph_builder().image("C").image("A").image("B").build()
        assert topo_sort(graph.nodes, graph.edges).order == ["C", "A", "B"]

    def test_same_input_same_output(self, diamond_graph):
        first = topo_sort(diamond_graph.nodes, diamond_graph.edges)
        second = topo_sort(diamond_graph.nodes, diamond_graph.edges)
        assert first == second

    def test_two_node_cycle(self, graph_builder):
        graph = graph_builder().image("A").image("B").connect("A", "B").connect("B", "A").build()
        result = topo_sort(graph.nodes, graph.edges)
        assert result.has_cycle
        assert result.order == []
        assert result.cycle_path in (["A", "B", "A"], ["B", "A", "B"])

    def test_self_loop(self, graph_builder):
        graph = graph_builder().prompt("P").image("A").connect("P", "A").connect("A", "A").build()
        result = topo_sort(graph.nodes, graph.edges)
        assert result.has_cycle
        assert result.order == ["P"]
        assert result.cycle_path == ["A", "A"]

    def test_dangling_edges_ignored(self, graph_builder):
        graph = graph_builder().image("A").connect("ghost", "A").connect("A", "nowhere").build()
        result = topo_sort(graph.nodes, graph.edges)
        assert result.order == ["A"]
        assert not result.has_cycle

    def test_empty_graph(self):
        result = topo_sort([], [])
        assert result.order == []
        assert not result.has_cycle


class TestFindCycle:
    def test_acyclic_returns_empty(self, diamond_graph):
        assert find_cycle(diamond_graph.nodes, diamond_graph.edges) == []

    def test_cycle_path_is_a_real_cycle(self, graph_builder):
        graph = (
            graph_builder()
            .prompt("P")
            .image("A")
            .video("B")
            .upscale("C")
            .connect("P", "A")
            .connect("A", "B")
            .connect("B", "C")
            .connect("C", "A")
            .build()
        )
        path = find_cycle(graph.nodes, graph.edges)
        edges = {(e.source, e.target) for e in graph.edges}

        assert len(path) >= 2
        assert path[0] == path[-1]
        for source, target in zip(path, path[1:]):
            assert (source, target) in edges
        assert set(path) == {"A", "B", "C"}


class TestExecutionLayers:
    def test_diamond(self, diamond_graph):
        assert get_execution_layers(diamond_graph.nodes, diamond_graph.edges) == [
            ["P"],
            ["I1", "I2"],
            ["V"],
        ]

    def test_layer_is_one_past_deepest_parent(self, graph_builder):
        # A -> B -> C and A -> C: C must wait for B
        graph = (
            graph_builder()
            .image("A")
            .image("B")
            .video("C")
            .connect("A", "B", "C")
            .connect("B", "C")
            .build()
        )
        assert get_execution_layers(graph.nodes, graph.edges) == [["A"], ["B"], ["C"]]

    def test_cycle_gives_no_layers(self, graph_builder):
        graph = graph_builder().image("A").image("B").connect("A", "B").connect("B", "A").build()
        assert get_execution_layers(graph.nodes, graph.edges) == []


class TestGraphProperties:
    def test_topological_validity(self, acyclic_graphs):
        for graph in acyclic_graphs:
            order = topo_sort(graph.nodes, graph.edges).order
            position = {node_id: i for i, node_id in enumerate(order)}
            for edge in graph.edges:
                assert position[edge.source] < position[edge.target]

    def test_completeness_when_acyclic(self, acyclic_graphs):
        for graph in acyclic_graphs:
            result = topo_sort(graph.nodes, graph.edges)
            assert not result.has_cycle
            assert sorted(result.order) == sorted(n.id for n in graph.nodes)

    def test_layer_independence(self, acyclic_graphs):
        for graph in acyclic_graphs:
            for layer in get_execution_layers(graph.nodes, graph.edges):
                for node_id in layer:
                    upstream = set(get_upstream_nodes(node_id, graph.nodes, graph.edges))
                    assert not upstream & (set(layer) - {node_id})

    def test_layers_cover_every_node_once(self, acyclic_graphs):
        for graph in acyclic_graphs:
            layers = get_execution_layers(graph.nodes, graph.edges)
            flat = [node_id for layer in layers for node_id in layer]
            assert sorted(flat) == sorted(n.id for n in graph.nodes)


class TestReachability:
    def test_upstream(self, chain):
        assert get_upstream_nodes("U", chain.nodes, chain.edges) == ["I", "P"]

    def test_downstream(self, chain):
        assert get_downstream_nodes("I", chain.nodes, chain.edges) == ["U", "O"]

    def test_excludes_self(self, diamond_graph):
        assert "V" not in get_upstream_nodes("V", diamond_graph.nodes, diamond_graph.edges)

    def test_terminates_on_cycles(self, graph_builder):
        graph = graph_builder().image("A").image("B").connect("A", "B").connect("B", "A").build()
        assert get_downstream_nodes("A", graph.nodes, graph.edges) == ["B"]

    def test_order_from_node(self, diamond_graph):
        result = get_execution_order_from_node("I1", diamond_graph.nodes, diamond_graph.edges)
        assert result.order == ["I1", "V"]


class TestCriticalPath:
    def test_longest_chain(self, chain):
        assert find_critical_path(chain.nodes, chain.edges) == ["P", "I", "U", "O"]

    def test_cycle_gives_empty_path(self, graph_builder):
        graph = graph_builder().image("A").image("B").connect("A", "B").connect("B", "A").build()
        assert find_critical_path(graph.nodes, graph.edges) == []

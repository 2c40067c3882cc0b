"""Tests for the parallel_autodiff.engine.frontend.graph module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest

from parallel_autodiff.engine import compileflags
from parallel_autodiff.engine.errors import ConstructionError, NodeNotFound, ProtocolViolation
from parallel_autodiff.engine.frontend import graph
from parallel_autodiff.engine.frontend.architecture import Coordinate, OperationSpec, Scope
from parallel_autodiff.engine.frontend.bindings import BindingTable, Category
from parallel_autodiff.engine.numpybackend import operators


def _make_graph():
    table = BindingTable().add_weight("W", lambda c: np.full((1,), float(c.layer)))
    g = graph.Graph(table, {"x": Scope.GLOBAL, "h": Scope.LAYER})
    x = g.add(OperationSpec(id="x", type="Identity", inputs=("W",)), Coordinate(), operators.Identity())
    x.inputs.append(graph.NodeInput("W", graph.InputKind.BINDING, binding=table.get(Category.WEIGHT, "W")))
    for layer in range(2):
        h = g.add(
            OperationSpec(id="h", type="Tanh", inputs=("x",), scope=Scope.LAYER),
            Coordinate(layer, 0),
            operators.Tanh(),
        )
        h.inputs.append(graph.NodeInput("x", graph.InputKind.NODE, sources=(x.index,)))
        x.consumers.append(h.index)
    return g


def test_lookup_by_id_and_index():
    """Test the string-keyed and the index-based lookups."""
    g = _make_graph()
    assert len(g) == 3
    assert [node.qualified_id for node in g] == ["x_0_0", "h_0_0", "h_1_0"]
    assert g["h_1_0"] is g.nodes[2]
    assert g[1] is g.nodes[1]
    assert g.node("h", Coordinate(1, 0)) is g.nodes[2]
    assert "h_0_0" in g
    assert "h_2_0" not in g
    assert [node.index for node in g.nodes_named("h")] == [1, 2]

    with pytest.raises(NodeNotFound):
        g["h_2_0"]
    with pytest.raises(NodeNotFound):
        g[3]
    with pytest.raises(NodeNotFound):
        g[-1]


def test_resolve_projects_coordinates():
    """Test that resolving an id projects the coordinate onto its scope."""
    g = _make_graph()
    assert g.resolve("x", Coordinate(1, 4)) is g.nodes[0]
    assert g.resolve("h", Coordinate(1, 4)) is g.nodes[2]
    assert g.resolve("h", Coordinate(5, 0)) is None
    assert g.resolve("unknown", Coordinate()) is None


def test_lookup_by_category():
    """Test resolving symbolic names through the graph."""
    g = _make_graph()
    assert g.lookup(None, "h", Coordinate(0, 0)) is g.nodes[1]
    assert np.array_equal(g.lookup(Category.WEIGHT, "W", Coordinate(1, 0)), np.array([1.0]))
    g.bindings.add_operation_finder("previous", lambda c: f"h_{c.layer - 1}_0")
    assert g.lookup(Category.OPERATION_FINDER, "previous", Coordinate(2, 0)) is g.nodes[2]
    with pytest.raises(ConstructionError):
        g.lookup(Category.BIAS, "W")


def test_duplicate_node():
    """Test that the same id cannot be added twice at the same coordinate."""
    g = _make_graph()
    with pytest.raises(ConstructionError):
        g.add(OperationSpec(id="x", type="Identity"), Coordinate(), operators.Identity())


def test_validate_order():
    """Test that order validation detects forward references."""
    g = _make_graph()
    g.validate_order()

    g.nodes[1].inputs.append(graph.NodeInput("h", graph.InputKind.NODE, sources=(2,)))
    with pytest.raises(ProtocolViolation, match="consumes a later node"):
        g.validate_order()


def test_predecessors_and_repr():
    """Test the incoming edges and the SSA-like representation."""
    g = _make_graph()
    assert list(g.nodes[2].predecessors()) == [((2, 0, 0), 0)]
    assert g.nodes[0].consumers == [1, 2]
    assert repr(g.nodes[0]) == "n0 = Identity(weight:W)  # x_0_0"
    assert repr(g.nodes[2]) == "n2 = Tanh(n0)  # h_1_0"
    assert repr(g).splitlines()[1] == "n1 = Tanh(n0)  # h_0_0"


def test_debug_operations():
    """Test that tracepoint and breakpoint set the node flags."""
    g = _make_graph()
    assert graph.tracepoint(g.nodes[0]).flags == compileflags.TRACE
    assert graph.breakpoint(g.nodes[1]).flags == compileflags.TRACE | compileflags.BREAK


def test_node_hashing():
    """Test that nodes hash by identity."""
    g = _make_graph()
    mapping = {node: node.qualified_id for node in g}
    assert mapping[g.nodes[2]] == "h_1_0"
    assert len(mapping) == 3

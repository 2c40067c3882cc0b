"""Tests for the parallel_autodiff.engine.numpybackend.executor module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest

from parallel_autodiff.engine import compileflags
from parallel_autodiff.engine.errors import ExecutionError, NodeNotFound
from parallel_autodiff.engine.frontend import architecture, builder, graph
from parallel_autodiff.engine.frontend.architecture import OperationSpec, Scope
from parallel_autodiff.engine.frontend.bindings import BindingTable
from parallel_autodiff.engine.numpybackend import executor, operators


def _build(arch, table, **kwargs):
    return builder.build(arch, table, operators.library(), **kwargs)


def test_recurrent_forward():
    """Test a per-layer recurrence against a direct computation."""
    weights = [np.array([[0.5, -0.2], [0.1, 0.3]]), np.array([[1.0, 0.4], [-0.6, 0.2]])]
    inputs = np.array([[1.0], [2.0]])
    table = (
        BindingTable()
        .add_weight("input", lambda c: inputs)
        .add_weight("W", lambda c: weights[c.layer])
        .add_operation_finder("previous", lambda c: "x_0_0" if c.layer == 0 else f"h_{c.layer - 1}_0")
    )
    arch = architecture.from_operations(
        OperationSpec(id="x", type="Identity", inputs=("input",)),
        OperationSpec(id="z", type="MatrixMultiply", inputs=("W", "previous"), scope=Scope.LAYER),
        OperationSpec(id="h", type="Tanh", inputs=("z",), scope=Scope.LAYER),
    )
    g = _build(arch, table, num_layers=2)
    rv = executor.evaluate_nodes(g)

    expected = np.tanh(weights[1] @ np.tanh(weights[0] @ inputs))
    assert np.allclose(rv, expected)
    assert np.allclose(g["h_1_0"].output, expected)
    assert np.allclose(g["z_0_0"].output, weights[0] @ inputs)


def test_gather_stacks_outputs():
    """Test that a gather input stacks sibling outputs along a new axis."""
    arch = architecture.from_operations(
        OperationSpec(id="n", type="Scale", inputs=("x", "k"), scope=Scope.NESTED),
        OperationSpec(id="s", type="Sum", inputs=("n[*]",), scope=Scope.LAYER),
    )
    table = (
        BindingTable()
        .add_weight("x", lambda c: np.array([1.0, 2.0]))
        .add_scalar("k", lambda c: float(c.layer * 10 + c.nested_layer))
    )
    g = _build(arch, table, num_layers=2, num_nested_layers=3)
    executor.evaluate_nodes(g)

    # Layer 0 sums scales 0, 1, 2; layer 1 sums 10, 11, 12
    assert np.allclose(g["s_0_0"].output, np.array([3.0, 6.0]))
    assert np.allclose(g["s_1_0"].output, np.array([33.0, 66.0]))
    stacked = executor.resolve_input(g, g["s_1_0"], g["s_1_0"].inputs[0])
    assert stacked.shape == (3, 2)


def test_publish_intermediate():
    """Test that setResultTo copies the output into the intermediate storage."""
    storage = [np.zeros(2), np.zeros(2)]
    arch = architecture.from_operations(
        OperationSpec(id="h", type="Scale", inputs=("x", "k"), scope=Scope.LAYER, set_result_to="Hidden[l]"),
    )
    table = (
        BindingTable()
        .add_weight("x", lambda c: np.array([1.0, -1.0]))
        .add_scalar("k", lambda c: c.layer + 1.0)
        .add_intermediate("Hidden", lambda c: storage[c.layer])
    )
    g = _build(arch, table, num_layers=2)
    executor.evaluate_nodes(g)
    assert np.array_equal(storage[0], np.array([1.0, -1.0]))
    assert np.array_equal(storage[1], np.array([2.0, -2.0]))

    # The storage is a copy, not an alias of the output
    g["h_1_0"].output[0] = 100.0
    assert storage[1][0] == 2.0


def test_publish_shape_mismatch():
    """Test that publishing into storage of the wrong shape fails."""
    arch = architecture.from_operations(
        OperationSpec(id="h", type="Identity", inputs=("x",), set_result_to="Hidden"),
    )
    table = (
        BindingTable()
        .add_weight("x", lambda c: np.ones(3))
        .add_intermediate("Hidden", lambda c: np.zeros(2))
    )
    g = _build(arch, table)
    with pytest.raises(ExecutionError) as excinfo:
        executor.evaluate_nodes(g)
    assert excinfo.value.node_id == "h_0_0"


def test_primitive_failure():
    """Test that a failing primitive stops the forward pass."""
    arch = architecture.from_operations(
        OperationSpec(id="a", type="MatrixMultiply", inputs=("x", "y")),
        OperationSpec(id="b", type="Tanh", inputs=("a",)),
    )
    table = BindingTable().add_weight("x", lambda c: np.ones((2, 3))).add_weight("y", lambda c: np.ones((2, 3)))
    g = _build(arch, table)
    with pytest.raises(ExecutionError) as excinfo:
        executor.evaluate_nodes(g)
    assert excinfo.value.node_id == "a_0_0"
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert g["b_0_0"].output is None


def test_start_node():
    """Test evaluating from a start node reuses earlier outputs."""
    arch = architecture.from_operations(
        OperationSpec(id="a", type="Identity", inputs=("x",)),
        OperationSpec(id="b", type="Scale", inputs=("a", "k")),
    )
    k = [2.0]
    table = BindingTable().add_weight("x", lambda c: np.array([1.0])).add_scalar("k", lambda c: k[0])
    g = _build(arch, table)

    # The producer has not been evaluated yet
    with pytest.raises(ExecutionError, match="has not been evaluated"):
        executor.evaluate_nodes(g, "b_0_0")

    executor.evaluate_nodes(g)
    k[0] = 5.0
    assert np.array_equal(executor.evaluate_nodes(g, "b_0_0"), np.array([5.0]))

    with pytest.raises(NodeNotFound):
        executor.evaluate_nodes(g, "c_0_0")


def test_empty_graph():
    """Test that an empty graph evaluates to None."""
    g = graph.Graph(BindingTable())
    assert executor.evaluate_nodes(g) is None
    with pytest.raises(NodeNotFound):
        executor.evaluate_nodes(g, "a_0_0")


def test_tracing(capsys, monkeypatch):
    """Test the TRACE, BREAK, and DUMP flags."""
    arch = architecture.from_operations(
        OperationSpec(id="a", type="Identity", inputs=("x",)),
        OperationSpec(id="b", type="Tanh", inputs=("a",)),
    )
    table = BindingTable().add_weight("x", lambda c: np.zeros(2))
    g = _build(arch, table)

    executor.evaluate_nodes(g, flags=compileflags.TRACE | compileflags.DUMP)
    out = capsys.readouterr().out
    assert "n0 = Identity(weight:x)  # a_0_0" in out
    assert "# n1 = Tanh(n0)  # b_0_0" in out
    assert "# shape: (2,)" in out
    assert "# dtype: float64" in out

    # A breakpoint waits for the user after the node
    prompts = []
    monkeypatch.setattr("builtins.input", lambda prompt="": prompts.append(prompt) or "")
    graph.breakpoint(g["b_0_0"])
    executor.evaluate_nodes(g, flags=0)
    assert len(prompts) == 1
    assert "# n1 = Tanh(n0)  # b_0_0" in capsys.readouterr().out


def test_binding_failure():
    """Test that a failing binding resolver is reported with the node id."""
    weights = [np.ones(2)]
    arch = architecture.from_operations(
        OperationSpec(id="h", type="Identity", inputs=("W",), scope=Scope.LAYER),
    )
    table = BindingTable().add_weight("W", lambda c: weights[c.layer])
    g = _build(arch, table, num_layers=2)
    with pytest.raises(ExecutionError, match="cannot resolve inputs") as excinfo:
        executor.evaluate_nodes(g)
    assert excinfo.value.node_id == "h_1_0"
    assert isinstance(excinfo.value.__cause__, IndexError)
    assert np.array_equal(g["h_0_0"].output, np.ones(2))

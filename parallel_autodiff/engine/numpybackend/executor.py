"""Forward Executor.

An evaluator for expanded computation graphs. The graph order is, by
construction, a topological order, so the executor walks the nodes linearly
from a start node to the end of the graph, evaluating each node exactly once:

1. resolve the inputs (outputs of earlier nodes, stacked sibling outputs for
gather inputs, binding values, or values returned by operation finders);

2. invoke the node primitive's `forward` method;

3. cache the result as the node output;

4. if the node publishes a named intermediate, copy the result into the
intermediate storage provided by the binding table.

This approach offers several advantages over walking the graph recursively:
- Clearer debugging: execution follows a predictable linear sequence
- Better tracing: provides a coherent view of computation flow
- Explicit error handling: clearly identifies the failing node

Forward execution has no partial-failure tolerance: later nodes depend on
earlier outputs, so the first failure stops the pass with an `ExecutionError`.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Any

import numpy as np

from .. import compileflags
from ..errors import ExecutionError, NodeNotFound
from ..frontend.architecture import parse_input_name
from ..frontend.bindings import Category
from ..frontend.graph import Graph, GraphNode, InputKind, NodeInput


def _print_graph_node(node: GraphNode) -> None:
    """Print a node before evaluation."""
    print(f"# {str(node)}")


def _print_evaluated_node(node: GraphNode, value: Any) -> None:
    """Print a node after evaluation."""
    # 1. print the shape and dtype, which are invaluable when debugging
    if hasattr(value, "shape"):
        print(f"# shape: {value.shape}")
    if hasattr(value, "dtype"):
        print(f"# dtype: {value.dtype}")

    # 2. give the user a sense of the node value for debugging purposes
    print("# value:")
    print("\n".join("# " + line for line in str(value).splitlines()))

    # 3. add an empty line, which is always nice to separate things
    print("")


def resolve_input(graph: Graph, node: GraphNode, node_input: NodeInput) -> Any:
    """Return the current value of a node input.

    Raises
    ------
        ExecutionError: if a producing node has not been evaluated yet.
    """
    if node_input.kind is InputKind.NODE:
        return _producer_output(graph, node, node_input.sources[0])

    if node_input.kind is InputKind.GATHER:
        return np.stack([_producer_output(graph, node, source) for source in node_input.sources])

    if node_input.kind is InputKind.BINDING:
        assert node_input.binding is not None
        return node_input.binding.resolve(node.coordinate)

    return node_input.value


def _producer_output(graph: Graph, node: GraphNode, source: int) -> Any:
    output = graph.nodes[source].output
    if output is None:
        raise ExecutionError(
            f"executor: {node.qualified_id}: input node '{graph.nodes[source].qualified_id}' has not been evaluated",
            node.qualified_id,
        )
    return output


def publish(graph: Graph, node: GraphNode) -> None:
    """Copy the node output into its named intermediate storage."""
    assert node.result_to is not None
    name = parse_input_name(node.result_to)[0]
    storage = graph.bindings.get(Category.INTERMEDIATE, name).resolve(node.coordinate)
    try:
        np.copyto(storage, node.output)
    except (TypeError, ValueError) as exc:
        raise ExecutionError(
            f"executor: {node.qualified_id}: cannot publish result to intermediate '{name}': {exc}",
            node.qualified_id,
        ) from exc


def evaluate_single_node(graph: Graph, node: GraphNode, flags: int = compileflags.defaults) -> np.ndarray:
    """Evaluate a node given the current state of the graph.

    Args:
        graph: The graph containing the node.
        node: The node to evaluate.
        flags: Engine-wide debug flags, combined with the node flags.

    Raises
    ------
        ExecutionError: If an input is missing or cannot be resolved, the primitive fails, or
            the result cannot be published.
    """
    # 1. check whether we need to trace this node
    flags = node.flags | flags
    tracing = flags & compileflags.TRACE
    if tracing:
        _print_graph_node(node)

    # 2. resolve the inputs
    try:
        args = [resolve_input(graph, node, node_input) for node_input in node.inputs]
    except ExecutionError:
        raise
    except Exception as exc:
        raise ExecutionError(f"executor: {node.qualified_id}: cannot resolve inputs: {exc}", node.qualified_id) from exc

    # 3. evaluate the node
    try:
        result = node.primitive.forward(*args)
    except Exception as exc:
        raise ExecutionError(
            f"executor: {node.qualified_id}: primitive '{node.type}' failed: {exc}", node.qualified_id
        ) from exc

    # 4. store the node result in the graph
    node.output = np.asarray(result)

    # 5. check whether we need to print the computation result
    if tracing:
        _print_evaluated_node(node, node.output)

    # 6. publish the result as a named intermediate
    if node.result_to is not None:
        publish(graph, node)

    # 7. check whether we need to stop after evaluating this node
    if flags & compileflags.BREAK != 0:
        input("# executor: press any key to continue...")
        print("")

    # 8. return the result
    return node.output


def evaluate_nodes(graph: Graph, start: str | int | None = None, flags: int = compileflags.defaults) -> np.ndarray | None:
    """Evaluate the graph from `start` to its last node.

    Returns the output of the last node, or None for an empty graph.

    Raises
    ------
        NodeNotFound: If the start node does not exist.
        ExecutionError: If any node fails.
    """
    if not graph.nodes:
        if start is not None:
            raise NodeNotFound(f"executor: no start node '{start}' in an empty graph")
        return None
    first = graph[start].index if start is not None else 0

    # Honor the DUMP flag when requested to do so
    if flags & compileflags.DUMP != 0:
        for node in graph.nodes[first:]:
            print(str(node))
        print("")

    rv: np.ndarray | None = None
    for node in graph.nodes[first:]:
        rv = evaluate_single_node(graph, node, flags)
    return rv

"""Graph Builder.

This module expands an architecture template into a `graph.Graph`. Given
the layer and nested-layer counts, the builder instantiates one node per
(operation id, coordinate) pair in construction order (see
`architecture.Architecture.expand`) and wires each input as follows:

1. a name ending in `[*]` gathers the outputs of every already-constructed
node with that operation id sharing the consumer's layer (nested scope) or
regardless of the layer (other scopes);

2. a name equal to the id of an already-constructed operation resolves to
the node visible from the consumer's coordinate (see `Graph.resolve`); the
producer scope must not be finer than the consumer scope (use a gather
input or an operation finder instead);

3. otherwise, the name is looked up in the binding table, trying operation
finders first and then weights, biases, intermediates, and scalars.

Operation finders are invoked at build time: they may return a node, the
fully qualified id of an already-constructed node, or a plain value.

Because inputs can only reference nodes created earlier, the construction
order is also a valid topological order for the forward pass.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from ..errors import ConstructionError, EngineError
from ..numpybackend.primitive import OperatorLibrary
from .architecture import GATHER_SUFFIX, Architecture, OperationSpec, Scope, parse_input_name
from .bindings import BindingTable, Category
from .graph import Graph, GraphNode, InputKind, NodeInput

_SCOPE_RANK = {Scope.GLOBAL: 0, Scope.LAYER: 1, Scope.NESTED: 2}
"""Orders scopes from the coarsest to the finest."""


def build(
    architecture: Architecture,
    bindings: BindingTable,
    library: OperatorLibrary,
    num_layers: int = 1,
    num_nested_layers: int = 1,
) -> Graph:
    """Build the graph for the given template and bindings.

    Raises
    ------
        ConstructionError: if a binding is missing, an operation finder
            resolves to nothing, or the template is inconsistent.
        UnknownOperationKind: if the library has no primitive for a kind.
    """
    graph = Graph(bindings, architecture.scopes())
    for spec, coordinate in architecture.expand(num_layers, num_nested_layers):
        _validate_destinations(bindings, spec)
        node = graph.add(spec, coordinate, library.create(spec.type))
        for name in spec.inputs:
            node_input = _resolve_input(graph, node, name)
            node.inputs.append(node_input)
            for source in node_input.sources:
                graph.nodes[source].consumers.append(node.index)
        node.gradients = [None] * len(node.inputs)
    return graph


def _validate_destinations(bindings: BindingTable, spec: OperationSpec) -> None:
    if spec.set_result_to is not None:
        bindings.get(Category.INTERMEDIATE, parse_input_name(spec.set_result_to)[0])
    for destination in spec.gradient_result_to or ():
        if destination is not None:
            bindings.get(Category.GRADIENT, parse_input_name(destination)[0])


def _resolve_input(graph: Graph, node: GraphNode, raw: str) -> NodeInput:
    name, gather = parse_input_name(raw)
    if gather:
        return _resolve_gather(graph, node, name)

    producer = graph.resolve(name, node.coordinate)
    if producer is not None and producer is not node:
        if _SCOPE_RANK[producer.scope] > _SCOPE_RANK[node.scope]:
            raise ConstructionError(
                f"builder: {node.qualified_id}: input '{name}' has a finer scope than its consumer; "
                f"use '{name}{GATHER_SUFFIX}' or an operation finder"
            )
        return NodeInput(name, InputKind.NODE, sources=(producer.index,))

    binding = graph.bindings.find(name)
    if binding is None:
        if name in graph.scopes:
            raise ConstructionError(
                f"builder: {node.qualified_id}: input '{name}' refers to an operation not constructed yet"
            )
        raise ConstructionError(f"builder: {node.qualified_id}: input '{name}' not found in bindings")

    if binding.category is not Category.OPERATION_FINDER:
        return NodeInput(name, InputKind.BINDING, binding=binding)

    try:
        found = binding.resolve(node.coordinate)
    except EngineError as exc:
        raise ConstructionError(f"builder: {node.qualified_id}: operation finder '{name}' failed: {exc}") from exc
    if isinstance(found, str):
        if found not in graph:
            raise ConstructionError(
                f"builder: {node.qualified_id}: operation finder '{name}' resolved to unknown node '{found}'"
            )
        found = graph[found]
    if found is None:
        raise ConstructionError(f"builder: {node.qualified_id}: operation finder '{name}' resolved to no node")
    if isinstance(found, GraphNode):
        if found.index >= len(graph.nodes) or graph.nodes[found.index] is not found or found is node:
            raise ConstructionError(
                f"builder: {node.qualified_id}: operation finder '{name}' resolved to a foreign node"
            )
        return NodeInput(name, InputKind.NODE, sources=(found.index,))
    return NodeInput(name, InputKind.VALUE, value=found)


def _resolve_gather(graph: Graph, node: GraphNode, name: str) -> NodeInput:
    siblings = [other for other in graph.nodes_named(name) if other is not node]
    if graph.scopes.get(name) is Scope.NESTED:
        siblings = [other for other in siblings if other.coordinate.layer == node.coordinate.layer]
    if not siblings:
        raise ConstructionError(f"builder: {node.qualified_id}: nothing to gather for '{name}'")
    siblings.sort(key=lambda other: (other.coordinate.layer, other.coordinate.nested_layer))
    return NodeInput(name, InputKind.GATHER, sources=tuple(other.index for other in siblings))


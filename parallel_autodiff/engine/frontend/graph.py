"""Computation Graph.

This module defines the expanded computation graph on which the engine runs
the forward and backward passes. The graph builder (see `builder`) creates
the graph by expanding an architecture template over the layer and nested
layer counts and wiring node inputs through the binding table.

This module provides:

1. `GraphNode`, a single operation instance identified by its operation id
and its `Coordinate`, holding resolved inputs, the cached output, the
gradient slots, and the backward bookkeeping;

2. `NodeInput`, describing where a node reads each of its inputs from;

3. `Graph`, an arena of nodes addressed by dense integer index, whose order
is the forward execution order, plus a secondary string-keyed index;

4. built-in debug operations (tracepoint, breakpoint).

Design Decisions
----------------

1. Arena of Nodes:
   - Nodes live in a list whose order is the execution order
   - Edges are integer indexes into the list
   - The string-keyed index is built once and never used on the hot path

2. Node Identity:
   - A node is identified by its fully qualified id `<id>_<layer>_<nestedLayer>`
   - Nodes use identity-based hashing, so they can be used as dictionary keys

3. Node Representation:
   - The __repr__ of a node is an SSA-like line showing its inputs, which
     makes execution order dumps easy to read

Dependency Bookkeeping
----------------------

Each node holds a `latch` (an `atomic.Countdown`) armed with the number of
gradient contributions it expects during the backward pass from a given start
node, and a dictionary of the contributions received so far. The backward
visitor fires the node's primitive once the latch opens. See the
`numpybackend.dependencies` and `numpybackend.backward` modules.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Any, Iterator

from .. import atomic, compileflags
from ..errors import ConstructionError, NodeNotFound, ProtocolViolation
from .architecture import Coordinate, OperationSpec, Scope, qualified_id
from .bindings import Binding, BindingTable, Category

NODE_FLAG_TRACE = compileflags.TRACE
"""Inserts a tracepoint at the corresponding graph node."""

NODE_FLAG_BREAK = compileflags.BREAK
"""Inserts a breakpoint at the corresponding graph node."""


class InputKind(enum.Enum):
    """Where a node input comes from."""

    NODE = "node"
    """The output of another node."""

    GATHER = "gather"
    """The outputs of several sibling nodes, stacked into one value."""

    BINDING = "binding"
    """A value provided by a binding, resolved at every forward pass."""

    VALUE = "value"
    """A value returned by an operation finder at construction time."""


@dataclass(frozen=True)
class NodeInput:
    """A resolved node input.

    Attributes
    ----------
        name: the symbolic name as written in the template.
        kind: the kind of input.
        sources: indexes of the producing nodes (NODE and GATHER).
        binding: the binding providing the value (BINDING).
        value: the value returned by an operation finder (VALUE).
    """

    name: str
    kind: InputKind
    sources: tuple[int, ...] = ()
    binding: Binding | None = None
    value: Any = None


ContributionKey = tuple[int, int, int]
"""Identifies a contribution: (consumer index, input slot, gather position)."""


class GraphNode:
    """A single operation instance of the expanded graph.

    Attributes
    ----------
        index: dense position in the graph, which is also the execution order.
        id: the operation id from the template.
        type: the operation kind used to look up the primitive.
        coordinate: the (layer, nested_layer) coordinate.
        scope: the repetition scope of the operation.
        primitive: the primitive instance, resolved once at construction.
        inputs: the resolved inputs.
        consumers: indexes of the nodes consuming this node's output.
        output: the cached output of the last forward pass.
        gradients: the calculated gradient slots, one per input.
        output_gradient: the accumulated gradient of the last backward pass.
        result_to: the intermediate receiving a copy of the output, if any.
        gradient_result_to: the gradient binding per input, if any.
        flags: debug flags (see `tracepoint` and `breakpoint`).
        fired: whether the backward pass started firing the node.
        completed: whether the node backward succeeded in the last pass.
    """

    def __init__(self, index: int, spec: OperationSpec, coordinate: Coordinate, primitive: Any) -> None:
        self.index = index
        self.id = spec.id
        self.type = spec.type
        self.coordinate = coordinate
        self.scope = spec.scope
        self.primitive = primitive
        self.inputs: list[NodeInput] = []
        self.consumers: list[int] = []
        self.output: Any = None
        self.gradients: list[Any] = []
        self.output_gradient: Any = None
        self.result_to = spec.set_result_to
        self.gradient_result_to = spec.gradient_result_to
        self.flags = 0
        self.latch = atomic.Countdown(0)
        self.contributions: dict[ContributionKey, Any] = {}
        self.fired = False
        self.completed = False
        self.lock = threading.Lock()

    @property
    def qualified_id(self) -> str:
        """Return the `<id>_<layer>_<nestedLayer>` string identifying the node."""
        return qualified_id(self.id, self.coordinate)

    @property
    def expected(self) -> int:
        """Number of contributions expected during the current backward pass."""
        return self.latch.count

    @property
    def received(self) -> int:
        """Number of contributions received during the current backward pass."""
        return self.latch.arrived()

    def predecessors(self) -> Iterator[tuple[ContributionKey, int]]:
        """Yield (contribution key, producer index) for every incoming edge."""
        for slot, node_input in enumerate(self.inputs):
            for position, source in enumerate(node_input.sources):
                yield (self.index, slot, position), source

    def __hash__(self) -> int:
        """Use identity-based hashing."""
        return id(self)

    def __repr__(self) -> str:
        """Return an SSA-like representation of the node."""
        args: list[str] = []
        for node_input in self.inputs:
            if node_input.kind is InputKind.NODE:
                args.append(f"n{node_input.sources[0]}")
            elif node_input.kind is InputKind.GATHER:
                args.append("[" + ", ".join(f"n{s}" for s in node_input.sources) + "]")
            elif node_input.kind is InputKind.BINDING:
                assert node_input.binding is not None
                args.append(f"{node_input.binding.category.value}:{node_input.name}")
            else:
                args.append(f"value:{node_input.name}")
        return f"n{self.index} = {self.type}({', '.join(args)})  # {self.qualified_id}"

    def __str__(self) -> str:
        """Return an SSA-like representation of the node."""
        return repr(self)


class Graph:
    """An arena of nodes in forward execution order.

    Use `builder.build` to create a graph from a template. The graph
    keeps a reference to the binding table, which the executors use to
    resolve binding inputs, publish intermediates, and accumulate gradients.

    Attributes
    ----------
        nodes: the nodes, in forward execution order.
        bindings: the binding table used to build the graph.
        scopes: maps each operation id to its scope.
        compiled: dependency counts compiled so far, keyed by start node index.
        gradient_lock: serializes accumulation into gradient bindings.
    """

    def __init__(self, bindings: BindingTable, scopes: dict[str, Scope] | None = None) -> None:
        self.nodes: list[GraphNode] = []
        self.bindings = bindings
        self.scopes: dict[str, Scope] = dict(scopes or {})
        self.compiled: dict[int, Any] = {}
        self.gradient_lock = threading.Lock()
        self._index: dict[str, int] = {}
        self._by_id: dict[str, list[int]] = {}

    def add(self, spec: OperationSpec, coordinate: Coordinate, primitive: Any) -> GraphNode:
        """Append a node and register it in the index."""
        key = qualified_id(spec.id, coordinate)
        if key in self._index:
            raise ConstructionError(f"graph: duplicate node '{key}'")
        node = GraphNode(len(self.nodes), spec, coordinate, primitive)
        self.nodes.append(node)
        self._index[key] = node.index
        self._by_id.setdefault(spec.id, []).append(node.index)
        self.scopes.setdefault(spec.id, spec.scope)
        return node

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self.nodes)

    def __iter__(self) -> Iterator[GraphNode]:
        """Iterate over the nodes in execution order."""
        return iter(self.nodes)

    def __contains__(self, key: object) -> bool:
        """Tell whether a fully qualified node id exists."""
        return key in self._index

    def __getitem__(self, key: str | int) -> GraphNode:
        """Return a node given its fully qualified id or its index.

        Raises
        ------
            NodeNotFound: if the node was never constructed.
        """
        if isinstance(key, int):
            if 0 <= key < len(self.nodes):
                return self.nodes[key]
            raise NodeNotFound(f"graph: no node with index {key}")
        try:
            return self.nodes[self._index[key]]
        except KeyError:
            raise NodeNotFound(f"graph: no node named '{key}'")

    def node(self, op_id: str, coordinate: Coordinate = Coordinate()) -> GraphNode:
        """Return the node with the given operation id at a coordinate."""
        return self[qualified_id(op_id, coordinate)]

    def resolve(self, op_id: str, coordinate: Coordinate) -> GraphNode | None:
        """Return the node with `op_id` visible from `coordinate`, if constructed.

        The coordinate is projected onto the scope of the operation, so a
        per-layer node sees the global nodes and the node of its own layer.
        """
        scope = self.scopes.get(op_id)
        if scope is None:
            return None
        index = self._index.get(qualified_id(op_id, coordinate.project(scope)))
        return self.nodes[index] if index is not None else None

    def nodes_named(self, op_id: str) -> list[GraphNode]:
        """Return all the nodes with the given operation id, in creation order."""
        return [self.nodes[i] for i in self._by_id.get(op_id, ())]

    def lookup(self, category: Category | None, name: str, coordinate: Coordinate = Coordinate()) -> Any:
        """Resolve a symbolic name at a coordinate.

        With `category` set to None, return the node with operation id `name`
        at `coordinate`. With `Category.OPERATION_FINDER`, return the node
        the finder resolves to. With any other category, return the value
        provided by the corresponding binding.
        """
        if category is None:
            return self.node(name, coordinate)
        value = self.bindings.get(category, name).resolve(coordinate)
        if category is Category.OPERATION_FINDER and isinstance(value, str):
            return self[value]
        return value

    def validate_order(self) -> None:
        """Check that every node comes after the nodes it consumes.

        Raises
        ------
            ProtocolViolation: if the order is not a topological order.
        """
        for node in self.nodes:
            for _, source in node.predecessors():
                if source >= node.index:
                    raise ProtocolViolation(f"graph: {node.qualified_id} consumes a later node n{source}")

    def __repr__(self) -> str:
        """Return the SSA-like representation of the whole graph."""
        return "\n".join(repr(node) for node in self.nodes)


# Debug operations


def tracepoint(node: GraphNode) -> GraphNode:
    """
    Mark the node as a tracepoint and returns it.

    The tracepoint will take effect while evaluating the node. We will
    print information before evaluating the node, evaluate it, then
    print the result.
    """
    node.flags |= NODE_FLAG_TRACE
    return node


def breakpoint(node: GraphNode) -> GraphNode:
    """
    Mark the node as a breakpoint and returns it.

    The breakpoint will cause the executor to stop after
    evaluating the node.
    """
    node.flags |= NODE_FLAG_TRACE | NODE_FLAG_BREAK
    return node

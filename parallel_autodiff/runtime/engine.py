"""Engine facade.

The `Engine` class ties together the graph builder, the forward executor, the
dependency-count compiler, the backward visitor, and the intermediate store
behind the four entry points network-wrapper code needs:

    >>> engine = Engine(arch, table, operators.library(), num_layers=3)
    >>> engine.run_forward()
    >>> result = engine.run_backward("loss_0_0", "hidden_0_0", 1.0)
    >>> engine.store_intermediates("sequence-1")
    >>> engine.restore_intermediates("sequence-1")

The graph is built once, at construction. Dependency counts are compiled
lazily, the first time a start node is used, and cached for the lifetime
of the engine.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import threading
from typing import Any, Hashable

import numpy as np

from ..engine import compileflags
from ..engine.frontend import builder
from ..engine.frontend.architecture import Architecture, parse_input_name
from ..engine.frontend.bindings import BindingTable, Category
from ..engine.frontend.graph import Graph, GraphNode
from ..engine.numpybackend import backward, dependencies, executor, snapshot
from ..engine.numpybackend.primitive import OperatorLibrary

logger = logging.getLogger(__name__)


class Engine:
    """Builds a graph from a template and runs it.

    Args:
        architecture: the architecture template.
        bindings: the binding table resolving template names.
        library: the operator library providing the primitives.
        num_layers: number of layer repetitions.
        num_nested_layers: number of nested repetitions per layer.
        flags: debug flags for the forward executor.
        max_workers: concurrency limit of the concurrent backward pass.

    Raises
    ------
        ConstructionError: if the graph cannot be built.
    """

    def __init__(
        self,
        architecture: Architecture,
        bindings: BindingTable,
        library: OperatorLibrary,
        num_layers: int = 1,
        num_nested_layers: int = 1,
        flags: int = compileflags.defaults,
        max_workers: int = compileflags.default_workers,
    ) -> None:
        self.graph: Graph = builder.build(architecture, bindings, library, num_layers, num_nested_layers)
        self.flags = flags
        self.max_workers = max_workers
        self.intermediates = snapshot.IntermediateStore(self.graph)
        self._compile_lock = threading.Lock()
        logger.info(
            "engine: built %d nodes (layers=%d, nested=%d)", len(self.graph), num_layers, num_nested_layers
        )

    def __getitem__(self, key: str | int) -> GraphNode:
        """Return a node given its fully qualified id or its index."""
        return self.graph[key]

    def compile(self, start: str | int) -> dependencies.DependencyCounts:
        """Compile (or return the cached) dependency counts for `start`."""
        with self._compile_lock:
            index = self.graph[start].index
            counts = self.graph.compiled.get(index)
            if counts is None:
                counts = dependencies.compile(self.graph, index)
            return counts

    def run_forward(self, start: str | int | None = None) -> np.ndarray | None:
        """Evaluate every node from `start` (default: the first node) onward.

        Returns the output of the last node.

        Raises
        ------
            NodeNotFound: if the start node does not exist.
            ExecutionError: if a primitive fails.
        """
        return executor.evaluate_nodes(self.graph, start, self.flags)

    def run_backward(
        self,
        start: str | int,
        end: str | int,
        seed: Any,
        sequential: bool = False,
        policy: backward.FailurePolicy = backward.FailurePolicy.RAISE,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> backward.BackwardResult:
        """Propagate `seed` backward from `start` and return the result at `end`.

        Raises
        ------
            NodeNotFound: if the start or end node does not exist.
            ProtocolViolation: if `end` is not reachable from `start`.
            BackwardError: if nodes failed, according to `policy`.
        """
        self.compile(start)
        return backward.traverse(
            self.graph,
            start,
            end,
            seed,
            sequential=sequential,
            max_workers=self.max_workers,
            policy=policy,
            cancel=cancel,
            timeout=timeout,
        )

    def store_intermediates(self, instance_id: Hashable) -> None:
        """Snapshot the forward state under `instance_id`."""
        self.intermediates.store(instance_id)

    def restore_intermediates(self, instance_id: Hashable) -> None:
        """Restore the forward state saved under `instance_id`.

        Raises
        ------
            SnapshotNotFound: if nothing was stored under `instance_id`.
        """
        self.intermediates.restore(instance_id)

    def discard_intermediates(self, instance_id: Hashable) -> None:
        """Drop the snapshot saved under `instance_id`, if any."""
        self.intermediates.discard(instance_id)

    def clear_gradients(self) -> None:
        """Zero every gradient binding written by the backward pass."""
        for node in self.graph:
            for destination in node.gradient_result_to or ():
                if destination is None:
                    continue
                name = parse_input_name(destination)[0]
                storage = self.graph.bindings.get(Category.GRADIENT, name).resolve(node.coordinate)
                storage[...] = 0

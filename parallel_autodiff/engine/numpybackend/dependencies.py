"""Dependency-Count Compiler.

The expanded graph is not a tree: shared weights and reused sub-expressions
give many nodes more than one consumer. During the backward pass, a node must
fire its primitive exactly once, after every consumer delivered its gradient
contribution. This module computes, once per topology and start node, how
many contributions each node expects.

The count of a node is the number of incoming backward edges reachable from
the start node, where an edge is one (consumer, input slot, gather position)
triple. The start node expects exactly one contribution: the seed gradient.
Nodes not reachable from the start node expect zero contributions and do not
take part in the backward pass.

For example, the diamond `A -> B, A -> C, B -> D, C -> D` compiled from `D`
gives `D: 1, B: 1, C: 1, A: 2`.

The compiled counts are cached on the graph (keyed by start node index) and
used to arm each node's count-down latch. The `reset` function zeroes the
received counters and the buffered contributions, leaving the expected counts
untouched, so the same compiled topology serves many backward passes.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from dataclasses import dataclass

from .. import atomic
from ..errors import NotCompiled
from ..frontend.graph import Graph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyCounts:
    """Compiled expected contribution counts for a start node.

    Attributes
    ----------
        start: index of the start node.
        expected: expected contribution count, indexed by node index.
    """

    start: int
    expected: tuple[int, ...]

    def reachable(self) -> list[int]:
        """Return the indexes of the nodes taking part in the backward pass."""
        return [index for index, count in enumerate(self.expected) if count > 0]


def compile(graph: Graph, start: str | int) -> DependencyCounts:
    """Compile the dependency counts of `graph` for the given start node.

    The traversal is read-only with respect to the node state except for
    caching the result in `graph.compiled` and arming the node latches.

    Raises
    ------
        NodeNotFound: if the start node does not exist.
    """
    root = graph[start]
    expected = [0] * len(graph.nodes)
    expected[root.index] = 1

    # Iterative DFS visiting each node once while counting every edge
    visited = {root.index}
    stack = [root.index]
    while stack:
        node = graph.nodes[stack.pop()]
        for _, source in node.predecessors():
            expected[source] += 1
            if source not in visited:
                visited.add(source)
                stack.append(source)

    counts = DependencyCounts(start=root.index, expected=tuple(expected))
    graph.compiled[root.index] = counts
    arm(graph, counts)
    logger.debug("compiled %d reachable nodes from %s", len(visited), root.qualified_id)
    return counts


def compiled_for(graph: Graph, start: str | int) -> DependencyCounts:
    """Return the counts compiled for a start node.

    Raises
    ------
        NodeNotFound: if the start node does not exist.
        NotCompiled: if `compile` was never called for the start node.
    """
    root = graph[start]
    try:
        return graph.compiled[root.index]
    except KeyError:
        raise NotCompiled(f"dependencies: no dependency counts compiled for '{root.qualified_id}'")


def arm(graph: Graph, counts: DependencyCounts) -> None:
    """Install the compiled counts into the node latches.

    Latches already holding the right count are only reset, so switching
    back and forth between start nodes stays cheap.
    """
    for node, count in zip(graph.nodes, counts.expected):
        if node.latch.count != count:
            node.latch = atomic.Countdown(count)
    reset(graph)


def reset(graph: Graph) -> None:
    """Zero the received counters and drop buffered contributions.

    The expected counts are preserved.
    """
    for node in graph.nodes:
        with node.lock:
            node.latch.reset()
            node.contributions.clear()
            node.fired = False


def armed_for(graph: Graph, counts: DependencyCounts) -> bool:
    """Tell whether the node latches currently hold the given counts."""
    return all(node.latch.count == count for node, count in zip(graph.nodes, counts.expected))

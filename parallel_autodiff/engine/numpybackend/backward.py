"""Backward Visitor.

This module runs the reverse traversal that accumulates gradients through the
graph. Each node behaves like a small state machine:

    Waiting --(received == expected)--> Fired

Delivering a gradient contribution to a node stores it under its contribution
key (consumer, input slot, gather position) and arrives at the node latch. The
delivery that opens the latch makes the node ready: the visitor sums the
contributions (in key order, so the result does not depend on arrival order),
invokes the primitive's `backward` method once, stores the input gradients in
the node gradient slots, adds them to the gradient bindings named by
`gradientResultTo`, and delivers each input gradient to the corresponding
predecessor. Gradients for gather inputs are split along the leading axis,
one contribution per sibling.

There are two execution modes:

1. sequential: a single thread delivers depth-first, in a deterministic order;

2. concurrent: ready nodes are submitted to a bounded `ThreadPoolExecutor`,
so independent branches run in parallel. The only ordering guarantee is the
one enforced by the latches: no node fires before all its contributions
arrived.

In both modes, an exception raised by a primitive is captured as a
`NodeBackwardError` and the traversal continues for the unaffected branches.
The predecessors of a failed node never become ready. Once the traversal
ends, the `FailurePolicy` decides what to do with the captured failures:

- `FailurePolicy.RAISE` (the default) raises a `BackwardError` exception group
whenever at least one node failed;

- `FailurePolicy.LOG_SINGLE` logs a single failure and returns normally, and
raises the exception group when two or more nodes failed.

In both cases, the `BackwardResult` carries the captured failures, and a
raised `BackwardError` carries the result in its `result` attribute.

Callers may stop a traversal early by setting a `threading.Event` (or by
passing a timeout to the concurrent mode). Nodes already running finish,
no new node fires, and the gradients accumulated so far remain valid.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .. import atomic, compileflags
from ..errors import BackwardError, NodeBackwardError, ProtocolViolation
from ..frontend.architecture import parse_input_name
from ..frontend.bindings import Category
from ..frontend.graph import ContributionKey, Graph, GraphNode, InputKind
from . import dependencies

logger = logging.getLogger(__name__)

SEED_KEY: ContributionKey = (-1, 0, 0)
"""Contribution key of the seed gradient delivered to the start node."""


class FailurePolicy(enum.Enum):
    """What to do with the failures captured during a backward pass."""

    RAISE = "raise"
    LOG_SINGLE = "log_single"


@dataclass
class BackwardResult:
    """Outcome of a backward pass.

    Attributes
    ----------
        output_gradient: gradient accumulated at the end node's output.
        input_gradients: gradients the end node computed for its inputs.
        failures: the failures captured during the traversal.
        cancelled: whether the traversal stopped before completion.
        fired: number of nodes whose backward completed.
        received: contributions received by each node, indexed by node index.
    """

    output_gradient: Any = None
    input_gradients: list[Any] = field(default_factory=list)
    failures: tuple[Exception, ...] = ()
    cancelled: bool = False
    fired: int = 0
    received: tuple[int, ...] = ()


Delivery = tuple[GraphNode, ContributionKey, Any]


class _Visitor:
    """State shared by the tasks of a single traversal."""

    def __init__(self, graph: Graph, cancel: threading.Event) -> None:
        self.graph = graph
        self.cancel = cancel
        self.fired = atomic.Int()
        self.failures: list[Exception] = []
        self.failures_lock = threading.Lock()

    def fail(self, failure: Exception) -> None:
        with self.failures_lock:
            self.failures.append(failure)

    def deliver(self, node: GraphNode, key: ContributionKey, gradient: Any) -> bool:
        """Store a contribution and tell whether the node became ready."""
        with node.lock:
            if key in node.contributions:
                raise ProtocolViolation(f"backward: {node.qualified_id}: duplicate contribution {key}")
            try:
                ready = node.latch.arrive()
            except ValueError as exc:
                raise ProtocolViolation(
                    f"backward: {node.qualified_id}: more contributions than the {node.expected} expected"
                ) from exc
            node.contributions[key] = gradient
            return ready

    def fire(self, node: GraphNode) -> list[Delivery]:
        """Run the node primitive and return the deliveries to its predecessors.

        Raises
        ------
            NodeBackwardError: if anything goes wrong while firing the node.
        """
        try:
            return self._fire(node)
        except Exception as exc:
            raise NodeBackwardError(f"backward: {node.qualified_id}: {exc}", node.qualified_id) from exc

    def _fire(self, node: GraphNode) -> list[Delivery]:
        with node.lock:
            if node.fired:
                raise ProtocolViolation(f"backward: {node.qualified_id}: fired twice")
            node.fired = True
            contributions = [node.contributions[key] for key in sorted(node.contributions)]

        gradient = _accumulate(node, contributions)
        node.output_gradient = gradient

        gradients = list(node.primitive.backward(gradient))
        if len(gradients) != len(node.inputs):
            raise ProtocolViolation(
                f"primitive '{node.type}' returned {len(gradients)} gradients for {len(node.inputs)} inputs"
            )
        self._accumulate_destinations(node, gradients)
        node.gradients = gradients
        node.completed = True
        self.fired.add(1)

        deliveries: list[Delivery] = []
        for key, source in node.predecessors():
            _, slot, position = key
            slot_gradient = gradients[slot]
            if slot_gradient is not None and node.inputs[slot].kind is InputKind.GATHER:
                slot_gradient = np.asarray(slot_gradient)[position]
            deliveries.append((self.graph.nodes[source], key, slot_gradient))
        return deliveries

    def _accumulate_destinations(self, node: GraphNode, gradients: list[Any]) -> None:
        # Check every destination before writing to any of them
        updates: list[tuple[np.ndarray, np.ndarray]] = []
        for slot, destination in enumerate(node.gradient_result_to or ()):
            if destination is None or gradients[slot] is None:
                continue
            name = parse_input_name(destination)[0]
            storage = self.graph.bindings.get(Category.GRADIENT, name).resolve(node.coordinate)
            update = np.asarray(gradients[slot])
            if not isinstance(storage, np.ndarray):
                raise TypeError(f"gradient storage '{name}' is not an array")
            if np.broadcast_shapes(storage.shape, update.shape) != storage.shape:
                raise ValueError(f"gradient of shape {update.shape} does not fit storage '{name}' {storage.shape}")
            if not np.can_cast(np.result_type(storage, update), storage.dtype, casting="same_kind"):
                raise TypeError(f"gradient of dtype {update.dtype} does not fit storage '{name}' {storage.dtype}")
            updates.append((storage, update))

        with self.graph.gradient_lock:
            for storage, update in updates:
                np.add(storage, update, out=storage)

    def deliver_all(self, deliveries: list[Delivery]) -> list[GraphNode]:
        """Deliver contributions and return the nodes that became ready."""
        ready: list[GraphNode] = []
        for target, key, gradient in deliveries:
            try:
                if self.deliver(target, key, gradient):
                    ready.append(target)
            except ProtocolViolation as exc:
                failure = NodeBackwardError(str(exc), target.qualified_id)
                failure.__cause__ = exc
                self.fail(failure)
        return ready

    def run_sequential(self, root: GraphNode) -> None:
        stack = [root]
        while stack and not self.cancel.is_set():
            node = stack.pop()
            try:
                deliveries = self.fire(node)
            except NodeBackwardError as exc:
                self.fail(exc)
                continue
            stack.extend(reversed(self.deliver_all(deliveries)))

    def run_concurrent(self, root: GraphNode, max_workers: int, timeout: float | None) -> None:
        pending = atomic.Int()
        done = threading.Event()

        def run(node: GraphNode) -> None:
            try:
                if self.cancel.is_set():
                    return
                try:
                    deliveries = self.fire(node)
                except NodeBackwardError as exc:
                    self.fail(exc)
                    return
                for ready in self.deliver_all(deliveries):
                    schedule(ready)
            finally:
                if pending.add(-1) == 0:
                    done.set()

        def schedule(node: GraphNode) -> None:
            pending.add(1)
            pool.submit(run, node)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backward") as pool:
            schedule(root)
            if not done.wait(timeout):
                self.fail(TimeoutError(f"backward: traversal exceeded {timeout} seconds"))
                self.cancel.set()
                done.wait()


def _accumulate(node: GraphNode, contributions: list[Any]) -> Any:
    total: Any = None
    for contribution in contributions:
        if contribution is None:
            continue
        if total is None:
            total = np.array(contribution, copy=True)
        else:
            total = total + contribution
    if total is None and node.output is not None:
        total = np.zeros_like(node.output)
    return total


def _clear_results(graph: Graph) -> None:
    for node in graph.nodes:
        node.output_gradient = None
        node.gradients = [None] * len(node.inputs)
        node.completed = False


def traverse(
    graph: Graph,
    start: str | int,
    end: str | int,
    seed: Any,
    sequential: bool = False,
    max_workers: int = compileflags.default_workers,
    policy: FailurePolicy = FailurePolicy.RAISE,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> BackwardResult:
    """Run the backward pass from `start`, returning the gradient at `end`.

    The dependency counts for `start` must have been compiled with
    `dependencies.compile`. The received counters are reset after the
    traversal, so the graph is ready for the next pass.

    Raises
    ------
        NodeNotFound: if the start or end node does not exist.
        NotCompiled: if the counts for `start` were never compiled.
        ProtocolViolation: if `end` is not reachable from `start`.
        BackwardError: if nodes failed, according to `policy`.
    """
    counts = dependencies.compiled_for(graph, start)
    root = graph.nodes[counts.start]
    end_node = graph[end]
    if counts.expected[end_node.index] == 0:
        raise ProtocolViolation(
            f"backward: end node '{end_node.qualified_id}' is not reachable from '{root.qualified_id}'"
        )
    if dependencies.armed_for(graph, counts):
        dependencies.reset(graph)
    else:
        dependencies.arm(graph, counts)
    _clear_results(graph)

    visitor = _Visitor(graph, cancel if cancel is not None else threading.Event())
    try:
        visitor.deliver(root, SEED_KEY, np.asarray(seed))
        if sequential:
            visitor.run_sequential(root)
        else:
            visitor.run_concurrent(root, max_workers, timeout)
        result = BackwardResult(
            output_gradient=end_node.output_gradient if end_node.completed else None,
            input_gradients=list(end_node.gradients) if end_node.completed else [],
            failures=tuple(visitor.failures),
            cancelled=visitor.cancel.is_set(),
            fired=visitor.fired.load(),
            received=tuple(node.received for node in graph.nodes),
        )
    finally:
        dependencies.reset(graph)

    if result.cancelled:
        logger.info("backward: traversal from %s cancelled after %d nodes", root.qualified_id, result.fired)
    _apply_policy(result, policy)
    return result


def _apply_policy(result: BackwardResult, policy: FailurePolicy) -> None:
    if not result.failures:
        return
    if policy is FailurePolicy.LOG_SINGLE and len(result.failures) == 1:
        failure = result.failures[0]
        logger.error("backward: ignoring single failure: %s", failure, exc_info=failure)
        return
    error = BackwardError(f"backward: {len(result.failures)} failure(s)", list(result.failures))
    error.result = result  # type: ignore[attr-defined]
    raise error

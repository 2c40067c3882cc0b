"""Intermediate Store/Restore.

Training a network with truncated backpropagation or evaluating several
input sequences with the same graph requires keeping the forward state of
many "instances" around while the graph itself is reused. This module
snapshots, per caller-chosen instance id, everything the backward pass
depends on:

1. the cached output of every node;

2. the instance state of every primitive (i.e., what it cached during
forward for use during backward).

Restoring a snapshot copies the saved state back into the graph, so a
subsequent backward pass produces the same gradients it would have produced
right after the forward pass that generated the snapshot. Snapshots are
deep copies: mutating the graph after `store` does not alter a snapshot, and
restoring the same snapshot twice yields the same state twice.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Hashable

import numpy as np

from ..errors import SnapshotNotFound
from ..frontend.graph import Graph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """Saved forward state of a graph, indexed by node index."""

    outputs: tuple[Any, ...]
    primitives: tuple[dict[str, Any], ...]


def capture(graph: Graph) -> Snapshot:
    """Return a deep copy of the forward state of `graph`."""
    return Snapshot(
        outputs=tuple(_copy_output(node.output) for node in graph.nodes),
        primitives=tuple(copy.deepcopy(vars(node.primitive)) for node in graph.nodes),
    )


def apply(graph: Graph, snapshot: Snapshot) -> None:
    """Copy the state saved in `snapshot` back into `graph`."""
    if len(snapshot.outputs) != len(graph.nodes):
        raise ValueError(f"snapshot: snapshot has {len(snapshot.outputs)} nodes, graph has {len(graph.nodes)}")
    for node, output, state in zip(graph.nodes, snapshot.outputs, snapshot.primitives):
        node.output = _copy_output(output)
        primitive_state = vars(node.primitive)
        primitive_state.clear()
        primitive_state.update(copy.deepcopy(state))


def _copy_output(output: Any) -> Any:
    return None if output is None else np.array(output, copy=True)


class IntermediateStore:
    """Snapshots of the forward state of a graph, keyed by instance id.

    The store is safe to use from several threads, but storing or restoring
    while a forward or backward pass runs on the same graph is not.
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self._snapshots: dict[Hashable, Snapshot] = {}
        self._lock = threading.Lock()

    def store(self, instance_id: Hashable) -> None:
        """Snapshot the current forward state under `instance_id`.

        Storing twice under the same id replaces the previous snapshot.
        """
        snapshot = capture(self.graph)
        with self._lock:
            self._snapshots[instance_id] = snapshot
        logger.debug("snapshot: stored instance %r", instance_id)

    def restore(self, instance_id: Hashable) -> None:
        """Restore the forward state saved under `instance_id`.

        Raises
        ------
            SnapshotNotFound: if nothing was stored under `instance_id`.
        """
        with self._lock:
            try:
                snapshot = self._snapshots[instance_id]
            except KeyError:
                raise SnapshotNotFound(f"snapshot: no intermediates stored for instance {instance_id!r}")
        apply(self.graph, snapshot)
        logger.debug("snapshot: restored instance %r", instance_id)

    def discard(self, instance_id: Hashable) -> None:
        """Drop the snapshot saved under `instance_id`, if any."""
        with self._lock:
            self._snapshots.pop(instance_id, None)

    def __contains__(self, instance_id: object) -> bool:
        """Tell whether a snapshot exists for `instance_id`."""
        with self._lock:
            return instance_id in self._snapshots

    def __len__(self) -> int:
        """Return the number of stored snapshots."""
        with self._lock:
            return len(self._snapshots)

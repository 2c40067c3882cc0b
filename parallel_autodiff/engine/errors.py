"""Errors raised by the execution engine.

We classify errors following the phase in which they occur:

1. construction errors (`ConstructionError` and `UnknownOperationKind`) are raised
while building a graph from an architecture template and a binding table;

2. usage errors (`NodeNotFound`, `NotCompiled`, and `SnapshotNotFound`) are raised
when the caller references something that does not exist;

3. execution errors (`ExecutionError`) are raised when a primitive fails during
the forward pass, which has no partial-failure tolerance;

4. backward failures (`NodeBackwardError`) are collected per node and raised
together as a `BackwardError` exception group once the traversal ends;

5. protocol violations (`ProtocolViolation`) signal that a primitive or the
traversal broke the contract of the engine (e.g., a duplicate delivery).

Every error derives from `EngineError`, so callers can catch them all at once.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations


class EngineError(Exception):
    """Base class for all the engine errors."""


class ConstructionError(EngineError):
    """Raised when a graph cannot be constructed from its template."""


class UnknownOperationKind(ConstructionError):
    """Raised when no primitive is registered for an operation kind."""


class NodeNotFound(EngineError, KeyError):
    """Raised when looking up a node that was never constructed."""

    def __str__(self) -> str:
        """Avoid the quoting that KeyError applies to its argument."""
        return str(self.args[0]) if self.args else ""


class NotCompiled(EngineError):
    """Raised when running backward from a start node that was never compiled."""


class SnapshotNotFound(EngineError, KeyError):
    """Raised when restoring an instance id that was never stored."""

    def __str__(self) -> str:
        """Avoid the quoting that KeyError applies to its argument."""
        return str(self.args[0]) if self.args else ""


class ExecutionError(EngineError):
    """Raised when a primitive fails during the forward pass.

    Attributes
    ----------
        node_id: the fully qualified id of the failing node.
    """

    def __init__(self, message: str, node_id: str) -> None:
        super().__init__(message)
        self.node_id = node_id


class ProtocolViolation(EngineError):
    """Raised when a primitive or the traversal breaks the engine contract."""


class NodeBackwardError(EngineError):
    """Failure of a single node during the backward pass.

    The original exception is available as `__cause__`.

    Attributes
    ----------
        node_id: the fully qualified id of the failing node.
    """

    def __init__(self, message: str, node_id: str) -> None:
        super().__init__(message)
        self.node_id = node_id


class BackwardError(ExceptionGroup, EngineError):
    """Aggregate of the failures collected during a backward pass."""

    def derive(self, excs):
        """Preserve the type when splitting the group."""
        return BackwardError(self.message, excs)

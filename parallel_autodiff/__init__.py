"""The parallel_autodiff package implements a reverse-mode automatic differentiation engine.

Network architectures are described by templates whose operations are
repeated over layers and nested layers. The engine expands a template into a
computation graph, runs it forward, and accumulates gradients backward,
either sequentially or concurrently.
"""

# SPDX-License-Identifier: Apache-2.0

from .engine.errors import (
    BackwardError,
    ConstructionError,
    EngineError,
    ExecutionError,
    NodeBackwardError,
    NodeNotFound,
    NotCompiled,
    ProtocolViolation,
    SnapshotNotFound,
    UnknownOperationKind,
)
from .engine.frontend.architecture import Architecture, Coordinate, OperationSpec, Scope
from .engine.frontend.bindings import BindingTable, Category
from .engine.numpybackend.backward import BackwardResult, FailurePolicy
from .engine.numpybackend.primitive import OperatorLibrary, Primitive
from .runtime.engine import Engine

__all__ = [
    "Architecture",
    "BackwardError",
    "BackwardResult",
    "BindingTable",
    "Category",
    "ConstructionError",
    "Coordinate",
    "Engine",
    "EngineError",
    "ExecutionError",
    "FailurePolicy",
    "NodeBackwardError",
    "NodeNotFound",
    "NotCompiled",
    "OperationSpec",
    "OperatorLibrary",
    "Primitive",
    "ProtocolViolation",
    "Scope",
    "SnapshotNotFound",
    "UnknownOperationKind",
]

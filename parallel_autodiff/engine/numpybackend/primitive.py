"""Operation Primitives and Operator Libraries.

A primitive is the opaque unit of computation the engine runs at each node.
The engine never inspects its math: it only calls `forward` with the resolved
inputs, and `backward` with the gradient of the output, expecting one gradient
per input back (None for inputs that are not differentiable).

Primitives are stateful: they typically cache their inputs during forward
for use during backward. Therefore, the graph builder instantiates a fresh
primitive for every node, using the factory registered under the node's
operation kind in an `OperatorLibrary`. The lookup happens once, at build
time, and the instance is cached on the node.

For example:

    >>> library = primitive.OperatorLibrary()
    >>> @library.register("Double")
    ... class Double:
    ...     def forward(self, x):
    ...         return 2 * x
    ...     def backward(self, gradient):
    ...         return [2 * gradient]

The instance state of a primitive (its `__dict__`) is deep-copied by the
intermediate store, so primitives should keep their backward state in plain
attributes rather than in slots or external caches.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Any, Callable, Iterable, Protocol, Sequence, runtime_checkable

import numpy as np

from ..errors import UnknownOperationKind


@runtime_checkable
class Primitive(Protocol):
    """An operation implementation supplied by an operator library."""

    def forward(self, *inputs: Any) -> np.ndarray:
        """Compute the output given the inputs."""
        ...  # pragma: no cover

    def backward(self, gradient: np.ndarray) -> Sequence[np.ndarray | None]:
        """Compute one gradient per input given the output gradient."""
        ...  # pragma: no cover


PrimitiveFactory = Callable[[], Primitive]
"""Type alias for callables creating a fresh primitive instance."""


class OperatorLibrary:
    """Maps operation kind strings to primitive factories."""

    def __init__(self, factories: Iterable[tuple[str, PrimitiveFactory]] = ()) -> None:
        self._factories: dict[str, PrimitiveFactory] = {}
        for kind, factory in factories:
            self.add(kind, factory)

    def add(self, kind: str, factory: PrimitiveFactory) -> None:
        """Register a factory for the given kind, replacing any previous one."""
        self._factories[kind] = factory

    def register(self, kind: str) -> Callable[[PrimitiveFactory], PrimitiveFactory]:
        """Return a decorator registering a factory (usually a class)."""

        def decorator(factory: PrimitiveFactory) -> PrimitiveFactory:
            self.add(kind, factory)
            return factory

        return decorator

    def create(self, kind: str) -> Primitive:
        """Instantiate the primitive registered for `kind`.

        Raises
        ------
            UnknownOperationKind: if there is no factory for `kind` or the
                factory returns an object not implementing `Primitive`.
        """
        try:
            factory = self._factories[kind]
        except KeyError:
            raise UnknownOperationKind(f"primitive: no primitive registered for kind '{kind}'")
        instance = factory()
        if not isinstance(instance, Primitive):
            raise UnknownOperationKind(f"primitive: factory for kind '{kind}' returned {type(instance)}")
        return instance

    def kinds(self) -> list[str]:
        """Return the registered kinds, sorted."""
        return sorted(self._factories)

    def __contains__(self, kind: object) -> bool:
        """Tell whether a kind is registered."""
        return kind in self._factories

    def merge(self, other: OperatorLibrary) -> OperatorLibrary:
        """Return a new library with the factories of both, `other` winning."""
        return OperatorLibrary([*self._factories.items(), *other._factories.items()])

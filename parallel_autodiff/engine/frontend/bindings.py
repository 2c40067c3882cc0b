"""Parameter Binding Table.

The binding table maps symbolic names used by architecture templates to
provider functions parameterized by a `Coordinate`. Network-wrapper code
registers its parameters here before building the graph:

    >>> table = bindings.BindingTable()
    >>> table.add_weight("W", lambda c: weights[c.layer])
    >>> table.add_gradient("dW", lambda c: gradients[c.layer])
    >>> table.add_operation_finder(
    ...     "previous",
    ...     lambda c: inputs if c.layer == 0 else f"hidden_{c.layer - 1}_0",
    ... )

Bindings are categorized (see `Category`). Weights, biases, scalars and
intermediates provide input values. Gradients provide the storage that
receives input gradients during backward. Operation finders resolve to the
live output of another graph node: a finder may return a `GraphNode`, a
fully qualified node id string (looked up in the graph being built), or a
plain value, which is then used like a weight.

The `add_*` methods return the table itself, so registrations can be chained.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import ConstructionError
from .architecture import Coordinate

Resolver = Callable[[Coordinate], Any]
"""Type alias for functions providing a value given a coordinate."""


class Category(enum.Enum):
    """Category of a binding."""

    WEIGHT = "weight"
    BIAS = "bias"
    GRADIENT = "gradient"
    SCALAR = "scalar"
    INTERMEDIATE = "intermediate"
    OPERATION_FINDER = "operation_finder"


INPUT_CATEGORIES: tuple[Category, ...] = (
    Category.OPERATION_FINDER,
    Category.WEIGHT,
    Category.BIAS,
    Category.INTERMEDIATE,
    Category.SCALAR,
)
"""Categories that may provide a node input, in resolution order."""


@dataclass(frozen=True)
class Binding:
    """A named, coordinate-parameterized resolver."""

    name: str
    category: Category
    resolver: Resolver

    def resolve(self, coordinate: Coordinate) -> Any:
        """Invoke the resolver for the given coordinate."""
        return self.resolver(coordinate)


class BindingTable:
    """Registry of bindings indexed by category and name."""

    def __init__(self) -> None:
        self._bindings: dict[Category, dict[str, Binding]] = {category: {} for category in Category}

    def add(self, category: Category, name: str, resolver: Resolver) -> BindingTable:
        """Register a binding, refusing duplicates within a category."""
        table = self._bindings[category]
        if name in table:
            raise ConstructionError(f"bindings: duplicate {category.value} binding '{name}'")
        table[name] = Binding(name, category, resolver)
        return self

    def add_weight(self, name: str, resolver: Resolver) -> BindingTable:
        """Register a weight provider."""
        return self.add(Category.WEIGHT, name, resolver)

    def add_bias(self, name: str, resolver: Resolver) -> BindingTable:
        """Register a bias provider."""
        return self.add(Category.BIAS, name, resolver)

    def add_gradient(self, name: str, resolver: Resolver) -> BindingTable:
        """Register a gradient storage provider."""
        return self.add(Category.GRADIENT, name, resolver)

    def add_scalar(self, name: str, resolver: Resolver) -> BindingTable:
        """Register a scalar provider."""
        return self.add(Category.SCALAR, name, resolver)

    def add_intermediate(self, name: str, resolver: Resolver) -> BindingTable:
        """Register an intermediate storage provider."""
        return self.add(Category.INTERMEDIATE, name, resolver)

    def add_operation_finder(self, name: str, resolver: Resolver) -> BindingTable:
        """Register an operation finder."""
        return self.add(Category.OPERATION_FINDER, name, resolver)

    def get(self, category: Category, name: str) -> Binding:
        """Return the binding registered under category and name.

        Raises
        ------
            ConstructionError: if there is no such binding.
        """
        try:
            return self._bindings[category][name]
        except KeyError:
            raise ConstructionError(f"bindings: no {category.value} binding named '{name}'")

    def find(self, name: str, categories: tuple[Category, ...] = INPUT_CATEGORIES) -> Binding | None:
        """Return the first binding named `name` among `categories`, if any."""
        for category in categories:
            binding = self._bindings[category].get(name)
            if binding is not None:
                return binding
        return None

    def names(self, category: Category) -> list[str]:
        """Return the names registered in a category."""
        return list(self._bindings[category])

    def __contains__(self, name: object) -> bool:
        """Tell whether any category has a binding with the given name."""
        return any(name in table for table in self._bindings.values())

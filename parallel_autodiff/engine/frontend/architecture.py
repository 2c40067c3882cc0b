"""Architecture Templates.

An architecture template is the declarative description of a network: an
ordered list of operation specs, each naming the operation id, the kind of
primitive implementing it, the symbolic names of its inputs, and the scope
over which the spec is repeated when building the graph.

There are three scopes:

1. `Scope.GLOBAL`: the operation is instantiated once, at coordinate (0, 0);

2. `Scope.LAYER`: the operation is instantiated once per layer, at
coordinate (layer, 0);

3. `Scope.NESTED`: the operation is instantiated once per layer and per
nested layer, at coordinate (layer, nested_layer).

We group consecutive specs sharing the same scope into a `Block`. Expanding
a block means iterating over its coordinates and, for each coordinate, over
the specs in the block. Therefore, a layer block containing `a` and `b`
expands as `a@0, b@0, a@1, b@1, ...`, which is what recurrent unrolling needs.

Templates are usually written in JSON using the following layout:

    {
        "timeSteps": [
            {
                "startOperations": [ <spec>, ... ],
                "layers": [ { "operations": [ <spec>, ... ] }, ... ],
                "nestedLayers": [ { "operations": [ <spec>, ... ] }, ... ],
                "endOperations": [ <spec>, ... ]
            }
        ]
    }

where each spec looks like:

    {
        "id": "hidden",
        "type": "MatrixMultiply",
        "inputs": ["W", "x"],
        "setResultTo": "HiddenState",
        "gradientResultTo": ["dW", null]
    }

A flat layout, `{"operations": [<spec>, ...]}`, where every spec carries its
own `"scope"` key, is also accepted.
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from ..errors import ConstructionError

GATHER_SUFFIX = "[*]"
"""Suffix marking an input that gathers all the sibling outputs of an operation."""


class Scope(enum.Enum):
    """Repetition scope of an operation spec."""

    GLOBAL = "global"
    LAYER = "layer"
    NESTED = "nested"


@dataclass(frozen=True)
class Coordinate:
    """Position of a node within the layer/nested-layer expansion."""

    layer: int = 0
    nested_layer: int = 0

    def project(self, scope: Scope) -> Coordinate:
        """Return the coordinate that a node with the given scope has here."""
        if scope is Scope.GLOBAL:
            return Coordinate()
        if scope is Scope.LAYER:
            return Coordinate(self.layer, 0)
        return self

    def __str__(self) -> str:
        """Return the suffix used to build fully qualified node ids."""
        return f"_{self.layer}_{self.nested_layer}"


def qualified_id(op_id: str, coordinate: Coordinate) -> str:
    """Return the `<id>_<layer>_<nestedLayer>` string identifying a node."""
    return f"{op_id}{coordinate}"


def parse_input_name(name: str) -> tuple[str, bool]:
    """Split an input name into its symbolic name and the gather marker.

    The bracket suffix (e.g., `W[layer]`) is accepted for compatibility
    with existing templates and ignored during resolution.
    """
    name = name.strip()
    if name.endswith(GATHER_SUFFIX):
        return name[: -len(GATHER_SUFFIX)].strip(), True
    return name.split("[", 1)[0].strip(), False


@dataclass(frozen=True)
class OperationSpec:
    """Declarative description of an operation.

    Attributes
    ----------
        id: the operation id, unique within the template.
        type: the kind of primitive implementing the operation.
        inputs: the symbolic names of the inputs.
        scope: the repetition scope.
        set_result_to: optional intermediate receiving a copy of the output.
        gradient_result_to: optional gradient binding per input, receiving
            the input gradient computed during backward.
    """

    id: str
    type: str
    inputs: tuple[str, ...] = ()
    scope: Scope = Scope.GLOBAL
    set_result_to: str | None = None
    gradient_result_to: tuple[str | None, ...] | None = None

    def __post_init__(self) -> None:
        """Ensure that invariants are respected."""
        if not self.id:
            raise ConstructionError("architecture: operation without id")
        if not self.type:
            raise ConstructionError(f"architecture: operation '{self.id}' without type")
        if self.gradient_result_to is not None and len(self.gradient_result_to) > len(self.inputs):
            raise ConstructionError(
                f"architecture: operation '{self.id}' has more gradient destinations than inputs"
            )


@dataclass(frozen=True)
class Block:
    """Consecutive operation specs sharing the same scope."""

    scope: Scope
    operations: tuple[OperationSpec, ...]

    def coordinates(self, num_layers: int, num_nested_layers: int) -> Iterator[Coordinate]:
        """Yield the coordinates over which this block is repeated."""
        if self.scope is Scope.GLOBAL:
            yield Coordinate()
            return
        for layer in range(num_layers):
            if self.scope is Scope.LAYER:
                yield Coordinate(layer, 0)
                continue
            for nested_layer in range(num_nested_layers):
                yield Coordinate(layer, nested_layer)


@dataclass(frozen=True)
class Architecture:
    """An architecture template: an ordered sequence of blocks."""

    blocks: tuple[Block, ...]

    def __post_init__(self) -> None:
        """Ensure that operation ids are unique."""
        seen: set[str] = set()
        for spec in self.specs():
            if spec.id in seen:
                raise ConstructionError(f"architecture: duplicate operation id '{spec.id}'")
            seen.add(spec.id)

    def specs(self) -> Iterator[OperationSpec]:
        """Yield the operation specs in template order."""
        for block in self.blocks:
            yield from block.operations

    def scopes(self) -> dict[str, Scope]:
        """Map each operation id to its scope."""
        return {spec.id: block.scope for block in self.blocks for spec in block.operations}

    def expand(self, num_layers: int = 1, num_nested_layers: int = 1) -> Iterator[tuple[OperationSpec, Coordinate]]:
        """Yield every (spec, coordinate) pair in construction order."""
        if num_layers < 1 or num_nested_layers < 1:
            raise ConstructionError(
                f"architecture: invalid expansion counts: layers={num_layers}, nested={num_nested_layers}"
            )
        for block in self.blocks:
            for coordinate in block.coordinates(num_layers, num_nested_layers):
                for spec in block.operations:
                    yield spec, coordinate


def from_operations(*specs: OperationSpec) -> Architecture:
    """Build an architecture grouping consecutive specs by scope."""
    blocks: list[Block] = []
    current: list[OperationSpec] = []
    for spec in specs:
        if current and current[-1].scope is not spec.scope:
            blocks.append(Block(current[0].scope, tuple(current)))
            current = []
        current.append(spec)
    if current:
        blocks.append(Block(current[0].scope, tuple(current)))
    return Architecture(tuple(blocks))


def _parse_spec(obj: Mapping[str, Any], scope: Scope | None) -> OperationSpec:
    try:
        op_id = obj["id"]
        op_type = obj["type"]
    except KeyError as exc:
        raise ConstructionError(f"architecture: operation is missing the {exc} key: {dict(obj)}") from exc
    if scope is None:
        try:
            scope = Scope(str(obj.get("scope", "global")).lower())
        except ValueError as exc:
            raise ConstructionError(f"architecture: operation '{op_id}' has invalid scope") from exc
    gradients = obj.get("gradientResultTo")
    return OperationSpec(
        id=str(op_id),
        type=str(op_type),
        inputs=tuple(str(x) for x in obj.get("inputs", ())),
        scope=scope,
        set_result_to=obj.get("setResultTo"),
        gradient_result_to=tuple(gradients) if gradients is not None else None,
    )


def _parse_groups(groups: Sequence[Mapping[str, Any]], scope: Scope) -> list[OperationSpec]:
    return [_parse_spec(op, scope) for group in groups for op in group.get("operations", ())]


def from_dict(obj: Mapping[str, Any]) -> Architecture:
    """Build an architecture from its decoded JSON representation."""
    if "operations" in obj:
        return from_operations(*(_parse_spec(op, None) for op in obj["operations"]))

    if "timeSteps" not in obj:
        raise ConstructionError("architecture: expected either 'timeSteps' or 'operations'")

    specs: list[OperationSpec] = []
    for step in obj["timeSteps"]:
        specs.extend(_parse_spec(op, Scope.GLOBAL) for op in step.get("startOperations", ()))
        specs.extend(_parse_groups(step.get("layers", ()), Scope.LAYER))
        specs.extend(_parse_groups(step.get("nestedLayers", ()), Scope.NESTED))
        specs.extend(_parse_spec(op, Scope.GLOBAL) for op in step.get("endOperations", ()))
    return from_operations(*specs)


def from_json(text: str) -> Architecture:
    """Build an architecture from a JSON string."""
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConstructionError(f"architecture: invalid JSON: {exc}") from exc
    return from_dict(obj)


def load(path: str | Path) -> Architecture:
    """Build an architecture from a JSON file."""
    return from_json(Path(path).read_text())

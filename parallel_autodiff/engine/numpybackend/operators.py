"""Reference NumPy Primitives.

This module provides a small operator library implementing common
operations with NumPy. Network-wrapper code usually supplies its own
primitives; these are enough to express feed-forward and recurrent cells
and to exercise the engine.

Each primitive caches what it needs for `backward` in instance attributes,
so the intermediate store can snapshot and restore it.

Use `library()` to obtain an `OperatorLibrary` preloaded with all of them:

    >>> lib = operators.library()
    >>> sorted(lib.kinds())[:3]
    ['Add', 'HadamardProduct', 'Identity']
"""

# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Callable, TypeAlias

import numpy as np

from .primitive import OperatorLibrary

_UnaryFunc: TypeAlias = Callable[[np.ndarray], np.ndarray]


def unbroadcast(gradient: np.ndarray, shape: tuple[int, ...]) -> np.ndarray:
    """Sum `gradient` over the axes NumPy broadcasting added to `shape`."""
    gradient = np.asarray(gradient)
    while gradient.ndim > len(shape):
        gradient = gradient.sum(axis=0)
    for axis, size in enumerate(shape):
        if size == 1 and gradient.shape[axis] != 1:
            gradient = gradient.sum(axis=axis, keepdims=True)
    return gradient


class Identity:
    """Return the input unchanged."""

    def forward(self, x):
        return np.array(x, dtype=float)

    def backward(self, gradient):
        return [gradient]


class Add:
    """Element-wise addition with broadcasting (e.g., a bias)."""

    def forward(self, a, b):
        self.shapes = (np.shape(a), np.shape(b))
        return np.add(a, b)

    def backward(self, gradient):
        return [unbroadcast(gradient, self.shapes[0]), unbroadcast(gradient, self.shapes[1])]


class Subtract:
    """Element-wise subtraction with broadcasting."""

    def forward(self, a, b):
        self.shapes = (np.shape(a), np.shape(b))
        return np.subtract(a, b)

    def backward(self, gradient):
        return [unbroadcast(gradient, self.shapes[0]), unbroadcast(-gradient, self.shapes[1])]


class HadamardProduct:
    """Element-wise multiplication with broadcasting."""

    def forward(self, a, b):
        self.a = np.asarray(a, dtype=float)
        self.b = np.asarray(b, dtype=float)
        return self.a * self.b

    def backward(self, gradient):
        return [unbroadcast(gradient * self.b, self.a.shape), unbroadcast(gradient * self.a, self.b.shape)]


class MatrixMultiply:
    """Matrix product of two 2-D arrays."""

    def forward(self, a, b):
        self.a = np.asarray(a, dtype=float)
        self.b = np.asarray(b, dtype=float)
        return self.a @ self.b

    def backward(self, gradient):
        return [gradient @ self.b.T, self.a.T @ gradient]


class Scale:
    """Multiply an array by a scalar; the scalar is not differentiated."""

    def forward(self, x, scalar):
        self.scalar = float(scalar)
        return np.asarray(x, dtype=float) * self.scalar

    def backward(self, gradient):
        return [gradient * self.scalar, None]


class Sum:
    """Sum the aggregate produced by a gather input along its leading axis."""

    def forward(self, stacked):
        self.shape = np.shape(stacked)
        return np.sum(stacked, axis=0)

    def backward(self, gradient):
        return [np.broadcast_to(gradient, self.shape).copy()]


class Mean:
    """Average the aggregate produced by a gather input along its leading axis."""

    def forward(self, stacked):
        self.shape = np.shape(stacked)
        return np.mean(stacked, axis=0)

    def backward(self, gradient):
        return [np.broadcast_to(gradient / self.shape[0], self.shape).copy()]


class _Elementwise:
    """Base class for element-wise activations."""

    function: _UnaryFunc
    derivative: Callable[[np.ndarray, np.ndarray], np.ndarray]

    def forward(self, x):
        self.x = np.asarray(x, dtype=float)
        self.y = type(self).function(self.x)
        return self.y

    def backward(self, gradient):
        return [gradient * type(self).derivative(self.x, self.y)]


class Tanh(_Elementwise):
    """Hyperbolic tangent."""

    function = staticmethod(np.tanh)
    derivative = staticmethod(lambda x, y: 1.0 - y * y)


class Sigmoid(_Elementwise):
    """Logistic sigmoid."""

    function = staticmethod(lambda x: 1.0 / (1.0 + np.exp(-x)))
    derivative = staticmethod(lambda x, y: y * (1.0 - y))


class LeakyReLU(_Elementwise):
    """Leaky rectified linear unit with slope 0.01 for negative inputs."""

    function = staticmethod(lambda x: np.where(x > 0, x, 0.01 * x))
    derivative = staticmethod(lambda x, y: np.where(x > 0, 1.0, 0.01))


class MeanSquaredErrorLoss:
    """Mean squared error between a prediction and a target."""

    def forward(self, prediction, target):
        self.diff = np.asarray(prediction, dtype=float) - np.asarray(target, dtype=float)
        return np.asarray(np.mean(self.diff**2))

    def backward(self, gradient):
        scale = 2.0 * np.asarray(gradient) / self.diff.size
        return [scale * self.diff, -scale * self.diff]


_primitives: dict[str, type] = {
    "Identity": Identity,
    "Add": Add,
    "Subtract": Subtract,
    "HadamardProduct": HadamardProduct,
    "MatrixMultiply": MatrixMultiply,
    "Scale": Scale,
    "Sum": Sum,
    "Mean": Mean,
    "Tanh": Tanh,
    "Sigmoid": Sigmoid,
    "LeakyReLU": LeakyReLU,
    "MeanSquaredErrorLoss": MeanSquaredErrorLoss,
}
"""Maps an operation kind to the class implementing it.

Add entries to this table to support more operations."""


def library() -> OperatorLibrary:
    """Return an operator library containing the reference primitives."""
    return OperatorLibrary(_primitives.items())

"""Tests for the parallel_autodiff.engine.numpybackend.operators module."""

# SPDX-License-Identifier: Apache-2.0

import numpy as np
import pytest
from scipy.optimize import approx_fprime

from parallel_autodiff.engine.numpybackend import operators


def test_unbroadcast():
    """Test that broadcast axes are summed away."""
    gradient = np.ones((4, 2, 3))
    assert operators.unbroadcast(gradient, (2, 3)).shape == (2, 3)
    assert np.all(operators.unbroadcast(gradient, (2, 3)) == 4.0)
    assert operators.unbroadcast(gradient, (1, 3)).shape == (1, 3)
    assert np.all(operators.unbroadcast(gradient, (1, 3)) == 8.0)
    assert operators.unbroadcast(np.ones((2, 3)), ()).shape == ()


def test_add_with_bias():
    """Test that the bias gradient is reduced to the bias shape."""
    add = operators.Add()
    x = np.ones((3, 2))
    b = np.array([1.0, 2.0])
    assert np.array_equal(add.forward(x, b), x + b)
    dx, db = add.backward(np.full((3, 2), 0.5))
    assert dx.shape == (3, 2)
    assert np.array_equal(db, np.array([1.5, 1.5]))


def test_subtract_and_hadamard():
    """Test the gradients of subtraction and element-wise product."""
    sub = operators.Subtract()
    sub.forward(np.ones(2), np.zeros(2))
    da, db = sub.backward(np.array([1.0, 2.0]))
    assert np.array_equal(da, np.array([1.0, 2.0]))
    assert np.array_equal(db, np.array([-1.0, -2.0]))

    prod = operators.HadamardProduct()
    prod.forward(np.array([2.0, 3.0]), np.array([5.0, 7.0]))
    da, db = prod.backward(np.ones(2))
    assert np.array_equal(da, np.array([5.0, 7.0]))
    assert np.array_equal(db, np.array([2.0, 3.0]))


def test_matrix_multiply():
    """Test the matrix product gradients against finite differences."""
    rng = np.random.default_rng(1)
    a = rng.normal(size=(2, 3))
    b = rng.normal(size=(3, 1))
    upstream = rng.normal(size=(2, 1))
    mm = operators.MatrixMultiply()
    mm.forward(a, b)
    da, db = mm.backward(upstream)

    numeric_a = approx_fprime(a.ravel(), lambda f: float(np.sum((f.reshape(a.shape) @ b) * upstream)), 1e-6)
    numeric_b = approx_fprime(b.ravel(), lambda f: float(np.sum((a @ f.reshape(b.shape)) * upstream)), 1e-6)
    assert np.allclose(da.ravel(), numeric_a, atol=1e-5)
    assert np.allclose(db.ravel(), numeric_b, atol=1e-5)


@pytest.mark.parametrize("kind", [operators.Tanh, operators.Sigmoid, operators.LeakyReLU])
def test_activations(kind):
    """Test the activation derivatives against finite differences."""
    x = np.array([-1.5, -0.2, 0.3, 2.0])
    primitive = kind()
    primitive.forward(x)
    (dx,) = primitive.backward(np.ones_like(x))
    numeric = approx_fprime(x, lambda f: float(np.sum(kind().forward(f))), 1e-7)
    assert np.allclose(dx, numeric, atol=1e-5)


def test_reductions():
    """Test that Sum and Mean spread the gradient over the leading axis."""
    stacked = np.arange(6.0).reshape(3, 2)
    total = operators.Sum()
    assert np.array_equal(total.forward(stacked), np.array([6.0, 9.0]))
    (gradient,) = total.backward(np.array([1.0, 2.0]))
    assert np.array_equal(gradient, np.tile([1.0, 2.0], (3, 1)))

    mean = operators.Mean()
    assert np.array_equal(mean.forward(stacked), np.array([2.0, 3.0]))
    (gradient,) = mean.backward(np.array([3.0, 6.0]))
    assert np.array_equal(gradient, np.tile([1.0, 2.0], (3, 1)))


def test_scale_and_loss():
    """Test Scale and the mean squared error loss."""
    scale = operators.Scale()
    assert np.array_equal(scale.forward(np.array([1.0, 2.0]), 3), np.array([3.0, 6.0]))
    dx, dk = scale.backward(np.ones(2))
    assert np.array_equal(dx, np.array([3.0, 3.0]))
    assert dk is None

    loss = operators.MeanSquaredErrorLoss()
    assert float(loss.forward(np.array([1.0, 3.0]), np.array([0.0, 1.0]))) == 2.5
    dp, dt = loss.backward(np.asarray(1.0))
    assert np.array_equal(dp, np.array([1.0, 2.0]))
    assert np.array_equal(dt, -dp)


def test_library():
    """Test that the library provides fresh instances of every primitive."""
    library = operators.library()
    assert "MatrixMultiply" in library
    assert "Softmax" not in library
    first = library.create("Tanh")
    second = library.create("Tanh")
    assert isinstance(first, operators.Tanh)
    assert first is not second

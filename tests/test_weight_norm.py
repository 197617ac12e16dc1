"""Tests for the WeightNorm wrapper layer."""

import os
import sys
import unittest

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from weightnorm import dispatch
from weightnorm.dispatch import LayerStore
from weightnorm.errors import (
    AlreadyConfiguredError,
    DegenerateUnitError,
    NotConfiguredError,
    NotInitializedError,
    ShapeMismatchError,
)
from weightnorm.gradient_check import gradient_check, numerical_gradient, relative_error
from weightnorm.layers import ActivationLayer, Convolution, Linear
from weightnorm.weight_norm import WeightNorm


def wrapped_linear(n_in=4, n_out=3, bias=True):
    wn = WeightNorm(Linear(n_in, n_out, bias=bias))
    wn.reset()
    return wn


class TestConfiguration(unittest.TestCase):

    def test_reset_without_layer_raises(self):
        with self.assertRaises(NotConfiguredError):
            WeightNorm().reset()

    def test_calls_without_layer_raise(self):
        wn = WeightNorm()
        x = np.ones((1, 3))
        with self.assertRaises(NotConfiguredError):
            wn.forward(x)
        with self.assertRaises(NotConfiguredError):
            wn.backward(x, x)
        with self.assertRaises(NotConfiguredError):
            wn.gradient(x, x)

    def test_calls_before_reset_raise(self):
        wn = WeightNorm(Linear(3, 2))
        x = np.ones((1, 3))
        with self.assertRaises(NotInitializedError):
            wn.forward(x)
        with self.assertRaises(NotInitializedError):
            wn.backward(x, np.ones((1, 2)))
        with self.assertRaises(NotInitializedError):
            wn.gradient(x, np.ones((1, 2)))

    def test_second_add_rejected(self):
        first = Linear(3, 2)
        wn = WeightNorm(first)
        with self.assertRaises(AlreadyConfiguredError):
            wn.add(Linear(3, 2))
        self.assertIs(wn.wrapped, first)

    def test_add_layer_class_with_arguments(self):
        wn = WeightNorm()
        layer = wn.add(Linear, 5, 2, bias=False)
        self.assertIsInstance(layer, Linear)
        self.assertIs(wn.wrapped, layer)
        self.assertEqual(layer.in_features, 5)

    def test_cannot_wrap_weight_norm(self):
        with self.assertRaises(ValueError):
            WeightNorm(WeightNorm(Linear(2, 2)))

    def test_weightless_layer_cannot_be_normalized(self):
        wn = WeightNorm(ActivationLayer("tanh"))
        with self.assertRaises(ShapeMismatchError):
            wn.reset()

    def test_model_exposure(self):
        layer = Linear(3, 2)
        self.assertEqual(WeightNorm(layer).model(), [layer])
        self.assertEqual(WeightNorm(Linear(3, 2), model_exposed=False).model(), [])
        self.assertEqual(WeightNorm().model(), [])

    def test_release(self):
        wn = wrapped_linear()
        inner = wn.wrapped
        wn.release()
        self.assertIsNone(wn.wrapped)
        self.assertFalse(inner.initialized)
        self.assertFalse(wn.initialized)
        wn.release()
        with self.assertRaises(NotConfiguredError):
            wn.forward(np.ones((1, 4)))
        # the slot is empty again, so a new layer may be added
        wn.add(Linear(4, 3))
        # and the old one is free to join another container
        LayerStore([inner])

    def test_release_inside_store_keeps_ownership(self):
        store = LayerStore()
        wn = store.add(WeightNorm(Linear(3, 2)))
        store.reset()
        wn.release()
        with self.assertRaises(ValueError):
            LayerStore([wn])
        self.assertIs(store[0], wn)


class TestReset(unittest.TestCase):

    def setUp(self):
        np.random.seed(10)

    def test_v_copies_weights_and_g_is_row_norm(self):
        inner = Linear(4, 3)
        inner.reset()
        inner.b[...] = [0.1, 0.2, 0.3]
        W = inner.W.copy()
        b = inner.b.copy()

        wn = WeightNorm(inner)
        wn.reset()

        np.testing.assert_array_equal(wn.v, W)
        np.testing.assert_allclose(wn.g, np.linalg.norm(W, axis=1))
        np.testing.assert_array_equal(wn.b, b)

    def test_reset_allocates_unreset_layer(self):
        wn = WeightNorm(Linear(4, 3))
        wn.reset()
        np.testing.assert_array_equal(wn.v, wn.wrapped.W)

    def test_layout_and_sizes(self):
        wn = wrapped_linear(4, 3)
        self.assertEqual(wn.wrapped_weight_size, 15)
        self.assertEqual(wn.weight_size(), 3 + 12 + 3)
        self.assertEqual(wn.weights.shape, (18,))
        self.assertEqual(wn.g.shape, (3,))
        self.assertEqual(wn.v.shape, (3, 4))
        self.assertEqual(wn.b.shape, (3,))
        self.assertEqual(wn.output_units(), 3)

    def test_layout_without_bias(self):
        wn = wrapped_linear(4, 3, bias=False)
        self.assertEqual(wn.weight_size(), wn.g.size + wn.v.size)
        self.assertEqual(wn.b.size, 0)

    def test_g_and_v_are_views(self):
        wn = wrapped_linear()
        wn.weights[:3] = [1.0, 2.0, 3.0]
        np.testing.assert_array_equal(wn.g, [1.0, 2.0, 3.0])
        wn.v[0, 0] = 7.0
        self.assertEqual(wn.weights[3], 7.0)

    def test_wrapping_preserves_outputs(self):
        inner = Linear(4, 3)
        inner.reset()
        x = np.random.randn(5, 4)
        before = inner.forward(x).copy()
        wn = WeightNorm(inner)
        wn.reset()
        np.testing.assert_allclose(wn.forward(x), before, atol=1e-12)

    def test_second_reset_keeps_g_and_v(self):
        wn = wrapped_linear(4, 3)
        x = np.random.randn(2, 4)
        wn.forward(x)
        # updated since the last forward, so the wrapped weights are stale
        wn.g[...] = [5.0, 7.0, 2.0]
        wn.v[1] *= -3.0
        params = wn.weights.copy()
        expected_weights = wn.effective_weights()

        wn.reset()

        np.testing.assert_array_equal(wn.weights, params)
        np.testing.assert_array_equal(wn.g, [5.0, 7.0, 2.0])
        np.testing.assert_allclose(wn.wrapped.weights, expected_weights)
        np.testing.assert_allclose(
            wn.forward(x), x @ expected_weights[:12].reshape(3, 4).T + wn.b
        )

    def test_reset_after_release_derives_again(self):
        wn = wrapped_linear(4, 3)
        wn.g[...] = 9.0
        wn.release()
        inner = Linear(4, 3)
        inner.reset()
        wn.add(inner)
        wn.reset()
        np.testing.assert_allclose(wn.g, np.linalg.norm(inner.W, axis=1))

    def test_convolution_units_are_filters(self):
        conv = Convolution(2, 4, kernel_size=3)
        wn = WeightNorm(conv)
        wn.reset()
        self.assertEqual(wn.v.shape, (4, 18))
        np.testing.assert_allclose(wn.g, np.linalg.norm(conv.W.reshape(4, -1), axis=1))


class TestForward(unittest.TestCase):

    def setUp(self):
        np.random.seed(11)
        self.wn = wrapped_linear(4, 3)
        self.wn.g[...] = np.random.rand(3) + 0.5
        self.wn.v[...] = np.random.randn(3, 4)
        self.wn.b[...] = np.random.randn(3)

    def test_assigned_weights_are_g_times_unit_v(self):
        self.wn.forward(np.random.randn(2, 4))
        g, v = self.wn.g, self.wn.v
        expected = g[:, None] * v / np.linalg.norm(v, axis=1, keepdims=True)
        np.testing.assert_allclose(self.wn.wrapped.W, expected)
        np.testing.assert_array_equal(self.wn.wrapped.b, self.wn.b)

    def test_wrapped_row_norms_equal_g(self):
        self.wn.forward(np.ones((1, 4)))
        np.testing.assert_allclose(np.linalg.norm(self.wn.wrapped.W, axis=1), self.wn.g)

    def test_output_matches_effective_linear_map(self):
        x = np.random.randn(6, 4)
        W_eff = self.wn.effective_weights()[:12].reshape(3, 4)
        np.testing.assert_allclose(self.wn.forward(x), x @ W_eff.T + self.wn.b)

    def test_deterministic(self):
        x = np.random.randn(3, 4)
        first = self.wn.forward(x).copy()
        np.testing.assert_array_equal(self.wn.forward(x), first)

    def test_external_update_is_picked_up(self):
        wn = wrapped_linear(4, 3, bias=False)
        x = np.random.randn(2, 4)
        before = wn.forward(x).copy()
        wn.weights[:3] *= 2.0
        np.testing.assert_allclose(wn.forward(x), 2.0 * before)

    def test_scaling_v_does_not_change_output(self):
        x = np.random.randn(2, 4)
        before = self.wn.forward(x).copy()
        self.wn.v[...] *= 5.0
        np.testing.assert_allclose(self.wn.forward(x), before)

    def test_output_parameter_recorded(self):
        y = self.wn.forward(np.ones((1, 4)))
        self.assertIs(dispatch.get_output_parameter(self.wn), y)

    def test_output_is_independent_of_wrapped_record(self):
        y = self.wn.forward(np.ones((1, 4)))
        self.assertIsNot(y, self.wn.wrapped.output_parameter)
        before = self.wn.wrapped.output_parameter.copy()
        y[...] = 0.0
        np.testing.assert_array_equal(self.wn.wrapped.output_parameter, before)

    def test_input_shape_mismatch_propagates(self):
        with self.assertRaises(ShapeMismatchError):
            self.wn.forward(np.ones((2, 5)))


class TestBackward(unittest.TestCase):

    def test_delegates_to_wrapped_layer(self):
        np.random.seed(12)
        wn = wrapped_linear(4, 3)
        wn.g[...] = [0.5, 1.5, 2.0]
        x = np.random.randn(5, 4)
        gy = np.random.randn(5, 3)
        wn.forward(x)
        dx = wn.backward(x, gy)
        np.testing.assert_allclose(dx, gy @ wn.wrapped.W)
        self.assertIs(dispatch.get_delta(wn), dx)
        self.assertIsNot(dx, wn.wrapped.delta)
        np.testing.assert_array_equal(dx, wn.wrapped.delta)


class TestGradient(unittest.TestCase):

    def setUp(self):
        np.random.seed(13)

    def test_matches_closed_form(self):
        wn = wrapped_linear(4, 3)
        wn.g[...] = [0.7, 1.3, 2.1]
        x = np.random.randn(5, 4)
        err = np.random.randn(5, 3)
        wn.forward(x)
        grad = wn.gradient(x, err)

        g, v = wn.g, wn.v
        norm = np.linalg.norm(v, axis=1)
        dW = err.T @ x
        dg = np.array([dW[i] @ v[i] / norm[i] for i in range(3)])
        dv = np.array([g[i] / norm[i] * (dW[i] - dg[i] * v[i] / norm[i]) for i in range(3)])

        np.testing.assert_allclose(grad[:3], dg)
        np.testing.assert_allclose(grad[3:15].reshape(3, 4), dv)
        np.testing.assert_allclose(grad[15:], err.sum(axis=0))
        self.assertIs(wn.grad, grad)

    def test_dv_is_orthogonal_to_v(self):
        wn = wrapped_linear(6, 4)
        x = np.random.randn(3, 6)
        err = np.random.randn(3, 4)
        wn.forward(x)
        grad = wn.gradient(x, err)
        dv = grad[4:28].reshape(4, 6)
        np.testing.assert_allclose(np.sum(dv * wn.v, axis=1), 0.0, atol=1e-12)

    def test_finite_differences_linear(self):
        wn = wrapped_linear(5, 3)
        wn.g[...] = np.random.rand(3) + 0.5
        wn.b[...] = np.random.randn(3)
        result = gradient_check(wn, np.random.randn(4, 5))
        self.assertTrue(result["passed"], f"Gradient check failed: {result}")

    def test_finite_differences_convolution(self):
        wn = WeightNorm(Convolution(2, 3, kernel_size=2, padding=1))
        wn.reset()
        result = gradient_check(wn, np.random.randn(2, 2, 3, 3))
        self.assertTrue(result["passed"], f"Gradient check failed: {result}")

    def test_single_g_perturbation(self):
        wn = wrapped_linear(4, 2, bias=False)
        x = np.random.randn(3, 4)
        G = np.random.randn(3, 2)
        wn.forward(x)
        dg = wn.gradient(x, G)[:2]

        def loss(w):
            dispatch.set_weights(wn, w)
            return float(np.sum(wn.forward(x) * G))

        numeric = numerical_gradient(loss, wn.weights.copy())
        self.assertLess(relative_error(dg, numeric[:2]), 1e-4)


class TestDegenerateUnits(unittest.TestCase):

    def setUp(self):
        np.random.seed(14)
        self.wn = wrapped_linear(4, 3)
        self.wn.v[1] = 0.0

    def test_forward_raises(self):
        with self.assertRaises(DegenerateUnitError) as ctx:
            self.wn.forward(np.ones((2, 4)))
        self.assertEqual(ctx.exception.units, [1])

    def test_wrapped_weights_untouched_on_failure(self):
        before = self.wn.wrapped.weights.copy()
        with self.assertRaises(DegenerateUnitError):
            self.wn.forward(np.ones((2, 4)))
        np.testing.assert_array_equal(self.wn.wrapped.weights, before)
        self.assertTrue(np.all(np.isfinite(self.wn.wrapped.weights)))

    def test_gradient_raises(self):
        with self.assertRaises(DegenerateUnitError):
            self.wn.gradient(np.ones((2, 4)), np.ones((2, 3)))

    def test_is_arithmetic_error(self):
        with self.assertRaises(ArithmeticError):
            self.wn.effective_weights()


class TestExtremeDirections(unittest.TestCase):

    def make(self, scale):
        wn = wrapped_linear(2, 1, bias=False)
        wn.g[...] = [2.0]
        wn.v[...] = [[scale, scale]]
        return wn

    def test_huge_v_does_not_overflow(self):
        wn = self.make(1e200)
        np.testing.assert_allclose(wn.effective_weights(), [np.sqrt(2.0)] * 2)
        np.testing.assert_allclose(wn.forward(np.ones((1, 2))), [[2.0 * np.sqrt(2.0)]])

    def test_tiny_v_is_not_degenerate(self):
        wn = self.make(1e-200)
        np.testing.assert_allclose(wn.effective_weights(), [np.sqrt(2.0)] * 2)
        grad = wn.gradient(np.ones((1, 2)), np.ones((1, 1)))
        self.assertTrue(np.all(np.isfinite(grad)))

    def test_reset_of_huge_layer(self):
        inner = Linear(2, 1, bias=False)
        inner.reset()
        inner.W[...] = [[3e200, 4e200]]
        wn = WeightNorm(inner)
        wn.reset()
        np.testing.assert_allclose(wn.g, [5e200])


class TestShapeMismatch(unittest.TestCase):

    def test_assigning_wrong_size_rejected(self):
        wn = wrapped_linear(4, 3)
        with self.assertRaises(ShapeMismatchError):
            dispatch.set_weights(wn, np.ones(wn.weight_size() - 1))
        with self.assertRaises(ShapeMismatchError):
            dispatch.set_weights(wn.wrapped, np.ones(wn.wrapped_weight_size + 3))

    def test_is_value_error(self):
        wn = wrapped_linear(4, 3)
        with self.assertRaises(ValueError):
            wn.set_weights(np.ones(2))


class TestInsideStore(unittest.TestCase):

    def test_dispatch_over_wrapper(self):
        store = LayerStore()
        wn = store.add(WeightNorm, Linear(4, 2))
        store.reset()
        self.assertEqual(dispatch.weight_size(wn), 2 + 8 + 2)
        self.assertEqual(store.weight_size(), 12)


if __name__ == "__main__":
    unittest.main()

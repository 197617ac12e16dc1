"""
Finite-difference verification of a layer's backward() and gradient().

Both checks use the scalar loss L = sum(forward(x) * G) for a fixed random
G, so dL/dy = G and central differences

    dL/dp ~ (L(p + h) - L(p - h)) / (2h)

can be compared against the analytical gradients.
"""

from typing import Callable, Dict, Optional

import numpy as np

from .dispatch import set_weights


def relative_error(analytical: np.ndarray, numerical: np.ndarray) -> float:
    """||a - n|| / (||a|| + ||n||), 0 when both are zero."""
    analytical = np.asarray(analytical, dtype=np.float64)
    numerical = np.asarray(numerical, dtype=np.float64)
    denom = np.linalg.norm(analytical) + np.linalg.norm(numerical)
    if denom == 0.0:
        return 0.0
    return float(np.linalg.norm(analytical - numerical) / denom)


def numerical_gradient(f: Callable[[np.ndarray], float], p: np.ndarray, h: float = 1e-5) -> np.ndarray:
    """Central-difference gradient of a scalar function at p (p is restored)."""
    grad = np.zeros_like(p, dtype=np.float64)
    it = np.nditer(p, flags=["multi_index"])
    while not it.finished:
        idx = it.multi_index
        original = p[idx]
        p[idx] = original + h
        f_plus = f(p)
        p[idx] = original - h
        f_minus = f(p)
        p[idx] = original
        grad[idx] = (f_plus - f_minus) / (2.0 * h)
        it.iternext()
    return grad


def gradient_check(
    layer,
    x: np.ndarray,
    h: float = 1e-5,
    tol: float = 1e-5,
    grad_output: Optional[np.ndarray] = None,
) -> Dict[str, object]:
    """
    Verify a reset layer's analytical gradients against central differences.

    Checks dL/dx from backward() and, for layers with parameters, dL/dweights
    from gradient(). Parameters are perturbed through ``set_weights`` and
    restored afterwards.

    Args:
        layer: Any reset layer
        x: Input to check at
        h: Finite-difference step
        tol: Maximum relative error for the check to pass
        grad_output: Upstream gradient G; random normal if None

    Returns:
        Dict with "dx" and (when applicable) "dweights" relative errors, and "passed"
    """
    x = np.array(x, dtype=np.float64)
    y = layer.forward(x)
    if grad_output is None:
        grad_output = np.random.randn(*y.shape)

    def loss_at_input(x_probe: np.ndarray) -> float:
        return float(np.sum(layer.forward(x_probe) * grad_output))

    layer.forward(x)
    dx_analytical = layer.backward(x, grad_output)
    dx_numerical = numerical_gradient(loss_at_input, x.copy(), h)

    results: Dict[str, object] = {"dx": relative_error(dx_analytical, dx_numerical)}

    if layer.weight_size() > 0:
        original = layer.weights.copy()
        layer.forward(x)
        dw_analytical = layer.gradient(x, grad_output).copy()

        def loss_at_weights(w_probe: np.ndarray) -> float:
            set_weights(layer, w_probe)
            return float(np.sum(layer.forward(x) * grad_output))

        dw_numerical = numerical_gradient(loss_at_weights, original.copy(), h)
        set_weights(layer, original)
        layer.forward(x)
        results["dweights"] = relative_error(dw_analytical, dw_numerical)

    results["passed"] = all(v < tol for v in results.values())
    return results

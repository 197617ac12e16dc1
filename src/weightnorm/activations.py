"""
Activation Functions -- element-wise nonlinearities used by ActivationLayer.

Each function is a stateless pair: ``fn(x)`` computes f(x) and ``deriv(x)``
computes f'(x) at the same input. Layers own any caching; the functions
never do, so one instance can be shared between layers.
"""

from abc import ABC, abstractmethod
from typing import Dict, Type

import numpy as np


class ActivationFunction(ABC):
    """Element-wise function with its first derivative."""

    name = "activation"

    @abstractmethod
    def fn(self, x: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def deriv(self, x: np.ndarray) -> np.ndarray:
        pass

    def __call__(self, x: np.ndarray) -> np.ndarray:
        return self.fn(x)


def _stable_logistic(x: np.ndarray) -> np.ndarray:
    """
    Logistic sigmoid without overflow.

    For x >= 0: 1 / (1 + exp(-x))
    For x < 0:  exp(x) / (1 + exp(x))
    """
    x = np.asarray(x, dtype=np.float64)
    out = np.empty_like(x)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    ex = np.exp(x[~pos])
    out[~pos] = ex / (1.0 + ex)
    return out


class Identity(ActivationFunction):
    name = "identity"

    def fn(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(x, dtype=np.float64).copy()

    def deriv(self, x: np.ndarray) -> np.ndarray:
        return np.ones_like(np.asarray(x, dtype=np.float64))


class Logistic(ActivationFunction):
    """sigma(x) = 1 / (1 + exp(-x)), sigma'(x) = sigma(x) (1 - sigma(x))."""

    name = "logistic"

    def fn(self, x: np.ndarray) -> np.ndarray:
        return _stable_logistic(x)

    def deriv(self, x: np.ndarray) -> np.ndarray:
        s = _stable_logistic(x)
        return s * (1.0 - s)


class Tanh(ActivationFunction):
    name = "tanh"

    def fn(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(np.asarray(x, dtype=np.float64))

    def deriv(self, x: np.ndarray) -> np.ndarray:
        t = np.tanh(np.asarray(x, dtype=np.float64))
        return 1.0 - t ** 2


class ReLU(ActivationFunction):
    """max(0, x). The derivative at exactly 0 is taken as 0."""

    name = "relu"

    def fn(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(0.0, np.asarray(x, dtype=np.float64))

    def deriv(self, x: np.ndarray) -> np.ndarray:
        return (np.asarray(x, dtype=np.float64) > 0).astype(np.float64)


class InverseQuadratic(ActivationFunction):
    """
    Inverse quadratic: f(x) = 1 / (1 + x^2).

    f'(x) = -2x / (1 + x^2)^2. Bounded in (0, 1], peaks at x = 0 and is
    smooth everywhere, which makes it handy for finite-difference checks.
    """

    name = "inverse_quadratic"

    def fn(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        return 1.0 / (1.0 + x ** 2)

    def deriv(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        return -2.0 * x / (1.0 + x ** 2) ** 2


ACTIVATIONS: Dict[str, Type[ActivationFunction]] = {
    cls.name: cls for cls in (Identity, Logistic, Tanh, ReLU, InverseQuadratic)
}


def get_activation(name: str) -> ActivationFunction:
    """Look up an activation function by name."""
    try:
        return ACTIVATIONS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown activation: {name!r}. Choose from {sorted(ACTIVATIONS)}"
        ) from None

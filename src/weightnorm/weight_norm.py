"""
Weight Normalization -- From-scratch NumPy implementation.

Salimans & Kingma (2016) reparametrize each output unit's weight vector as

    w_i = g_i * v_i / ||v_i||

so its length (g_i) and direction (v_i) are learned separately. WeightNorm
wraps any other layer: it owns the trainable (g, v) and recomputes the
wrapped layer's weights from them before every forward pass. The wrapped
layer's own weights are therefore a cache, never the source of truth.

Bias terms are not reparametrized. They sit after v in the flat parameter
buffer and pass straight through to the wrapped layer.

Parameter layout (``weights``):

    [ g_0 .. g_{U-1} | v_0 (fan_in) .. v_{U-1} (fan_in) | bias (bias_size) ]

Gradients follow from the chain rule with dW = dL/dw:

    dg_i = (dW_i . v_i) / ||v_i||
    dv_i = (g_i / ||v_i||) * (dW_i - dg_i * v_i / ||v_i||)
"""

import logging
from typing import Any, Dict, List, Optional, Type, Union

import numpy as np

from . import dispatch
from .errors import (
    AlreadyConfiguredError,
    DegenerateUnitError,
    NotConfiguredError,
    ShapeMismatchError,
)
from .layers import Layer, build_layer, register_layer

logger = logging.getLogger(__name__)


def _row_norms(v: np.ndarray) -> np.ndarray:
    """
    Euclidean norm of each row of v.

    Each row is divided by its largest magnitude first, so finite rows never
    overflow to inf or underflow to 0. Only an all-zero row has norm 0.
    """
    scale = np.max(np.abs(v), axis=1)
    safe = np.where(scale > 0.0, scale, 1.0)
    return scale * np.linalg.norm(v / safe[:, np.newaxis], axis=1)


@register_layer
class WeightNorm(Layer):
    """Wraps exactly one layer and trains its weights as magnitude and direction."""

    kind = "weight_norm"

    def __init__(self, layer: Optional[Layer] = None, model_exposed: bool = True):
        """
        Args:
            layer: Layer to wrap; may also be supplied later through add()
            model_exposed: Whether traversal (model(), dispatch.walk) may see
                           the wrapped layer
        """
        super().__init__()
        self.model_exposed = model_exposed
        self.wrapped_weight_size = 0

        self._wrapped: Optional[Layer] = None
        self._units = 0
        self._bias_size = 0

        if layer is not None:
            self.add(layer)

    @property
    def wrapped(self) -> Optional[Layer]:
        return self._wrapped

    def add(self, layer: Union[Layer, Type[Layer]], *args, **kwargs) -> Layer:
        """
        Set the wrapped layer. Only one call is allowed per instance.

        Args:
            layer: A layer instance, or a layer class to construct with args/kwargs

        Returns:
            The wrapped layer

        Raises:
            AlreadyConfiguredError: a layer is already wrapped
            ValueError: the layer belongs to another container
        """
        if self._wrapped is not None:
            raise AlreadyConfiguredError(
                f"WeightNorm already wraps {self._wrapped!r}; create a new WeightNorm instead"
            )
        if isinstance(layer, type):
            layer = layer(*args, **kwargs)
        elif args or kwargs:
            raise TypeError("Constructor arguments are only accepted together with a layer class")
        if isinstance(layer, WeightNorm):
            # its (g, v, b) buffer is not laid out unit-major
            raise ValueError("WeightNorm cannot wrap another WeightNorm")
        if layer._owner is not None:
            raise ValueError(f"{layer!r} already belongs to another container")

        layer._owner = self
        self._wrapped = layer
        logger.debug("wrapping %r", layer)
        return layer

    def model(self) -> List[Layer]:
        if self.model_exposed and self._wrapped is not None:
            return [self._wrapped]
        return []

    def _require_configured(self) -> Layer:
        if self._wrapped is None:
            raise NotConfiguredError("WeightNorm has no wrapped layer; call add() first")
        return self._wrapped

    @property
    def _direction_size(self) -> int:
        return self.wrapped_weight_size - self._bias_size

    def weight_size(self) -> int:
        if not self._initialized:
            return 0
        return self._units + self.wrapped_weight_size

    def output_units(self) -> int:
        return self._units

    def bias_size(self) -> int:
        return self._bias_size

    @property
    def g(self) -> np.ndarray:
        """Per-unit magnitudes, shape (units,). A view into ``weights``."""
        self._check_initialized()
        return self.weights[:self._units]

    @property
    def v(self) -> np.ndarray:
        """Per-unit directions, shape (units, fan_in). A view into ``weights``."""
        self._check_initialized()
        start = self._units
        return self.weights[start:start + self._direction_size].reshape(self._units, -1)

    @property
    def b(self) -> np.ndarray:
        """Unnormalized bias passed through to the wrapped layer."""
        self._check_initialized()
        return self.weights[self._units + self._direction_size:]

    def reset(self) -> None:
        """
        Reset the wrapped layer and derive (g, v) from its current weights.

        v_i is a copy of unit i's weights and g_i their Euclidean norm, so the
        effective weights are unchanged by wrapping. Resetting again keeps the
        existing (g, v, b) and pushes their projection into the wrapped layer.
        """
        wrapped = self._require_configured()
        dispatch.reset_layer(wrapped)

        count = dispatch.weight_size(wrapped)
        units = wrapped.output_units()
        bias = wrapped.bias_size()
        direction = count - bias
        if units <= 0 or direction <= 0 or direction % units != 0:
            raise ShapeMismatchError(
                f"Cannot normalize {wrapped!r}: {direction} weights over {units} output units"
            )

        raw = np.asarray(wrapped.weights, dtype=np.float64)
        if raw.size != count:
            raise ShapeMismatchError(
                f"{wrapped!r} reports {count} weights but holds {raw.size}"
            )

        keep = (
            self._initialized
            and self.weights is not None
            and (self.wrapped_weight_size, self._units, self._bias_size) == (count, units, bias)
        )
        self.wrapped_weight_size = count
        self._units = units
        self._bias_size = bias
        if keep:
            # wrapped weights are stale since the last forward(); (g, v, b) are current
            dispatch.set_weights(wrapped, self.effective_weights())
        else:
            v = raw[:direction].reshape(units, -1)
            self.weights = np.concatenate([_row_norms(v), v.ravel(), raw[direction:]])
        self.output_parameter = None
        self.delta = None
        self.grad = None
        self._initialized = True
        logger.debug(
            "reset weight norm",
            extra={"units": units, "fan_in": direction // units, "bias": bias, "kept": keep},
        )

    def release(self) -> None:
        """Release the wrapped layer and empty the slot."""
        if self._wrapped is not None:
            dispatch.release(self._wrapped)
            self._wrapped._owner = None
            logger.debug("released wrapped layer %r", self._wrapped)
        self._wrapped = None
        self.wrapped_weight_size = 0
        self._units = 0
        self._bias_size = 0
        super().release()

    def _norms(self) -> np.ndarray:
        norms = _row_norms(self.v)
        degenerate = np.flatnonzero(norms == 0.0)
        if degenerate.size:
            raise DegenerateUnitError(degenerate)
        return norms

    def effective_weights(self) -> np.ndarray:
        """
        The wrapped layer's raw buffer implied by (g, v, b).

        Returns:
            Flat array of wrapped_weight_size elements

        Raises:
            DegenerateUnitError: some ||v_i|| is zero
        """
        self._require_configured()
        self._check_initialized()
        norms = self._norms()
        # unit directions first, so g / ||v|| never overflows for tiny v
        w = self.g[:, np.newaxis] * (self.v / norms[:, np.newaxis])
        return np.concatenate([w.ravel(), self.b])

    def forward(self, x: np.ndarray) -> np.ndarray:
        """
        Recompute the wrapped weights from (g, v), then run the wrapped layer.

        Args:
            x: Input in whatever shape the wrapped layer accepts

        Returns:
            A copy of the wrapped layer's output
        """
        wrapped = self._require_configured()
        self._check_initialized()

        dispatch.set_weights(wrapped, self.effective_weights())
        wrapped.forward(x)

        self.output_parameter = dispatch.get_output_parameter(wrapped).copy()
        return self.output_parameter

    def backward(self, x: np.ndarray, gy: np.ndarray) -> np.ndarray:
        """Delegate to the wrapped layer, using the weights set by the last forward()."""
        wrapped = self._require_configured()
        self._check_initialized()

        wrapped.backward(x, gy)

        self.delta = dispatch.get_delta(wrapped).copy()
        return self.delta

    def gradient(self, x: np.ndarray, error: np.ndarray) -> np.ndarray:
        """
        Project the wrapped layer's weight gradient onto (g, v).

        Args:
            x: Input the forward pass saw
            error: dL/dy for the wrapped layer's output

        Returns:
            Flat [dg, dv, db] in the layout of ``weights``
        """
        wrapped = self._require_configured()
        self._check_initialized()

        raw_grad = np.asarray(wrapped.gradient(x, error), dtype=np.float64)
        if raw_grad.size != self.wrapped_weight_size:
            raise ShapeMismatchError(
                f"{wrapped!r} returned {raw_grad.size} gradients, expected {self.wrapped_weight_size}"
            )

        g = self.g
        norms = self._norms()
        u = self.v / norms[:, np.newaxis]
        dW = raw_grad[:self._direction_size].reshape(self._units, -1)

        dg = np.sum(dW * u, axis=1)
        dv = (g / norms)[:, np.newaxis] * (dW - dg[:, np.newaxis] * u)

        self.grad = np.concatenate([dg, dv.ravel(), raw_grad[self._direction_size:]])
        return self.grad

    def get_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"model_exposed": self.model_exposed, "layer": None}
        if self._wrapped is not None:
            config["layer"] = {
                "kind": self._wrapped.kind,
                "config": self._wrapped.get_config(),
            }
        return config

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "WeightNorm":
        wrapped = config.get("layer")
        layer = build_layer(wrapped["kind"], wrapped["config"]) if wrapped else None
        return cls(layer=layer, model_exposed=config.get("model_exposed", True))

    def state(self) -> Dict[str, np.ndarray]:
        """Only (g, v, b); the wrapped weights are always re-derived."""
        self._check_initialized()
        return {"weights": self.weights.copy()}

    def __repr__(self) -> str:
        return f"WeightNorm({self._wrapped!r}, model_exposed={self.model_exposed})"

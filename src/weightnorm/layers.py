"""
Layers -- From-scratch NumPy implementation of a shared layer contract.

Every layer exposes the same capability set: forward(x), backward(x, gy),
gradient(x, error), a flat parameter buffer ``weights``, the last output
(``output_parameter``) and input gradient (``delta``), and structural queries
(weight_size, output_units, bias_size, reset, release). Code that stores or
walks layers only ever talks to this contract, never to a concrete class.

Batches are rows: a Linear input is (batch, in_features) and a Convolution
input is (batch, channels, height, width).

Parametrized layers keep all parameters in one flat float64 buffer laid out
unit-major: the ``output_units * fan_in`` weight elements first, then
``bias_size`` bias elements. Named views (W, b) are reshaped slices of it, so
writing into ``weights`` updates them in place.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, Type, Union

import numpy as np

from .activations import get_activation
from .errors import NotInitializedError, ShapeMismatchError

logger = logging.getLogger(__name__)

LAYER_REGISTRY: Dict[str, Type["Layer"]] = {}


def register_layer(cls: Type["Layer"]) -> Type["Layer"]:
    """Class decorator adding a layer kind to the registry used to rebuild layers."""
    existing = LAYER_REGISTRY.get(cls.kind)
    if existing is not None and existing is not cls:
        raise ValueError(f"Layer kind {cls.kind!r} is already registered to {existing.__name__}")
    LAYER_REGISTRY[cls.kind] = cls
    return cls


def build_layer(kind: str, config: Dict[str, Any]) -> "Layer":
    """Instantiate a registered layer kind from its config dict."""
    try:
        cls = LAYER_REGISTRY[kind]
    except KeyError:
        raise ValueError(f"Unknown layer kind: {kind!r}. Known kinds: {sorted(LAYER_REGISTRY)}") from None
    return cls.from_config(config)


def _init_weights(shape: Tuple[int, ...], fan_in: int, fan_out: int, method: str) -> np.ndarray:
    if method == "he":
        return np.random.randn(*shape) * np.sqrt(2.0 / fan_in)
    elif method == "xavier":
        return np.random.randn(*shape) * np.sqrt(2.0 / (fan_in + fan_out))
    raise ValueError(f"Unknown init method: {method}")


class Layer(ABC):
    """Base class for every layer kind."""

    kind = "layer"

    def __init__(self):
        self.weights: Optional[np.ndarray] = None
        self.output_parameter: Optional[np.ndarray] = None
        self.delta: Optional[np.ndarray] = None
        self.grad: Optional[np.ndarray] = None

        self._initialized = False
        self._owner: Optional[Any] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def weight_size(self) -> int:
        """Number of scalar parameters in ``weights``."""
        return 0

    def output_units(self) -> int:
        """Number of output units (rows of the weight matrix, output channels)."""
        return 0

    def bias_size(self) -> int:
        """Number of trailing parameters that are biases."""
        return 0

    def reset(self) -> None:
        """
        Allocate and initialize parameter storage, then clear per-call records.

        A layer that already holds a buffer of the right size keeps its
        values, so a trained layer can be reset (e.g. when it gets wrapped)
        without losing its weights.
        """
        size = self.weight_size()
        if self.weights is None or self.weights.size != size:
            self.weights = np.zeros(size, dtype=np.float64)
            logger.debug("allocated %d weights for %s", size, type(self).__name__)
        self.output_parameter = None
        self.delta = None
        self.grad = None
        self._initialized = True

    def release(self) -> None:
        """
        Drop parameters and per-call records. Safe to call repeatedly.

        Ownership is left alone; only the owning container clears it.
        """
        self.weights = None
        self.output_parameter = None
        self.delta = None
        self.grad = None
        self._initialized = False

    def set_weights(self, buffer: np.ndarray) -> None:
        """Overwrite ``weights`` in place with a buffer of exactly weight_size() elements."""
        self._check_initialized()
        buffer = np.asarray(buffer, dtype=np.float64)
        expected = self.weight_size()
        if buffer.size != expected:
            raise ShapeMismatchError(
                f"{type(self).__name__} holds {expected} weights, got a buffer of {buffer.size}"
            )
        self.weights[...] = buffer.ravel()

    @abstractmethod
    def forward(self, x: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def backward(self, x: np.ndarray, gy: np.ndarray) -> np.ndarray:
        pass

    def gradient(self, x: np.ndarray, error: np.ndarray) -> np.ndarray:
        """Gradient of the loss w.r.t. ``weights``; empty for weightless layers."""
        self._check_initialized()
        self.grad = np.zeros(0, dtype=np.float64)
        return self.grad

    def model(self) -> list:
        """Layers nested inside this one that traversal may descend into."""
        return []

    def get_config(self) -> Dict[str, Any]:
        """Constructor arguments, JSON-serializable."""
        return {}

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Layer":
        return cls(**config)

    def state(self) -> Dict[str, np.ndarray]:
        """Arrays needed to restore this layer's parameters."""
        self._check_initialized()
        if self.weight_size() == 0:
            return {}
        return {"weights": self.weights.copy()}

    def load_state(self, state: Dict[str, np.ndarray]) -> None:
        if "weights" in state:
            self.set_weights(state["weights"])

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError(f"{type(self).__name__} used before reset()")

    def __call__(self, x: np.ndarray) -> np.ndarray:
        return self.forward(x)

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self.get_config().items())
        return f"{type(self).__name__}({args})"


@register_layer
class Linear(Layer):
    """Fully connected layer: y = x @ W.T + b."""

    kind = "linear"

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        init_method: str = "he",
    ):
        """
        Args:
            in_features: Number of input features
            out_features: Number of output features (output units)
            bias: Whether to add a learnable bias
            init_method: "he" for ReLU variants, "xavier" for sigmoid/tanh
        """
        super().__init__()
        if in_features <= 0 or out_features <= 0:
            raise ValueError(f"Feature counts must be positive, got {in_features} -> {out_features}")
        if init_method not in ("he", "xavier"):
            raise ValueError(f"Unknown init method: {init_method}")
        self.in_features = in_features
        self.out_features = out_features
        self.bias = bias
        self.init_method = init_method

    def weight_size(self) -> int:
        return self.out_features * self.in_features + self.bias_size()

    def output_units(self) -> int:
        return self.out_features

    def bias_size(self) -> int:
        return self.out_features if self.bias else 0

    @property
    def W(self) -> np.ndarray:
        """Weight matrix view, shape (out_features, in_features)."""
        self._check_initialized()
        n = self.out_features * self.in_features
        return self.weights[:n].reshape(self.out_features, self.in_features)

    @property
    def b(self) -> np.ndarray:
        """Bias view, shape (out_features,) or (0,) without bias."""
        self._check_initialized()
        return self.weights[self.out_features * self.in_features:]

    def reset(self) -> None:
        # W and b views need _initialized, so fill after the base allocates.
        fresh = self.weights is None or self.weights.size != self.weight_size()
        super().reset()
        if fresh:
            self.W[...] = _init_weights(
                (self.out_features, self.in_features),
                self.in_features,
                self.out_features,
                self.init_method,
            )

    def _as_input(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if x.ndim == 1:
            x = x.reshape(1, -1)
        if x.ndim != 2 or x.shape[1] != self.in_features:
            raise ShapeMismatchError(
                f"Linear expects input of shape (batch, {self.in_features}), got {x.shape}"
            )
        return x

    def _as_output_grad(self, gy: np.ndarray, batch: int) -> np.ndarray:
        gy = np.asarray(gy, dtype=np.float64)
        if gy.ndim == 1:
            gy = gy.reshape(1, -1)
        if gy.shape != (batch, self.out_features):
            raise ShapeMismatchError(
                f"Linear expects output gradient of shape {(batch, self.out_features)}, got {gy.shape}"
            )
        return gy

    def forward(self, x: np.ndarray) -> np.ndarray:
        """
        Args:
            x: Input, shape (batch, in_features)

        Returns:
            Output, shape (batch, out_features)
        """
        self._check_initialized()
        x = self._as_input(x)

        # (batch, in) @ (in, out) -> (batch, out)
        y = x @ self.W.T
        if self.bias:
            y = y + self.b

        self.output_parameter = y
        return y

    def backward(self, x: np.ndarray, gy: np.ndarray) -> np.ndarray:
        """
        Args:
            x: Input the forward pass saw, shape (batch, in_features)
            gy: dL/dy, shape (batch, out_features)

        Returns:
            dL/dx, shape (batch, in_features)
        """
        self._check_initialized()
        x = self._as_input(x)
        gy = self._as_output_grad(gy, x.shape[0])

        # (batch, out) @ (out, in) -> (batch, in)
        dx = gy @ self.W
        self.delta = dx
        return dx

    def gradient(self, x: np.ndarray, error: np.ndarray) -> np.ndarray:
        """
        Args:
            x: Input the forward pass saw, shape (batch, in_features)
            error: dL/dy, shape (batch, out_features)

        Returns:
            Flat [dW, db] in the layout of ``weights``
        """
        self._check_initialized()
        x = self._as_input(x)
        error = self._as_output_grad(error, x.shape[0])

        # (out, batch) @ (batch, in) -> (out, in)
        parts = [(error.T @ x).ravel()]
        if self.bias:
            parts.append(np.sum(error, axis=0))

        self.grad = np.concatenate(parts)
        return self.grad

    def get_config(self) -> Dict[str, Any]:
        return {
            "in_features": self.in_features,
            "out_features": self.out_features,
            "bias": self.bias,
            "init_method": self.init_method,
        }


def _pair(value: Union[int, Tuple[int, int], list]) -> Tuple[int, int]:
    if isinstance(value, int):
        return (value, value)
    kh, kw = value
    return (int(kh), int(kw))


@register_layer
class Convolution(Layer):
    """
    2-D cross-correlation over (batch, channels, height, width) inputs.

    Implemented with im2col: every receptive field becomes a row of a matrix,
    so the convolution is one matmul against W reshaped to
    (out_channels, in_channels * kh * kw). Each output channel is one output
    unit whose fan-in is its whole filter.
    """

    kind = "convolution"

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: Union[int, Tuple[int, int]],
        stride: int = 1,
        padding: int = 0,
        bias: bool = True,
        init_method: str = "he",
    ):
        super().__init__()
        if in_channels <= 0 or out_channels <= 0:
            raise ValueError(f"Channel counts must be positive, got {in_channels} -> {out_channels}")
        if stride <= 0 or padding < 0:
            raise ValueError(f"Invalid stride/padding: stride={stride}, padding={padding}")
        if init_method not in ("he", "xavier"):
            raise ValueError(f"Unknown init method: {init_method}")
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = _pair(kernel_size)
        self.stride = stride
        self.padding = padding
        self.bias = bias
        self.init_method = init_method

    @property
    def fan_in(self) -> int:
        kh, kw = self.kernel_size
        return self.in_channels * kh * kw

    def weight_size(self) -> int:
        return self.out_channels * self.fan_in + self.bias_size()

    def output_units(self) -> int:
        return self.out_channels

    def bias_size(self) -> int:
        return self.out_channels if self.bias else 0

    @property
    def W(self) -> np.ndarray:
        """Filter bank view, shape (out_channels, in_channels, kh, kw)."""
        self._check_initialized()
        n = self.out_channels * self.fan_in
        return self.weights[:n].reshape(self.out_channels, self.in_channels, *self.kernel_size)

    @property
    def b(self) -> np.ndarray:
        self._check_initialized()
        return self.weights[self.out_channels * self.fan_in:]

    def reset(self) -> None:
        fresh = self.weights is None or self.weights.size != self.weight_size()
        super().reset()
        if fresh:
            kh, kw = self.kernel_size
            self.W[...] = _init_weights(
                self.W.shape,
                self.fan_in,
                self.out_channels * kh * kw,
                self.init_method,
            )

    def output_shape(self, height: int, width: int) -> Tuple[int, int]:
        kh, kw = self.kernel_size
        out_h = (height + 2 * self.padding - kh) // self.stride + 1
        out_w = (width + 2 * self.padding - kw) // self.stride + 1
        if out_h <= 0 or out_w <= 0:
            raise ShapeMismatchError(
                f"Input {height}x{width} is smaller than kernel {kh}x{kw} (padding={self.padding})"
            )
        return out_h, out_w

    def _as_input(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        if x.ndim == 3:
            x = x[np.newaxis]
        if x.ndim != 4 or x.shape[1] != self.in_channels:
            raise ShapeMismatchError(
                f"Convolution expects input of shape (batch, {self.in_channels}, H, W), got {x.shape}"
            )
        return x

    def _im2col(self, x: np.ndarray) -> Tuple[np.ndarray, int, int]:
        B = x.shape[0]
        kh, kw = self.kernel_size
        s, p = self.stride, self.padding
        out_h, out_w = self.output_shape(x.shape[2], x.shape[3])

        if p:
            x = np.pad(x, ((0, 0), (0, 0), (p, p), (p, p)))
        # (B, C, Hp - kh + 1, Wp - kw + 1, kh, kw), then keep every s-th window
        windows = np.lib.stride_tricks.sliding_window_view(x, (kh, kw), axis=(2, 3))
        windows = windows[:, :, ::s, ::s]

        # (B * out_h * out_w, C * kh * kw), column order matches W.reshape(O, -1)
        cols = windows.transpose(0, 2, 3, 1, 4, 5).reshape(B * out_h * out_w, self.fan_in)
        return cols, out_h, out_w

    def _as_output_grad(self, gy: np.ndarray, batch: int, out_h: int, out_w: int) -> np.ndarray:
        gy = np.asarray(gy, dtype=np.float64)
        if gy.ndim == 3:
            gy = gy[np.newaxis]
        expected = (batch, self.out_channels, out_h, out_w)
        if gy.shape != expected:
            raise ShapeMismatchError(f"Convolution expects output gradient of shape {expected}, got {gy.shape}")
        # (B, O, out_h, out_w) -> (B * out_h * out_w, O)
        return gy.transpose(0, 2, 3, 1).reshape(-1, self.out_channels)

    def forward(self, x: np.ndarray) -> np.ndarray:
        """
        Args:
            x: Input, shape (batch, in_channels, H, W)

        Returns:
            Output, shape (batch, out_channels, out_h, out_w)
        """
        self._check_initialized()
        x = self._as_input(x)
        cols, out_h, out_w = self._im2col(x)

        y = cols @ self.W.reshape(self.out_channels, -1).T
        if self.bias:
            y = y + self.b
        y = y.reshape(x.shape[0], out_h, out_w, self.out_channels).transpose(0, 3, 1, 2)
        y = np.ascontiguousarray(y)

        self.output_parameter = y
        return y

    def backward(self, x: np.ndarray, gy: np.ndarray) -> np.ndarray:
        """Scatter-add every receptive field's gradient back onto the input (col2im)."""
        self._check_initialized()
        x = self._as_input(x)
        B, C, H, Wd = x.shape
        kh, kw = self.kernel_size
        s, p = self.stride, self.padding
        out_h, out_w = self.output_shape(H, Wd)
        gy2 = self._as_output_grad(gy, B, out_h, out_w)

        dcols = gy2 @ self.W.reshape(self.out_channels, -1)
        dcols = dcols.reshape(B, out_h, out_w, C, kh, kw)

        dx_padded = np.zeros((B, C, H + 2 * p, Wd + 2 * p), dtype=np.float64)
        for i in range(kh):
            for j in range(kw):
                dx_padded[:, :, i:i + s * out_h:s, j:j + s * out_w:s] += (
                    dcols[:, :, :, :, i, j].transpose(0, 3, 1, 2)
                )

        dx = dx_padded[:, :, p:p + H, p:p + Wd]
        self.delta = dx
        return dx

    def gradient(self, x: np.ndarray, error: np.ndarray) -> np.ndarray:
        self._check_initialized()
        x = self._as_input(x)
        cols, out_h, out_w = self._im2col(x)
        err2 = self._as_output_grad(error, x.shape[0], out_h, out_w)

        # (O, N) @ (N, C*kh*kw) -> (O, C*kh*kw)
        parts = [(err2.T @ cols).ravel()]
        if self.bias:
            parts.append(np.sum(err2, axis=0))

        self.grad = np.concatenate(parts)
        return self.grad

    def get_config(self) -> Dict[str, Any]:
        return {
            "in_channels": self.in_channels,
            "out_channels": self.out_channels,
            "kernel_size": list(self.kernel_size),
            "stride": self.stride,
            "padding": self.padding,
            "bias": self.bias,
            "init_method": self.init_method,
        }


@register_layer
class ActivationLayer(Layer):
    """Weightless layer applying an element-wise activation function."""

    kind = "activation"

    def __init__(self, name: str = "relu"):
        super().__init__()
        self.function = get_activation(name)
        self.name = name

    def forward(self, x: np.ndarray) -> np.ndarray:
        self._check_initialized()
        y = self.function.fn(x)
        self.output_parameter = y
        return y

    def backward(self, x: np.ndarray, gy: np.ndarray) -> np.ndarray:
        self._check_initialized()
        x = np.asarray(x, dtype=np.float64)
        gy = np.asarray(gy, dtype=np.float64)
        if gy.shape != x.shape:
            raise ShapeMismatchError(f"Output gradient shape {gy.shape} does not match input shape {x.shape}")
        dx = gy * self.function.deriv(x)
        self.delta = dx
        return dx

    def get_config(self) -> Dict[str, Any]:
        return {"name": self.name}

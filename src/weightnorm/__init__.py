"""Composable NumPy layers and a weight-normalization wrapper."""

from .errors import (
    AlreadyConfiguredError,
    DegenerateUnitError,
    LayerError,
    NotConfiguredError,
    NotInitializedError,
    ShapeMismatchError,
)
from .layers import (
    LAYER_REGISTRY,
    ActivationLayer,
    Convolution,
    Layer,
    Linear,
    build_layer,
    register_layer,
)
from .dispatch import LayerStore, walk
from .weight_norm import WeightNorm
from .serialization import load, save
from .gradient_check import gradient_check

__version__ = "0.1.0"

__all__ = [
    "ActivationLayer",
    "AlreadyConfiguredError",
    "Convolution",
    "DegenerateUnitError",
    "LAYER_REGISTRY",
    "Layer",
    "LayerError",
    "LayerStore",
    "Linear",
    "NotConfiguredError",
    "NotInitializedError",
    "ShapeMismatchError",
    "WeightNorm",
    "build_layer",
    "gradient_check",
    "load",
    "register_layer",
    "save",
    "walk",
]

"""
Uniform operations over heterogeneous layers.

The functions here work on any ``Layer`` without the caller knowing its
concrete kind: each one checks the shared preconditions and then calls into
the layer's own implementation. ``LayerStore`` is the ordered container that
owns a sequence of layers; ``walk`` traverses stores and any layers that
expose nested models.
"""

import logging
from typing import Iterable, Iterator, List, Optional, Type, Union

import numpy as np

from .errors import NotInitializedError
from .layers import Layer

logger = logging.getLogger(__name__)


def _require_initialized(layer: Layer) -> None:
    if not layer.initialized:
        raise NotInitializedError(f"{type(layer).__name__} used before reset()")


def release(layer: Layer) -> None:
    """Free everything the layer holds. Calling it twice is harmless."""
    layer.release()


def reset_layer(layer: Layer) -> None:
    layer.reset()


def get_delta(layer: Layer) -> Optional[np.ndarray]:
    """dL/dx recorded by the layer's last backward(), or None."""
    _require_initialized(layer)
    return layer.delta


def set_delta(layer: Layer, buffer: Optional[np.ndarray]) -> None:
    _require_initialized(layer)
    layer.delta = buffer


def get_output_parameter(layer: Layer) -> Optional[np.ndarray]:
    """Output recorded by the layer's last forward(), or None."""
    _require_initialized(layer)
    return layer.output_parameter


def set_output_parameter(layer: Layer, buffer: Optional[np.ndarray]) -> None:
    _require_initialized(layer)
    layer.output_parameter = buffer


def weight_size(layer: Layer) -> int:
    _require_initialized(layer)
    return layer.weight_size()


def set_weights(layer: Layer, buffer: np.ndarray) -> int:
    """
    Overwrite a layer's parameters.

    Args:
        layer: Any reset layer
        buffer: Exactly weight_size(layer) values; any shape, read in C order

    Returns:
        Number of elements written

    Raises:
        NotInitializedError: layer was never reset
        ShapeMismatchError: buffer size differs from weight_size(layer)
    """
    _require_initialized(layer)
    layer.set_weights(buffer)
    return layer.weight_size()


class LayerStore:
    """Ordered container owning a sequence of layers of any kind."""

    def __init__(self, layers: Iterable[Layer] = ()):
        self._layers: List[Layer] = []
        for layer in layers:
            self.add(layer)

    def add(self, layer: Union[Layer, Type[Layer]], *args, **kwargs) -> Layer:
        """
        Take ownership of a layer.

        Args:
            layer: A layer instance, or a layer class to construct with args/kwargs

        Returns:
            The stored layer

        Raises:
            ValueError: the layer already belongs to another container
        """
        if isinstance(layer, type):
            layer = layer(*args, **kwargs)
        elif args or kwargs:
            raise TypeError("Constructor arguments are only accepted together with a layer class")
        if layer._owner is not None:
            raise ValueError(f"{layer!r} already belongs to another container")
        layer._owner = self
        self._layers.append(layer)
        return layer

    def reset(self) -> None:
        for layer in self._layers:
            reset_layer(layer)

    def release(self) -> None:
        """Release every layer and empty the store."""
        for layer in self._layers:
            release(layer)
            layer._owner = None
        logger.debug("released %d layers", len(self._layers))
        self._layers.clear()

    def weight_size(self) -> int:
        return sum(weight_size(layer) for layer in self._layers)

    def __len__(self) -> int:
        return len(self._layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self._layers)

    def __getitem__(self, index: int) -> Layer:
        return self._layers[index]

    def __repr__(self) -> str:
        return f"LayerStore({self._layers!r})"


def walk(layers: Iterable[Layer]) -> Iterator[Layer]:
    """
    Depth-first traversal of layers and the models they expose.

    A wrapper that hides its model yields only itself.
    """
    for layer in layers:
        yield layer
        yield from walk(layer.model())

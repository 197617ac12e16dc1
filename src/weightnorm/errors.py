"""Exceptions raised by layers, the dispatch helpers and the weight-norm wrapper."""

from typing import Iterable


class LayerError(RuntimeError):
    """Base class for every error raised by this package."""


class NotConfiguredError(LayerError):
    """A wrapper layer was used before a layer was added to it."""


class NotInitializedError(LayerError):
    """A layer was used before reset() allocated its state."""


class AlreadyConfiguredError(LayerError):
    """A second layer was added to a wrapper that holds exactly one."""


class ShapeMismatchError(LayerError, ValueError):
    """A buffer's size or shape disagrees with what the layer declares."""


class DegenerateUnitError(LayerError, ArithmeticError):
    """One or more output units have a zero-norm direction vector."""

    def __init__(self, units: Iterable[int]):
        self.units = [int(u) for u in units]
        super().__init__(
            f"direction vector has zero norm for output unit(s) {self.units}; "
            "weight normalization is undefined"
        )

"""
Save and restore layers as NumPy ``.npz`` archives.

An archive holds one JSON header plus the layer's state arrays:

    __header__   {"format": 1, "kind": "weight_norm", "config": {...}}
    weights      flat float64 parameter buffer

The header is enough to rebuild the layer (and, for WeightNorm, the wrapped
layer) through the kind registry; the arrays then overwrite the freshly reset
parameters. WeightNorm stores only (g, v, b), since the wrapped layer's
weights are derived from them on the next forward pass.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

from .layers import Layer, build_layer
from . import weight_norm  # noqa: F401  registers the "weight_norm" kind

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
_HEADER_KEY = "__header__"


def to_state(layer: Layer) -> Dict[str, Any]:
    """
    Capture a reset layer as a plain dict.

    Returns:
        {"format", "kind", "config", "arrays"} where arrays maps names to copies
    """
    return {
        "format": FORMAT_VERSION,
        "kind": layer.kind,
        "config": layer.get_config(),
        "arrays": layer.state(),
    }


def from_state(state: Dict[str, Any]) -> Layer:
    """Rebuild, reset and load a layer from a dict produced by to_state()."""
    version = state.get("format")
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported layer format: {version!r} (expected {FORMAT_VERSION})")
    layer = build_layer(state["kind"], state["config"])
    layer.reset()
    layer.load_state(state["arrays"])
    return layer


def save(layer: Layer, path: Union[str, Path]) -> Path:
    """
    Write a reset layer to an .npz archive.

    Args:
        layer: Layer to save
        path: Destination; NumPy appends ".npz" when missing

    Returns:
        Path of the written file
    """
    state = to_state(layer)
    header = {k: state[k] for k in ("format", "kind", "config")}
    arrays = state["arrays"]
    if _HEADER_KEY in arrays:
        raise ValueError(f"State array name {_HEADER_KEY!r} is reserved")

    path = Path(path)
    if path.suffix != ".npz":
        path = path.with_name(path.name + ".npz")
    np.savez(path, **{_HEADER_KEY: np.array(json.dumps(header))}, **arrays)
    logger.debug("saved %s layer to %s", layer.kind, path)
    return path


def load(path: Union[str, Path]) -> Layer:
    """
    Read a layer written by save().

    Raises:
        ValueError: the archive has no header or an unknown format/kind
    """
    with np.load(path, allow_pickle=False) as data:
        if _HEADER_KEY not in data.files:
            raise ValueError(f"{path} is not a saved layer (missing {_HEADER_KEY})")
        header = json.loads(data[_HEADER_KEY].item())
        arrays = {name: data[name] for name in data.files if name != _HEADER_KEY}

    layer = from_state({**header, "arrays": arrays})
    logger.debug("loaded %s layer from %s", layer.kind, path)
    return layer

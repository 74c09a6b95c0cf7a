"""Z projection of tile stacks and composition of channels.

Fluorescence channels are max-projected, brightfield is min-projected. A
rolling-ball background can be removed from every plane of a fluorescence
stack before projecting.
"""
import enum
import logging
from typing import Sequence

import numpy as np
import skimage.restoration

logger = logging.getLogger(__name__)


class ProjectionMethod(enum.Enum):
    max = "max"
    min = "min"


def subtract_background(plane: np.ndarray, radius: float = 50.0) -> np.ndarray:
    """Remove a rolling-ball background from a 2D plane, keeping its dtype."""
    background = skimage.restoration.rolling_ball(plane, radius=radius)
    corrected = plane.astype(np.float64) - background
    if np.issubdtype(plane.dtype, np.integer):
        info = np.iinfo(plane.dtype)
        return np.clip(corrected, info.min, info.max).astype(plane.dtype)
    return corrected.astype(plane.dtype)


def project_stack(
    stack: np.ndarray,
    method: ProjectionMethod = ProjectionMethod.max,
    subtract_bg: bool = False,
    radius: float = 50.0,
) -> np.ndarray:
    """Project a (Z, Y, X) stack to one (Y, X) plane.

    A 2D input is treated as a stack of one plane.
    """
    if stack.ndim == 2:
        stack = stack[np.newaxis]
    if stack.ndim != 3:
        raise ValueError(f"Expected a (Z, Y, X) stack, got shape {stack.shape}")

    if subtract_bg:
        stack = np.stack([subtract_background(plane, radius) for plane in stack])

    if method == ProjectionMethod.max:
        return stack.max(axis=0)
    return stack.min(axis=0)


def merge_channels(planes: Sequence[np.ndarray]) -> np.ndarray:
    """Stack per-channel (Y, X) planes into one (C, Y, X) buffer.

    Raises:
        ValueError: if the planes differ in shape or dtype.
    """
    if not planes:
        raise ValueError("No channel planes to merge")
    shapes = {p.shape for p in planes}
    if len(shapes) > 1:
        raise ValueError(f"Channel planes differ in shape: {sorted(shapes)}")
    dtypes = {np.dtype(p.dtype) for p in planes}
    if len(dtypes) > 1:
        raise ValueError(f"Channel planes differ in dtype: {sorted(str(d) for d in dtypes)}")
    return np.stack(planes)

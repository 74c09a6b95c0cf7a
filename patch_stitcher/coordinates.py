"""Conversion of absolute stage positions into the pixel frame of a well.

Stage positions are reported in physical units. Registration and clustering
work in pixels relative to a reference tile, so every position is shifted by
the reference tile's position, divided by the calibration (physical size of
one pixel) and, where the stage axis runs opposite to the image axis, negated.
"""
import logging
import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

import pandas as pd

from .errors import EmptyTileSetError, MissingCalibrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TilePosition:
    """Nominal position of a tile's top-left corner, in pixels."""

    id: int
    x: float
    y: float


def validate_calibration(calibration: Optional[float]) -> float:
    """Return the calibration as a float, or raise if it is unusable."""
    if calibration is None:
        raise MissingCalibrationError("No pixel calibration available")
    try:
        value = float(calibration)
    except (TypeError, ValueError) as e:
        raise MissingCalibrationError(f"Unreadable pixel calibration: {calibration!r}") from e
    if not math.isfinite(value) or value <= 0:
        raise MissingCalibrationError(f"Invalid pixel calibration: {value}")
    return value


def normalize_stage_positions(
    stage_positions: Mapping[int, tuple[float, float]],
    calibration: Optional[float],
    invert_x: bool = True,
    invert_y: bool = False,
    reference_id: Optional[int] = None,
) -> dict[int, TilePosition]:
    """Convert absolute stage positions to pixel positions relative to a reference tile.

    With the default axis policy this computes, for every tile i,
    `x_i = -(X_i - X_ref) / calibration` and `y_i = (Y_i - Y_ref) / calibration`.

    Args:
        stage_positions: tile id -> (X, Y) stage position in physical units.
        calibration: physical size of one pixel, in the same units as the positions.
        invert_x: negate X offsets (stage X runs opposite to the mosaic X axis).
        invert_y: negate Y offsets.
        reference_id: tile placed at (0, 0). Defaults to the lowest tile id.

    Returns:
        tile id -> TilePosition, in ascending id order.

    Raises:
        MissingCalibrationError: if the calibration is missing or not a positive number.
        EmptyTileSetError: if no positions are given.
    """
    pixel_size = validate_calibration(calibration)
    if not stage_positions:
        raise EmptyTileSetError("Cannot normalize an empty set of stage positions")

    if reference_id is None:
        reference_id = min(stage_positions)
    elif reference_id not in stage_positions:
        raise KeyError(f"Reference tile {reference_id} has no stage position")

    x_ref, y_ref = stage_positions[reference_id]
    x_sign = -1.0 if invert_x else 1.0
    y_sign = -1.0 if invert_y else 1.0

    normalized = {}
    for tile_id in sorted(stage_positions):
        x_abs, y_abs = stage_positions[tile_id]
        normalized[tile_id] = TilePosition(
            id=int(tile_id),
            x=x_sign * ((x_abs - x_ref) / pixel_size),
            y=y_sign * ((y_abs - y_ref) / pixel_size),
        )
    logger.debug(
        f"Normalized {len(normalized)} stage positions against tile {reference_id} "
        f"with {pixel_size} units/px"
    )
    return normalized


def positions_table(positions: Iterable[TilePosition]) -> pd.DataFrame:
    """Position table of a set of tiles: one row per tile id with `x` and `y` columns.

    This is the bookkeeping half of a patch. Pixel buffers are kept in a
    separate id-keyed mapping so they can be released on their own.
    """
    rows = sorted(positions, key=lambda p: p.id)
    table = pd.DataFrame(
        {"x": [p.x for p in rows], "y": [p.y for p in rows]},
        index=pd.Index([p.id for p in rows], name="tile"),
        dtype=float,
    )
    return table

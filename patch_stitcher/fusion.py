"""Fusion of the registered tiles of a patch into one image.

The output covers the union of all translated tile footprints. Pixels covered
by exactly one tile are copied from it unchanged. Where tiles overlap, the
value depends on the fusion mode:

- `linear_blend`: weighted mean of the covering tiles. A tile's weight is the
  product over both axes of a linear ramp that is highest at the tile's center
  and falls toward zero at its border, raised to `blending_alpha`. The blend is
  therefore continuous across tile borders, and identical content blends to
  itself.
- `average`: unweighted mean of the covering tiles.
- `nearest`: the covering tile with the highest weight (the one whose border
  is farthest away) wins.
- `max_intensity` / `min_intensity`: per-pixel maximum / minimum.

Multi-channel tiles, shaped (C, Y, X), are fused channel by channel with the
same spatial weights.
"""
import functools
import logging
import math
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import psutil
from scipy import ndimage

from .errors import EmptyTileSetError, IncompatiblePixelTypeError
from .parameters import FusionMode, FusionParameters

logger = logging.getLogger(__name__)

# Warn when the fusion buffers need more than this fraction of available memory.
MEMORY_WARNING_FRACTION = 0.45


@dataclass
class FusedImage:
    """One fused patch.

    `pixels` is (Y, X) for single-channel tiles and (C, Y, X) otherwise.
    `origin` is the (x, y) position of output pixel (0, 0) in the patch's
    pixel frame.
    """

    pixels: np.ndarray
    calibration: Optional[float]
    origin: tuple[float, float] = (0.0, 0.0)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.pixels.shape

    @property
    def dtype(self) -> np.dtype:
        return self.pixels.dtype


@dataclass(frozen=True)
class _Placement:
    tile_id: int
    y: int
    x: int
    # Fractional remainder, only non-zero with sub-pixel interpolation.
    frac_y: float = 0.0
    frac_x: float = 0.0


def _ramp(n: int) -> np.ndarray:
    """1D linear profile: 1 at the center, decreasing to 1/ceil(n/2) at both ends."""
    idx = np.arange(n)
    distance = np.minimum(idx + 1, n - idx).astype(np.float64)
    return distance / distance.max()


@functools.lru_cache(maxsize=16)
def blending_weights(height: int, width: int, alpha: float = 1.5) -> np.ndarray:
    """Linear blending weights of a (height, width) tile, in (0, 1]."""
    weights = np.power(np.outer(_ramp(height), _ramp(width)), alpha)
    weights.setflags(write=False)
    return weights


def check_compatible(buffers: Sequence[np.ndarray]) -> tuple[np.dtype, int]:
    """Ensure all tiles share dtype and channel layout.

    Returns:
        (dtype, number of channels)

    Raises:
        IncompatiblePixelTypeError: if dtypes or channel layouts differ.
    """
    dtypes = {np.dtype(b.dtype) for b in buffers}
    if len(dtypes) > 1:
        raise IncompatiblePixelTypeError(
            f"Tiles do not share a sample type: {sorted(str(d) for d in dtypes)}"
        )
    layouts = {(b.ndim, b.shape[0] if b.ndim == 3 else 1) for b in buffers}
    if len(layouts) > 1:
        raise IncompatiblePixelTypeError(f"Tiles do not share a channel layout: {sorted(layouts)}")
    ndim, channels = layouts.pop()
    if ndim not in (2, 3):
        raise IncompatiblePixelTypeError(f"Tiles must be 2D or (C, Y, X), got {ndim}D")
    return dtypes.pop(), channels


def _as_channels(buffer: np.ndarray) -> np.ndarray:
    return buffer[np.newaxis] if buffer.ndim == 2 else buffer


def _cast(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    if dtype == np.bool_:
        return values >= 0.5
    return values.astype(dtype)


def _placements(
    transforms: pd.DataFrame, interpolate: bool
) -> tuple[list[_Placement], tuple[float, float]]:
    """Integer output offsets of every tile and the (x, y) origin they are relative to."""
    dx = transforms["dx"].astype(float)
    dy = transforms["dy"].astype(float)
    if interpolate:
        origin_x, origin_y = math.floor(dx.min()), math.floor(dy.min())
        placements = []
        for tile_id in transforms.index:
            fx, fy = dx[tile_id] - origin_x, dy[tile_id] - origin_y
            ix, iy = math.floor(fx), math.floor(fy)
            placements.append(_Placement(int(tile_id), iy, ix, fy - iy, fx - ix))
        return placements, (float(origin_x), float(origin_y))

    rx, ry = np.rint(dx).astype(int), np.rint(dy).astype(int)
    origin_x, origin_y = int(rx.min()), int(ry.min())
    placements = [
        _Placement(int(tile_id), int(ry[tile_id] - origin_y), int(rx[tile_id] - origin_x))
        for tile_id in transforms.index
    ]
    return placements, (float(origin_x), float(origin_y))


def _check_memory(shape: tuple[int, int, int], dtype: np.dtype) -> None:
    channels, height, width = shape
    # float64 accumulator + output + weight sum + coverage count.
    required = height * width * (channels * (8 + dtype.itemsize) + 8 + 4)
    available = psutil.virtual_memory().available
    logger.debug(f"Fusing into {shape} {dtype}: about {required / 1e9:.2f} GB")
    if required > MEMORY_WARNING_FRACTION * available:
        logger.warning(
            f"Fused patch needs about {required / 1e9:.2f} GB, "
            f"{available / 1e9:.2f} GB available"
        )


def _shift_subpixel(values: np.ndarray, frac_y: float, frac_x: float) -> np.ndarray:
    """Pad by one pixel and shift by a fraction of a pixel with linear interpolation."""
    padded = np.pad(values, ((0, 1), (0, 1)))
    if frac_y == 0.0 and frac_x == 0.0:
        return padded
    return ndimage.shift(padded, (frac_y, frac_x), order=1, mode="constant", cval=0.0)


def _tile_weights(height: int, width: int, params: FusionParameters) -> np.ndarray:
    if params.mode == FusionMode.average:
        return np.ones((height, width), dtype=np.float64)
    return blending_weights(height, width, params.blending_alpha)


def _fuse_weighted(
    tiles: Mapping[int, np.ndarray],
    placements: list[_Placement],
    canvas: tuple[int, int, int],
    params: FusionParameters,
    interpolate: bool,
) -> np.ndarray:
    channels, height, width = canvas
    acc = np.zeros(canvas, dtype=np.float64)
    wsum = np.zeros((height, width), dtype=np.float64)
    count = np.zeros((height, width), dtype=np.int32)

    for p in placements:
        tile = _as_channels(tiles[p.tile_id])
        h, w = tile.shape[-2:]
        weights = _tile_weights(h, w, params)
        if interpolate:
            weighted = np.stack(
                [_shift_subpixel(c * weights, p.frac_y, p.frac_x) for c in tile.astype(np.float64)]
            )
            weights = _shift_subpixel(weights, p.frac_y, p.frac_x)
            h, w = h + 1, w + 1
        else:
            weighted = tile * weights
        region = (slice(p.y, p.y + h), slice(p.x, p.x + w))
        acc[(slice(None),) + region] += weighted
        wsum[region] += weights
        count[region] += weights > 0

    out = np.zeros(canvas, dtype=np.float64)
    covered = wsum > 0
    out[:, covered] = acc[:, covered] / wsum[covered]
    if not interpolate:
        # Single coverage: copy source pixels exactly.
        for p in placements:
            tile = _as_channels(tiles[p.tile_id])
            h, w = tile.shape[-2:]
            region = (slice(p.y, p.y + h), slice(p.x, p.x + w))
            single = count[region] == 1
            out[(slice(None),) + region][:, single] = tile[:, single]
    return out


def _fuse_nearest(
    tiles: Mapping[int, np.ndarray],
    placements: list[_Placement],
    canvas: tuple[int, int, int],
    params: FusionParameters,
) -> np.ndarray:
    out = np.zeros(canvas, dtype=np.float64)
    best = np.full(canvas[1:], -1.0)
    for p in placements:
        tile = _as_channels(tiles[p.tile_id])
        h, w = tile.shape[-2:]
        weights = blending_weights(h, w, params.blending_alpha)
        region = (slice(p.y, p.y + h), slice(p.x, p.x + w))
        best_view = best[region]
        # Ties go to the tile placed first (lowest id).
        wins = weights > best_view
        out[(slice(None),) + region][:, wins] = tile[:, wins]
        best_view[wins] = weights[wins]
    return out


def _fuse_extremum(
    tiles: Mapping[int, np.ndarray],
    placements: list[_Placement],
    canvas: tuple[int, int, int],
    params: FusionParameters,
) -> np.ndarray:
    take_max = params.mode == FusionMode.max_intensity
    out = np.full(canvas, -np.inf if take_max else np.inf, dtype=np.float64)
    reduce = np.maximum if take_max else np.minimum
    for p in placements:
        tile = _as_channels(tiles[p.tile_id])
        h, w = tile.shape[-2:]
        view = out[:, p.y:p.y + h, p.x:p.x + w]
        reduce(view, tile, out=view)
    out[~np.isfinite(out)] = 0.0
    return out


def fuse_patch(
    transforms: pd.DataFrame,
    pixels: Mapping[int, np.ndarray],
    params: Optional[FusionParameters] = None,
    calibration: Optional[float] = None,
) -> FusedImage:
    """Composite translated tiles into one image.

    Args:
        transforms: table indexed by tile id with `dx` and `dy` columns, the
            translation of each tile relative to the mosaic origin.
        pixels: tile id -> pixel buffer, (Y, X) or (C, Y, X). Not modified.
        params: fusion parameters.
        calibration: physical pixel size copied onto the result.

    Returns:
        The fused image, same dtype and channel count as the tiles.

    Raises:
        EmptyTileSetError: if `transforms` is empty.
        IncompatiblePixelTypeError: if the tiles differ in dtype or channel layout.
    """
    if params is None:
        params = FusionParameters()
    if transforms.empty:
        raise EmptyTileSetError("Cannot fuse a patch without tiles")
    transforms = transforms.sort_index()
    tile_ids = [int(i) for i in transforms.index]
    tiles = {i: pixels[i] for i in tile_ids}
    dtype, channels = check_compatible([tiles[i] for i in tile_ids])
    single_channel = tiles[tile_ids[0]].ndim == 2

    interpolate = params.subpixel_interpolation and params.mode in (
        FusionMode.linear_blend,
        FusionMode.average,
    )
    placements, origin = _placements(transforms, interpolate)
    pad = 1 if interpolate else 0
    height = max(p.y + tiles[p.tile_id].shape[-2] + pad for p in placements)
    width = max(p.x + tiles[p.tile_id].shape[-1] + pad for p in placements)
    canvas = (channels, height, width)
    _check_memory(canvas, dtype)

    if params.mode in (FusionMode.linear_blend, FusionMode.average):
        fused = _fuse_weighted(tiles, placements, canvas, params, interpolate)
    elif params.mode == FusionMode.nearest:
        fused = _fuse_nearest(tiles, placements, canvas, params)
    elif params.mode in (FusionMode.max_intensity, FusionMode.min_intensity):
        fused = _fuse_extremum(tiles, placements, canvas, params)
    else:
        raise ValueError(f"Unknown fusion mode: {params.mode}")

    result = _cast(fused, dtype)
    if single_channel:
        result = result[0]
    logger.info(
        f"Fused {len(tile_ids)} tiles into {result.shape} {dtype} ({params.mode.value})"
    )
    return FusedImage(pixels=result, calibration=calibration, origin=origin)

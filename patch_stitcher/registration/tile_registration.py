"""Registration of the tiles of one patch.

Starting from nominal (stage) positions, every pair of tiles whose nominal
footprints overlap is correlated to measure their true relative offset. The
pairwise offsets are then reconciled into one translation per tile (see
`_global_optimization`).

Pairwise correlations are independent of each other and run in a thread pool
(numpy's FFTs release the GIL); reconciliation waits for all of them.
"""
import logging
import os
from dataclasses import dataclass
from multiprocessing.pool import ThreadPool
from typing import Optional

import numpy as np
import pandas as pd

from ..benchmarking_util import debug_timing
from ..errors import RegistrationFailed
from ..parameters import RegistrationParameters
from ._global_optimization import PairTranslation, reconcile_translations
from ._translation_computation import compute_translation
from ._typing_utils import NumArray, PixelTable

logger = logging.getLogger(__name__)

MIN_OVERLAP_EXTENT = 2


@dataclass(frozen=True)
class OverlapPair:
    """Two tiles whose nominal footprints overlap, with the overlap in each tile's frame."""

    i: int
    j: int
    # (y0, y1, x0, x1) slices of the overlap, in pixels of tile i and tile j.
    region_i: tuple[int, int, int, int]
    region_j: tuple[int, int, int, int]
    # Integer nominal offset of tile j relative to tile i, (dx, dy).
    nominal_offset: tuple[int, int]


def registration_plane(pixels: NumArray, channel: Optional[int] = None) -> NumArray:
    """2D plane used to register a tile.

    Multi-channel buffers (C, Y, X) are reduced to one channel, or to the
    channel average when `channel` is None.
    """
    if pixels.ndim == 2:
        return pixels
    if pixels.ndim != 3:
        raise ValueError(f"Unexpected tile shape: {pixels.shape}")
    if channel is not None:
        return pixels[channel]
    return pixels.mean(axis=0, dtype=np.float64)


def find_overlapping_pairs(
    nominal: pd.DataFrame, shapes: dict[int, tuple[int, int]]
) -> list[OverlapPair]:
    """All tile pairs whose nominal footprints overlap by at least two pixels per axis.

    Args:
        nominal: position table with `x` and `y` columns, indexed by tile id.
        shapes: tile id -> (height, width).

    Returns:
        Pairs ordered by (i, j) with i < j.
    """
    ids = sorted(int(i) for i in nominal.index)
    corners = {
        i: (int(round(nominal.at[i, "x"])), int(round(nominal.at[i, "y"]))) for i in ids
    }
    pairs = []
    for a, i in enumerate(ids):
        xi, yi = corners[i]
        hi, wi = shapes[i]
        for j in ids[a + 1:]:
            xj, yj = corners[j]
            hj, wj = shapes[j]
            x0, x1 = max(xi, xj), min(xi + wi, xj + wj)
            y0, y1 = max(yi, yj), min(yi + hi, yj + hj)
            if x1 - x0 < MIN_OVERLAP_EXTENT or y1 - y0 < MIN_OVERLAP_EXTENT:
                continue
            pairs.append(
                OverlapPair(
                    i=i,
                    j=j,
                    region_i=(y0 - yi, y1 - yi, x0 - xi, x1 - xi),
                    region_j=(y0 - yj, y1 - yj, x0 - xj, x1 - xj),
                    nominal_offset=(xj - xi, yj - yi),
                )
            )
    return pairs


def _crop(plane: NumArray, region: tuple[int, int, int, int]) -> NumArray:
    y0, y1, x0, x1 = region
    return plane[y0:y1, x0:x1]


def compute_pair_translation(
    plane_i: NumArray,
    plane_j: NumArray,
    pair: OverlapPair,
    params: RegistrationParameters,
) -> PairTranslation:
    """Measure the offset of tile j relative to tile i.

    With `compute_overlap`, only the nominal overlap of the two tiles is
    correlated and the measured shift is the error of the nominal offset.
    Otherwise the full tiles are correlated and the shift is the offset itself.
    """
    if params.compute_overlap:
        crop_i = _crop(plane_i, pair.region_i)
        crop_j = _crop(plane_j, pair.region_j)
        base_dx, base_dy = pair.nominal_offset
    else:
        if plane_i.shape != plane_j.shape:
            raise ValueError(
                f"Tiles {pair.i} and {pair.j} differ in shape; correlating whole tiles needs equal shapes"
            )
        crop_i, crop_j = plane_i, plane_j
        base_dx, base_dy = 0, 0

    shift = compute_translation(
        crop_i,
        crop_j,
        check_peaks=params.check_peaks,
        subpixel=params.subpixel,
        upsample_factor=params.upsample_factor,
    )
    # image1[u] == image2[u - shift]: tile j sits `shift` further than assumed.
    return PairTranslation(
        i=pair.i,
        j=pair.j,
        dx=base_dx + shift.x,
        dy=base_dy + shift.y,
        ncc=shift.ncc,
    )


def register_patch(
    nominal: pd.DataFrame,
    pixels: PixelTable,
    params: Optional[RegistrationParameters] = None,
) -> pd.DataFrame:
    """Refine the nominal positions of one patch's tiles.

    Args:
        nominal: position table indexed by tile id with `x` and `y` columns (pixels).
        pixels: tile id -> pixel buffer, (Y, X) or (C, Y, X). Not modified.
        params: registration parameters.

    Returns:
        Copy of `nominal` with `dx`, `dy` (refined translation relative to the
        mosaic origin) and `registered` columns. Tiles without a trusted pair
        keep their nominal position.

    Raises:
        RegistrationFailed: if the patch has no tiles.
    """
    if params is None:
        params = RegistrationParameters()
    if nominal.empty:
        raise RegistrationFailed("Cannot register a patch without tiles")
    missing = [int(i) for i in nominal.index if int(i) not in pixels]
    if missing:
        raise KeyError(f"No pixel data for tiles {missing}")

    if len(nominal) == 1:
        return reconcile_translations(nominal, [])

    tile_ids = sorted(int(i) for i in nominal.index)
    planes = {i: registration_plane(pixels[i], params.channel) for i in tile_ids}
    shapes = {i: planes[i].shape[-2:] for i in tile_ids}
    pairs = find_overlapping_pairs(nominal, shapes)
    logger.info(f"Registering {len(tile_ids)} tiles over {len(pairs)} overlapping pairs")

    def measure(pair: OverlapPair) -> PairTranslation:
        return compute_pair_translation(planes[pair.i], planes[pair.j], pair, params)

    with debug_timing(f"pairwise translations ({len(pairs)} pairs)", logger=logger):
        workers = params.max_workers or os.cpu_count() or 1
        if workers > 1 and len(pairs) > 1:
            with ThreadPool(min(workers, len(pairs))) as pool:
                translations = pool.map(measure, pairs)
        else:
            translations = [measure(pair) for pair in pairs]

    for t in translations:
        logger.debug(f"pair ({t.i}, {t.j}): dx={t.dx:.2f} dy={t.dy:.2f} ncc={t.ncc:.3f}")

    with debug_timing("global optimization", logger=logger):
        result = reconcile_translations(
            nominal,
            translations,
            quality_threshold=params.quality_threshold,
            max_relative_residual=params.max_relative_residual,
            max_absolute_residual=params.max_absolute_residual,
        )

    fallback = [int(i) for i in result.index[~result["registered"]]]
    if fallback:
        logger.info(f"{len(fallback)} tiles keep their nominal position: {fallback}")
    return result

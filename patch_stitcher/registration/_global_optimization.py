"""Global optimization of tile positions from pairwise translations.

Pairwise shifts measured between overlapping tiles are generally not mutually
consistent: going around a loop of tiles does not bring you back to where you
started. Positions are therefore fitted by weighted linear least squares over
all trusted pairs:

    minimize  sum_ij  w_ij * || (p_j - p_i) - t_ij ||^2

where t_ij is the measured offset of tile j relative to tile i and w_ij its
correlation score. Translations are only defined up to a common offset, so in
each connected group of tiles the lowest tile id is pinned to its nominal
position. Spreading the loop error over every pair (instead of chaining pairs
along a spanning tree) keeps errors from accumulating into drift across large
mosaics.

Pairs that disagree strongly with the fit are removed one at a time (worst
first) and the fit is repeated. Tiles without any trusted pair keep their
nominal position.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import networkx as nx
import numpy as np
import pandas as pd
import scipy.sparse
import scipy.sparse.linalg

logger = logging.getLogger(__name__)

MIN_PAIR_WEIGHT = 1e-3
# Residuals below this many pixels never trigger outlier removal.
MIN_OUTLIER_RESIDUAL = 0.95


@dataclass(frozen=True)
class PairTranslation:
    """Measured offset of tile `j` relative to tile `i`: p_j - p_i = (dx, dy)."""

    i: int
    j: int
    dx: float
    dy: float
    ncc: float

    @property
    def weight(self) -> float:
        return max(float(self.ncc), MIN_PAIR_WEIGHT)


def trusted_pairs(
    pairs: Iterable[PairTranslation], quality_threshold: float
) -> list[PairTranslation]:
    """Pairs whose score is finite and at least `quality_threshold`, in (i, j) order."""
    kept = []
    for pair in pairs:
        if not np.isfinite(pair.ncc) or pair.ncc < quality_threshold:
            logger.debug(
                f"Ignoring pair ({pair.i}, {pair.j}): ncc {pair.ncc:.3f} < {quality_threshold}"
            )
            continue
        kept.append(pair)
    return sorted(kept, key=lambda p: (p.i, p.j))


def solve_component(
    tile_ids: Sequence[int],
    pairs: Sequence[PairTranslation],
    nominal: pd.DataFrame,
) -> dict[int, tuple[float, float]]:
    """Least-squares positions of one connected group of tiles.

    The lowest id is anchored at its nominal position; the other positions
    solve the weighted normal equations of the pair constraints.

    Returns:
        tile id -> (x, y)
    """
    ids = sorted(tile_ids)
    anchor = ids[0]
    anchor_xy = (float(nominal.at[anchor, "x"]), float(nominal.at[anchor, "y"]))
    unknown = {tile_id: col for col, tile_id in enumerate(ids[1:])}
    if not unknown:
        return {anchor: anchor_xy}

    rows, cols, vals = [], [], []
    rhs = np.zeros((len(pairs), 2), dtype=np.float64)
    for r, pair in enumerate(pairs):
        sqrt_w = np.sqrt(pair.weight)
        target = np.array([pair.dx, pair.dy], dtype=np.float64)
        for tile_id, sign in ((pair.j, 1.0), (pair.i, -1.0)):
            if tile_id == anchor:
                target -= sign * np.asarray(anchor_xy)
            else:
                rows.append(r)
                cols.append(unknown[tile_id])
                vals.append(sign * sqrt_w)
        rhs[r] = sqrt_w * target

    design = scipy.sparse.csr_matrix(
        (vals, (rows, cols)), shape=(len(pairs), len(unknown))
    )
    normal = (design.T @ design).tocsc()
    solved = {anchor: anchor_xy}
    solution = np.column_stack(
        [
            np.atleast_1d(scipy.sparse.linalg.spsolve(normal, design.T @ rhs[:, axis]))
            for axis in range(2)
        ]
    )
    for tile_id, col in unknown.items():
        solved[tile_id] = (float(solution[col, 0]), float(solution[col, 1]))
    return solved


def pair_residuals(
    pairs: Sequence[PairTranslation], positions: dict[int, tuple[float, float]]
) -> np.ndarray:
    """Distance between each measured offset and the offset implied by `positions`."""
    residuals = np.empty(len(pairs), dtype=np.float64)
    for k, pair in enumerate(pairs):
        xi, yi = positions[pair.i]
        xj, yj = positions[pair.j]
        residuals[k] = np.hypot((xj - xi) - pair.dx, (yj - yi) - pair.dy)
    return residuals


def compute_final_positions(
    nominal: pd.DataFrame,
    pairs: Sequence[PairTranslation],
) -> tuple[dict[int, tuple[float, float]], set[int]]:
    """Solve every connected component of the pair graph.

    Returns:
        (tile id -> (x, y) for every tile, ids of the tiles placed by a pair fit)
    """
    graph = nx.Graph()
    graph.add_nodes_from(int(i) for i in nominal.index)
    for pair in pairs:
        graph.add_edge(pair.i, pair.j)

    positions = {
        int(i): (float(row.x), float(row.y)) for i, row in nominal.iterrows()
    }
    registered: set[int] = set()
    for component in sorted(nx.connected_components(graph), key=min):
        if len(component) < 2:
            continue
        component_pairs = [p for p in pairs if p.i in component]
        positions.update(solve_component(sorted(component), component_pairs, nominal))
        registered.update(component)
    return positions, registered


def reconcile_translations(
    nominal: pd.DataFrame,
    pairs: Iterable[PairTranslation],
    quality_threshold: float = 0.3,
    max_relative_residual: float = 2.5,
    max_absolute_residual: float = 3.5,
) -> pd.DataFrame:
    """Reconcile pairwise translations into one translation per tile.

    Args:
        nominal: position table indexed by tile id with `x` and `y` columns.
        pairs: measured pairwise offsets.
        quality_threshold: minimum score for a pair to be used.
        max_relative_residual: a pair is an outlier when its residual exceeds
            this multiple of the mean residual and `MIN_OUTLIER_RESIDUAL` px...
        max_absolute_residual: ...or when the mean residual exceeds this many px.

    Returns:
        Copy of `nominal` with added columns `dx`, `dy` (translation of each
        tile relative to the mosaic origin) and `registered` (False for tiles
        that kept their nominal position).
    """
    active = trusted_pairs(pairs, quality_threshold)
    unknown = {p.i for p in active} | {p.j for p in active}
    missing = unknown - {int(i) for i in nominal.index}
    if missing:
        raise ValueError(f"Pairs reference tiles without a nominal position: {sorted(missing)}")

    while True:
        positions, registered = compute_final_positions(nominal, active)
        if not active:
            break
        residuals = pair_residuals(active, positions)
        mean_residual = float(residuals.mean())
        worst = max(
            range(len(active)), key=lambda k: (round(float(residuals[k]), 6), -active[k].ncc)
        )
        max_residual = float(residuals[worst])
        is_outlier = (
            max_residual > max_relative_residual * mean_residual
            and max_residual > MIN_OUTLIER_RESIDUAL
        ) or mean_residual > max_absolute_residual
        if not is_outlier:
            break
        dropped = active.pop(worst)
        logger.info(
            f"Removing pair ({dropped.i}, {dropped.j}) from the global fit: "
            f"residual {max_residual:.2f}px, mean {mean_residual:.2f}px"
        )

    result = nominal.copy()
    result["dx"] = [positions[int(i)][0] for i in result.index]
    result["dy"] = [positions[int(i)][1] for i in result.index]
    result["registered"] = [int(i) in registered for i in result.index]
    return result

"""Grouping of tile positions into spatially independent patches.

Stage positions of one well may belong to several unrelated areas (separate
wells of a plate, separate regions of a slide). Tiles are grouped so that each
group can be registered and fused on its own.

Two strategies are available:

- `greedy`: tiles are visited in ascending id order and join the first
  existing patch whose bounding box, grown by `footprint_margin` tile
  footprints on every side, contains the tile's position. Otherwise they start
  a new patch. The result can depend on visiting order when a tile is close to
  two patches, and a patch's grown bounding box can reach tiles whose own
  footprint does not overlap any member.
- `connected_components`: two tiles are linked when one lies within the grown
  footprint box of the other. Patches are the connected components of that
  graph, which makes them independent of visiting order.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

import networkx as nx

from .coordinates import TilePosition
from .parameters import ClusteringMethod, ImagePlaneDims

logger = logging.getLogger(__name__)


@dataclass
class Patch:
    """A group of tiles fused into one image.

    `xmin`, `xmax`, `ymin` and `ymax` always form the tight bounding box of the
    positions in `elements`.
    """

    elements: dict[int, TilePosition] = field(default_factory=dict)
    xmin: float = float("inf")
    xmax: float = float("-inf")
    ymin: float = float("inf")
    ymax: float = float("-inf")

    @classmethod
    def from_positions(cls, positions: Iterable[TilePosition]) -> "Patch":
        patch = cls()
        for position in positions:
            patch.add(position)
        return patch

    @property
    def bbox(self) -> tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax) of the member positions."""
        return (self.xmin, self.xmax, self.ymin, self.ymax)

    @property
    def tile_ids(self) -> list[int]:
        return sorted(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def add(self, position: TilePosition) -> None:
        self.elements[position.id] = position
        self.xmin = min(self.xmin, position.x)
        self.xmax = max(self.xmax, position.x)
        self.ymin = min(self.ymin, position.y)
        self.ymax = max(self.ymax, position.y)

    def accepts(self, position: TilePosition, margin_x: float, margin_y: float) -> bool:
        """Whether the position lies inside the bounding box grown by the margins."""
        return (
            self.xmin - margin_x <= position.x <= self.xmax + margin_x
            and self.ymin - margin_y <= position.y <= self.ymax + margin_y
        )


PositionsArg = Union[Mapping[int, TilePosition], Iterable[TilePosition]]


def _sorted_positions(positions: PositionsArg) -> list[TilePosition]:
    if isinstance(positions, Mapping):
        positions = positions.values()
    return sorted(positions, key=lambda p: p.id)


def cluster_greedy(
    positions: PositionsArg, margin_x: float, margin_y: float
) -> list[Patch]:
    """Single pass clustering against the running bounding box of each patch."""
    patches: list[Patch] = []
    for position in _sorted_positions(positions):
        for patch in patches:
            if patch.accepts(position, margin_x, margin_y):
                patch.add(position)
                break
        else:
            patches.append(Patch.from_positions([position]))
    return patches


def proximity_graph(
    positions: PositionsArg, margin_x: float, margin_y: float
) -> nx.Graph:
    """Graph with one node per tile and an edge between every pair of nearby tiles."""
    ordered = _sorted_positions(positions)
    graph = nx.Graph()
    graph.add_nodes_from(p.id for p in ordered)
    # Sweep along x so only candidates within margin_x are compared.
    by_x = sorted(ordered, key=lambda p: (p.x, p.id))
    for i, first in enumerate(by_x):
        for second in by_x[i + 1:]:
            if second.x - first.x > margin_x:
                break
            if abs(second.y - first.y) <= margin_y:
                graph.add_edge(first.id, second.id)
    return graph


def cluster_connected_components(
    positions: PositionsArg, margin_x: float, margin_y: float
) -> list[Patch]:
    """Order independent clustering: connected components of the proximity graph."""
    ordered = _sorted_positions(positions)
    by_id = {p.id: p for p in ordered}
    graph = proximity_graph(ordered, margin_x, margin_y)
    components = sorted(nx.connected_components(graph), key=min)
    return [Patch.from_positions(by_id[i] for i in sorted(c)) for c in components]


def cluster_patches(
    positions: PositionsArg,
    footprint: ImagePlaneDims,
    footprint_margin: float = 1.0,
    method: ClusteringMethod = ClusteringMethod.greedy,
) -> list[Patch]:
    """Partition tile positions into disjoint, non-empty patches.

    Args:
        positions: normalized tile positions (a mapping by id, or an iterable).
        footprint: tile size in pixels.
        footprint_margin: multiple of the footprint by which bounding boxes are grown.
        method: clustering strategy.

    Returns:
        Patches ordered by their lowest tile id. Every tile is in exactly one patch.
    """
    margin_x = footprint_margin * footprint.width_px
    margin_y = footprint_margin * footprint.height_px
    if method == ClusteringMethod.greedy:
        patches = cluster_greedy(positions, margin_x, margin_y)
    elif method == ClusteringMethod.connected_components:
        patches = cluster_connected_components(positions, margin_x, margin_y)
    else:
        raise ValueError(f"Unknown clustering method: {method}")

    patches.sort(key=lambda p: min(p.elements))
    logger.info(
        f"Clustered {sum(len(p) for p in patches)} tiles into {len(patches)} patches "
        f"({method.value}, sizes {[len(p) for p in patches]})"
    )
    return patches

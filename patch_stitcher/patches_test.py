import random
import unittest

from .coordinates import TilePosition
from .parameters import ClusteringMethod, ImagePlaneDims
from .patches import Patch, cluster_patches, proximity_graph

FOOTPRINT = ImagePlaneDims(2048, 2048)
METHODS = (ClusteringMethod.greedy, ClusteringMethod.connected_components)


def positions(*xy: tuple[float, float]) -> dict[int, TilePosition]:
    return {i: TilePosition(i, float(x), float(y)) for i, (x, y) in enumerate(xy)}


def random_layout(seed: int, n: int = 60) -> dict[int, TilePosition]:
    rng = random.Random(seed)
    # A few well-separated clouds of tiles.
    centers = [(0, 0), (40000, 0), (0, 40000), (40000, 40000)]
    layout = {}
    for i in range(n):
        cx, cy = rng.choice(centers)
        layout[i] = TilePosition(i, cx + rng.uniform(-5000, 5000), cy + rng.uniform(-5000, 5000))
    return layout


def membership(patches: list[Patch]) -> list[list[int]]:
    return [p.tile_ids for p in patches]


class ClusterPatchesTest(unittest.TestCase):
    def test_far_tiles_are_separate(self) -> None:
        for method in METHODS:
            with self.subTest(method=method):
                patches = cluster_patches(positions((0, 0), (6000, 6000)), FOOTPRINT, method=method)
                self.assertEqual(membership(patches), [[0], [1]])

    def test_close_tiles_are_together(self) -> None:
        for method in METHODS:
            with self.subTest(method=method):
                patches = cluster_patches(positions((0, 0), (1500, 0)), FOOTPRINT, method=method)
                self.assertEqual(membership(patches), [[0, 1]])

    def test_boundary_is_inclusive(self) -> None:
        patches = cluster_patches(positions((0, 0), (2048, 2048)), FOOTPRINT)
        self.assertEqual(membership(patches), [[0, 1]])
        patches = cluster_patches(positions((0, 0), (2048.5, 0)), FOOTPRINT)
        self.assertEqual(membership(patches), [[0], [1]])

    def test_margin_scales_footprint(self) -> None:
        layout = positions((0, 0), (3000, 0))
        self.assertEqual(len(cluster_patches(layout, FOOTPRINT, footprint_margin=1.0)), 2)
        self.assertEqual(len(cluster_patches(layout, FOOTPRINT, footprint_margin=1.5)), 1)
        # Without margin only identical positions group together.
        layout = positions((0, 0), (0, 0), (1, 0))
        self.assertEqual(
            membership(cluster_patches(layout, FOOTPRINT, footprint_margin=0.0)), [[0, 1], [2]]
        )

    def test_identical_positions_make_one_patch(self) -> None:
        layout = positions(*[(12.5, -3.0)] * 7)
        for method in METHODS:
            with self.subTest(method=method):
                patches = cluster_patches(layout, FOOTPRINT, method=method)
                self.assertEqual(membership(patches), [list(range(7))])
                self.assertEqual(patches[0].bbox, (12.5, 12.5, -3.0, -3.0))

    def test_chain_grows_patch(self) -> None:
        # Each tile is within one footprint of the previous one only.
        layout = positions(*[(i * 2000, 0) for i in range(5)])
        patches = cluster_patches(layout, FOOTPRINT)
        self.assertEqual(membership(patches), [[0, 1, 2, 3, 4]])
        self.assertEqual(patches[0].bbox, (0.0, 8000.0, 0.0, 0.0))

    def test_partition_invariants(self) -> None:
        for seed in range(5):
            layout = random_layout(seed)
            for method in METHODS:
                with self.subTest(seed=seed, method=method):
                    patches = cluster_patches(layout, FOOTPRINT, method=method)
                    seen = [i for p in patches for i in p.elements]
                    self.assertEqual(sorted(seen), sorted(layout))
                    self.assertEqual(len(seen), len(set(seen)))
                    for patch in patches:
                        self.assertGreater(len(patch), 0)
                        xs = [e.x for e in patch.elements.values()]
                        ys = [e.y for e in patch.elements.values()]
                        self.assertEqual(patch.bbox, (min(xs), max(xs), min(ys), max(ys)))
                    self.assertEqual(
                        [min(p.elements) for p in patches],
                        sorted(min(p.elements) for p in patches),
                    )

    def test_deterministic(self) -> None:
        layout = random_layout(11)
        shuffled = list(layout.values())
        random.Random(3).shuffle(shuffled)
        for method in METHODS:
            with self.subTest(method=method):
                first = membership(cluster_patches(layout, FOOTPRINT, method=method))
                self.assertEqual(
                    first, membership(cluster_patches(layout, FOOTPRINT, method=method))
                )
                # Tiles are always visited by ascending id, whatever the input order.
                self.assertEqual(
                    first, membership(cluster_patches(shuffled, FOOTPRINT, method=method))
                )

    def test_greedy_does_not_bridge_existing_patches(self) -> None:
        footprint = ImagePlaneDims(10, 10)
        # Tile 2 lies between the patches started by tiles 0 and 1.
        layout = positions((0, 0), (20, 0), (10, 0))
        greedy = cluster_patches(layout, footprint, method=ClusteringMethod.greedy)
        self.assertEqual(membership(greedy), [[0, 2], [1]])
        components = cluster_patches(
            layout, footprint, method=ClusteringMethod.connected_components
        )
        self.assertEqual(membership(components), [[0, 1, 2]])

    def test_grown_bounding_box_reaches_past_members(self) -> None:
        footprint = ImagePlaneDims(10, 10)
        # Tile 2 is within the grown bounding box of {0, 1}, but more than a
        # footprint away from both of them.
        layout = positions((0, 0), (10, 10), (-10, 20))
        greedy = cluster_patches(layout, footprint, method=ClusteringMethod.greedy)
        self.assertEqual(membership(greedy), [[0, 1, 2]])
        components = cluster_patches(
            layout, footprint, method=ClusteringMethod.connected_components
        )
        self.assertEqual(membership(components), [[0, 1], [2]])

    def test_proximity_graph(self) -> None:
        graph = proximity_graph(positions((0, 0), (5, 5), (30, 0)), 10, 10)
        self.assertEqual(sorted(graph.nodes), [0, 1, 2])
        self.assertEqual(sorted(tuple(sorted(e)) for e in graph.edges), [(0, 1)])


class PatchTest(unittest.TestCase):
    def test_add_updates_bbox(self) -> None:
        patch = Patch()
        patch.add(TilePosition(4, 1.0, 2.0))
        patch.add(TilePosition(2, -1.0, 5.0))
        self.assertEqual(patch.bbox, (-1.0, 1.0, 2.0, 5.0))
        self.assertEqual(patch.tile_ids, [2, 4])
        self.assertEqual(len(patch), 2)

    def test_accepts(self) -> None:
        patch = Patch.from_positions([TilePosition(0, 0.0, 0.0)])
        self.assertTrue(patch.accepts(TilePosition(1, 10.0, -10.0), 10, 10))
        self.assertFalse(patch.accepts(TilePosition(1, 10.5, 0.0), 10, 10))

import math
import unittest

from .coordinates import (
    TilePosition,
    normalize_stage_positions,
    positions_table,
    validate_calibration,
)
from .errors import EmptyTileSetError, MissingCalibrationError


class NormalizeStagePositionsTest(unittest.TestCase):
    stage = {
        0: (1000.0, 200.0),
        1: (900.0, 200.0),
        2: (1000.0, 260.0),
        3: (1150.5, 110.0),
    }

    def test_reference_tile_is_origin(self) -> None:
        positions = normalize_stage_positions(self.stage, 0.5)
        self.assertEqual(positions[0], TilePosition(id=0, x=0.0, y=0.0))

    def test_formula(self) -> None:
        positions = normalize_stage_positions(self.stage, 0.5)
        # Stage X is inverted, Y is kept.
        self.assertEqual(positions[1].x, 200.0)
        self.assertEqual(positions[1].y, 0.0)
        self.assertEqual(positions[2].x, 0.0)
        self.assertEqual(positions[2].y, 120.0)
        self.assertAlmostEqual(positions[3].x, -301.0)
        self.assertAlmostEqual(positions[3].y, -180.0)

    def test_ids_are_kept_in_ascending_order(self) -> None:
        stage = {5: (0.0, 0.0), 2: (10.0, 0.0), 9: (0.0, 10.0)}
        positions = normalize_stage_positions(stage, 1.0)
        self.assertEqual(list(positions), [2, 5, 9])
        self.assertEqual(positions[2], TilePosition(2, 0.0, 0.0))
        self.assertEqual(positions[5].x, 10.0)

    def test_explicit_reference(self) -> None:
        positions = normalize_stage_positions(self.stage, 0.5, reference_id=1)
        self.assertEqual((positions[1].x, positions[1].y), (0.0, 0.0))
        self.assertEqual(positions[0].x, -200.0)

    def test_unknown_reference(self) -> None:
        with self.assertRaises(KeyError):
            normalize_stage_positions(self.stage, 0.5, reference_id=42)

    def test_single_tile(self) -> None:
        positions = normalize_stage_positions({7: (123.4, -56.7)}, 0.65)
        self.assertEqual(positions, {7: TilePosition(7, 0.0, 0.0)})

    def test_double_inversion_is_identity(self) -> None:
        inverted = normalize_stage_positions(self.stage, 0.5)
        mirrored_stage = {i: (-x, y) for i, (x, y) in self.stage.items()}
        reinverted = normalize_stage_positions(mirrored_stage, 0.5)
        plain = normalize_stage_positions(self.stage, 0.5, invert_x=False)
        for i in self.stage:
            self.assertEqual(inverted[i].x, -plain[i].x)
            self.assertEqual(reinverted[i].x, plain[i].x)
            self.assertEqual(reinverted[i].y, inverted[i].y)

    def test_invert_y(self) -> None:
        positions = normalize_stage_positions(self.stage, 0.5, invert_x=False, invert_y=True)
        self.assertEqual(positions[2].y, -120.0)
        self.assertEqual(positions[1].x, -200.0)

    def test_empty(self) -> None:
        with self.assertRaises(EmptyTileSetError):
            normalize_stage_positions({}, 0.5)
        # Also a ValueError for callers that do not know this package.
        with self.assertRaises(ValueError):
            normalize_stage_positions({}, 0.5)

    def test_missing_calibration(self) -> None:
        for calibration in (None, "abc", 0, -1.0, math.nan, math.inf):
            with self.subTest(calibration=calibration):
                with self.assertRaises(MissingCalibrationError):
                    normalize_stage_positions(self.stage, calibration)

    def test_calibration_is_checked_before_tiles(self) -> None:
        with self.assertRaises(MissingCalibrationError):
            normalize_stage_positions({}, None)

    def test_validate_calibration_accepts_strings(self) -> None:
        self.assertEqual(validate_calibration("0.325"), 0.325)


class PositionsTableTest(unittest.TestCase):
    def test_table(self) -> None:
        table = positions_table(
            [TilePosition(3, 1.0, 2.0), TilePosition(1, -5.0, 0.5)]
        )
        self.assertEqual(list(table.index), [1, 3])
        self.assertEqual(table.index.name, "tile")
        self.assertEqual(table.at[3, "x"], 1.0)
        self.assertEqual(table.at[1, "y"], 0.5)

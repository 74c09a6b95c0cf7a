import unittest

import numpy as np

from .channels import identify_channel, identify_channels
from .projection import ProjectionMethod, merge_channels, project_stack, subtract_background


class ProjectionTest(unittest.TestCase):
    def setUp(self) -> None:
        rng = np.random.default_rng(5)
        self.stack = rng.integers(0, 1000, size=(4, 16, 16), dtype=np.uint16)

    def test_max_projection(self) -> None:
        projected = project_stack(self.stack)
        np.testing.assert_array_equal(projected, self.stack.max(axis=0))
        self.assertEqual(projected.dtype, np.uint16)

    def test_min_projection(self) -> None:
        projected = project_stack(self.stack, ProjectionMethod.min)
        np.testing.assert_array_equal(projected, self.stack.min(axis=0))

    def test_single_plane(self) -> None:
        np.testing.assert_array_equal(project_stack(self.stack[0]), self.stack[0])

    def test_bad_shape(self) -> None:
        with self.assertRaises(ValueError):
            project_stack(np.zeros((2, 2, 4, 4)))

    def test_background_subtraction(self) -> None:
        _, xx = np.mgrid[:96, :96]
        plane = (1000 + 5 * xx).astype(np.uint16)
        plane[60:64, 60:64] += 2000
        corrected = subtract_background(plane, radius=10)
        self.assertEqual(corrected.dtype, np.uint16)
        # The linear gradient is removed, the small bright spot stays.
        self.assertLess(int(corrected[20, 20]), 50)
        self.assertGreater(int(corrected[61, 61]), 1500)

    def test_projection_with_background_subtraction(self) -> None:
        flat = np.full((3, 32, 32), 500, dtype=np.uint16)
        projected = project_stack(flat, subtract_bg=True, radius=5)
        self.assertEqual(projected.shape, (32, 32))
        self.assertEqual(int(projected.max()), 0)

    def test_merge_channels(self) -> None:
        merged = merge_channels([self.stack[0], self.stack[1]])
        self.assertEqual(merged.shape, (2, 16, 16))
        np.testing.assert_array_equal(merged[1], self.stack[1])

    def test_merge_mismatch(self) -> None:
        with self.assertRaises(ValueError):
            merge_channels([])
        with self.assertRaises(ValueError):
            merge_channels([self.stack[0], self.stack[0, :8]])
        with self.assertRaises(ValueError):
            merge_channels([self.stack[0], self.stack[1].astype(np.float32)])


class ChannelsTest(unittest.TestCase):
    def test_identify_channel(self) -> None:
        self.assertEqual(identify_channel("well_A1_DAPI"), "DAPI")
        self.assertEqual(identify_channel("Fluorescence_555_nm_Ex"), "555")
        self.assertEqual(identify_channel("BF_LED_matrix_full"), "BF")
        self.assertEqual(identify_channel("unknown"), "dapi")

    def test_identify_channels(self) -> None:
        identifiers, brightfield = identify_channels(["x_470", "x_BF", "x_640"])
        self.assertEqual(identifiers, ["470", "BF", "640"])
        self.assertEqual(brightfield, 1)
        self.assertIsNone(identify_channels(["x_470"])[1])

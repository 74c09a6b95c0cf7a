import json
import pathlib
import unittest

import numpy as np

from .acquisition import (
    TiffAcquisitionReader,
    TileRecord,
    WellInput,
    parse_image_filename,
    pixel_size_um,
)
from .errors import MissingCalibrationError, MissingChannelError
from .parameters import ImagePlaneDims
from .testutil import cut_tiles, temporary_acquisition_folder, textured_scene

SIZE = ImagePlaneDims(64, 48)


class WellInputTest(unittest.TestCase):
    def test_from_tiles(self) -> None:
        tiles = [
            TileRecord(id=1, absolute_x=5.0, absolute_y=6.0, pixels=np.zeros((2, 48, 64))),
            TileRecord(id=0, absolute_x=1.0, absolute_y=2.0, pixels=np.zeros((2, 48, 64))),
        ]
        well = WellInput.from_tiles("A1", tiles, 0.5, channel_names=["DAPI", "BF"])
        self.assertEqual(well.stage_positions, {1: (5.0, 6.0), 0: (1.0, 2.0)})
        self.assertEqual(well.footprint, ImagePlaneDims(64, 48))
        self.assertEqual(well.title, "A1_DAPI_BF")

        taken = well.take_pixels([0])
        self.assertEqual(list(taken), [0])
        self.assertEqual(list(well.pixels), [1])

    def test_duplicate_ids(self) -> None:
        tile = TileRecord(id=0, absolute_x=0.0, absolute_y=0.0, pixels=np.zeros((4, 4)))
        with self.assertRaises(ValueError):
            WellInput.from_tiles("A1", [tile, tile], 0.5)


class PixelSizeTest(unittest.TestCase):
    def test_pixel_size(self) -> None:
        params = {
            "objective": {"magnification": 20.0, "tube_lens_f_mm": 180.0},
            "sensor_pixel_size_um": 7.52,
            "tube_lens_mm": 180,
        }
        self.assertAlmostEqual(pixel_size_um(params), 0.376)
        params["pixel_binning"] = 2
        self.assertAlmostEqual(pixel_size_um(params), 0.752)

    def test_missing_key(self) -> None:
        with self.assertRaises(MissingCalibrationError):
            pixel_size_um({"objective": {"magnification": 20.0}})

    def test_parse_image_filename(self) -> None:
        parsed = parse_image_filename(pathlib.Path("B2_12_3_Fluorescence_488_nm_Ex.tiff"))
        self.assertEqual(
            (parsed.region, parsed.fov, parsed.z_level, parsed.channel),
            ("B2", 12, 3, "Fluorescence_488_nm_Ex"),
        )
        self.assertIsNone(parse_image_filename(pathlib.Path("coordinates.csv")))
        self.assertIsNone(parse_image_filename(pathlib.Path("B2_x_0_DAPI.tiff")))


class TiffAcquisitionReaderTest(unittest.TestCase):
    def setUp(self) -> None:
        scene = textured_scene(200, 200, seed=7)
        self.positions = {0: (0.0, 0.0), 1: (50.0, 0.0), 2: (0.0, 40.0)}
        self.tiles = cut_tiles(scene, self.positions, SIZE)

    def test_read_well(self) -> None:
        with temporary_acquisition_folder(
            {"A1": self.positions, "B2": {0: (0.0, 0.0)}},
            {"A1": self.tiles, "B2": {0: self.tiles[0]}},
            channel_names=("BF", "DAPI"),
            n_z=2,
        ) as folder:
            reader = TiffAcquisitionReader(str(folder))
            self.assertEqual(reader.well_names(), ["A1", "B2"])
            self.assertEqual(reader.channels, ["BF", "DAPI"])
            self.assertEqual(reader.brightfield_channel, 0)
            self.assertAlmostEqual(reader.pixel_size_um, 1.0)

            well = reader.read_well("A1")
            self.assertEqual(well.name, "A1")
            self.assertEqual(sorted(well.pixels), [0, 1, 2])
            self.assertEqual(well.footprint, SIZE)
            self.assertEqual(well.channel_names, ["BF", "DAPI"])
            self.assertEqual(well.title, "A1_BF_DAPI")
            self.assertAlmostEqual(well.pixel_calibration, 1.0)
            self.assertEqual(well.pixels[1].shape, (2, 48, 64))
            # Every z-level holds the same plane, so projections are the plane.
            np.testing.assert_array_equal(well.pixels[1][0], self.tiles[1])
            np.testing.assert_array_equal(well.pixels[1][1], self.tiles[1] + 1)
            # Stage positions in um: x is mirrored, y is not.
            self.assertAlmostEqual(well.stage_positions[1][0], -50.0)
            self.assertAlmostEqual(well.stage_positions[2][1], 40.0)

    def test_missing_channel_file(self) -> None:
        with temporary_acquisition_folder(
            {"A1": self.positions},
            {"A1": self.tiles},
            channel_names=("DAPI", "GFP"),
            skip_files=("A1_2_0_GFP.tiff",),
        ) as folder:
            reader = TiffAcquisitionReader(str(folder))
            with self.assertRaises(MissingChannelError):
                reader.read_well("A1")

    def test_missing_leading_channel_with_fewer_channels_requested(self) -> None:
        # Tile 1 has no BF file but still has two other channels.
        with temporary_acquisition_folder(
            {"A1": self.positions},
            {"A1": self.tiles},
            channel_names=("BF", "DAPI", "GFP"),
            skip_files=("A1_1_0_BF.tiff",),
        ) as folder:
            reader = TiffAcquisitionReader(str(folder), num_channels=2)
            np.testing.assert_array_equal(reader.read_tile("A1", 0)[0], self.tiles[0])
            with self.assertRaises(MissingChannelError):
                reader.read_tile("A1", 1)
            with self.assertRaises(MissingChannelError):
                reader.read_well("A1")

    def test_more_channels_requested_than_found(self) -> None:
        with temporary_acquisition_folder({"A1": self.positions}, {"A1": self.tiles}) as folder:
            reader = TiffAcquisitionReader(str(folder), num_channels=2)
            with self.assertRaises(MissingChannelError):
                reader.read_tile("A1", 0)

    def test_missing_calibration(self) -> None:
        with temporary_acquisition_folder({"A1": self.positions}, {"A1": self.tiles}) as folder:
            params_file = folder / "acquisition parameters.json"
            with open(params_file) as f:
                params = json.load(f)
            del params["sensor_pixel_size_um"]
            with open(params_file, "w") as f:
                json.dump(params, f)
            with self.assertRaises(MissingCalibrationError):
                TiffAcquisitionReader(str(folder))

import pathlib
import tempfile
import unittest

import pydantic
from pydantic_settings import CliApp

from .parameters import (
    ClusteringMethod,
    FusionMode,
    PatchStitchingParameters,
    PipelineCliParameters,
)


class ParametersTest(unittest.TestCase):
    def test_defaults(self) -> None:
        params = PatchStitchingParameters()
        self.assertTrue(params.registration.subpixel)
        self.assertEqual(params.registration.quality_threshold, 0.3)
        self.assertEqual(params.registration.check_peaks, 5)
        self.assertEqual(params.fusion.mode, FusionMode.linear_blend)
        self.assertEqual(params.clustering.footprint_margin, 1.0)
        self.assertEqual(params.clustering.method, ClusteringMethod.greedy)
        self.assertTrue(params.invert_x)
        self.assertFalse(params.invert_y)

    def test_roundtrip(self) -> None:
        params = PatchStitchingParameters.model_validate(
            {
                "registration": {"subpixel": False, "quality_threshold": 0.5},
                "fusion": {"mode": "nearest"},
                "clustering": {"footprint_margin": 2.0, "method": "connected_components"},
                "max_workers": 3,
            }
        )
        with tempfile.TemporaryDirectory() as d:
            path = str(pathlib.Path(d) / "params.json")
            params.to_json_file(path)
            loaded = PatchStitchingParameters.from_json_file(path)
        self.assertEqual(loaded, params)
        self.assertEqual(loaded.fusion.mode, FusionMode.nearest)
        self.assertFalse(loaded.registration.subpixel)

    def test_validation(self) -> None:
        with self.assertRaises(pydantic.ValidationError):
            PatchStitchingParameters.model_validate({"fusion": {"mode": "feather"}})
        with self.assertRaises(pydantic.ValidationError):
            PatchStitchingParameters.model_validate({"clustering": {"footprint_margin": -1}})
        with self.assertRaises(pydantic.ValidationError):
            PatchStitchingParameters.model_validate({"registration": {"check_peaks": 0}})

    def test_cli_parameters(self) -> None:
        with tempfile.TemporaryDirectory() as d:
            params = CliApp.run(
                PipelineCliParameters,
                cli_args=[
                    "--input_folder",
                    d,
                    "--registration.quality_threshold",
                    "0.6",
                    "--fusion.mode",
                    "nearest",
                    "--clustering.footprint_margin",
                    "0.5",
                    "--verbose",
                ],
            )
            self.assertEqual(params.input_folder, d)
            self.assertEqual(params.clustering.footprint_margin, 0.5)
            self.assertTrue(params.verbose)
            self.assertEqual(params.registration.quality_threshold, 0.6)
            self.assertEqual(params.fusion.mode, FusionMode.nearest)
            self.assertEqual(params.patches_folder, pathlib.Path(d + "_patches"))

    def test_missing_input_folder(self) -> None:
        with self.assertRaises(pydantic.ValidationError):
            PipelineCliParameters(input_folder="/does/not/exist/anywhere")

"""Reading the tiles of an acquisition, one well at a time.

A well is handed to the pipeline as a `WellInput`: the stage position of
every tile, the calibration and footprint shared by all tiles, and the
projected, channel-merged pixel buffer of every tile. Positions and pixels are
held in two tables keyed by tile id so pixel buffers can be released as soon as
the patch they belong to has been fused.

`TiffAcquisitionReader` reads acquisitions laid out as

    <input_folder>/
        acquisition parameters.json
        0/
            coordinates.csv          # region, fov, z_level, x (mm), y (mm), ...
            <region>_<fov>_<z>_<channel>.tiff

where every region is treated as one well and every fov as one tile.
"""
import json
import logging
import os
import pathlib
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

import numpy as np
import pandas as pd
import tifffile

from .channels import identify_channels
from .errors import MissingCalibrationError, MissingChannelError
from .parameters import ImagePlaneDims
from .projection import ProjectionMethod, merge_channels, project_stack

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".tiff", ".tif")
ACQUISITION_PARAMS_FILE = "acquisition parameters.json"
COORDINATES_FILE = "coordinates.csv"
IMAGE_SUBFOLDER = "0"
UM_PER_MM = 1000.0


@dataclass
class TileRecord:
    """One acquired tile: absolute stage position and its pixel buffer."""

    id: int
    absolute_x: float
    absolute_y: float
    pixels: np.ndarray


@dataclass
class WellInput:
    """Everything the pipeline needs to turn one well into fused patches."""

    name: str
    stage_positions: dict[int, tuple[float, float]]
    pixels: dict[int, np.ndarray]
    pixel_calibration: Optional[float]
    footprint: ImagePlaneDims
    channel_names: list[str] = field(default_factory=list)

    @classmethod
    def from_tiles(
        cls,
        name: str,
        tiles: Iterable[TileRecord],
        pixel_calibration: Optional[float],
        footprint: Optional[ImagePlaneDims] = None,
        channel_names: Optional[list[str]] = None,
    ) -> "WellInput":
        """Split tile records into the position and pixel tables.

        The footprint defaults to the size of the lowest-id tile.
        """
        stage_positions = {}
        pixels = {}
        for tile in tiles:
            if tile.id in stage_positions:
                raise ValueError(f"Duplicate tile id {tile.id} in well {name}")
            stage_positions[tile.id] = (float(tile.absolute_x), float(tile.absolute_y))
            pixels[tile.id] = tile.pixels
        if footprint is None and pixels:
            height, width = pixels[min(pixels)].shape[-2:]
            footprint = ImagePlaneDims(width_px=width, height_px=height)
        return cls(
            name=name,
            stage_positions=stage_positions,
            pixels=pixels,
            pixel_calibration=pixel_calibration,
            footprint=footprint or ImagePlaneDims(0, 0),
            channel_names=list(channel_names or []),
        )

    @property
    def title(self) -> str:
        """`<well>_<ch1>_<ch2>...`"""
        return "_".join([self.name, *self.channel_names])

    def take_pixels(self, tile_ids: Iterable[int]) -> dict[int, np.ndarray]:
        """Remove the pixel buffers of the given tiles from the well and return them."""
        return {i: self.pixels.pop(i) for i in tile_ids}


class AcquisitionReader(Protocol):
    def well_names(self) -> list[str]: ...

    def read_well(self, well: str) -> WellInput: ...


def pixel_size_um(acquisition_params: dict) -> float:
    """Physical size of one image pixel from objective and sensor parameters.

    Raises:
        MissingCalibrationError: if a required key is absent.
    """
    try:
        obj_mag = acquisition_params["objective"]["magnification"]
        obj_tube_lens_mm = acquisition_params["objective"]["tube_lens_f_mm"]
        sensor_pixel_size_um = acquisition_params["sensor_pixel_size_um"]
        tube_lens_mm = acquisition_params["tube_lens_mm"]
    except (KeyError, TypeError) as e:
        raise MissingCalibrationError(
            f"Acquisition parameters lack a pixel size entry: {e}"
        ) from e
    binning = acquisition_params.get("pixel_binning", 1)
    obj_focal_length_mm = obj_tube_lens_mm / obj_mag
    actual_mag = tube_lens_mm / obj_focal_length_mm
    return sensor_pixel_size_um * binning / actual_mag


@dataclass(frozen=True)
class _ImageFile:
    path: pathlib.Path
    region: str
    fov: int
    z_level: int
    channel: str


def parse_image_filename(path: pathlib.Path) -> Optional[_ImageFile]:
    """Parse `<region>_<fov>_<z>_<channel>.tiff`, or None for other files."""
    if path.suffix.lower() not in IMAGE_SUFFIXES:
        return None
    parts = path.name.split("_", 3)
    if len(parts) != 4:
        return None
    region, fov, z_level, channel = parts
    try:
        return _ImageFile(
            path=path,
            region=region,
            fov=int(fov),
            z_level=int(z_level),
            channel=os.path.splitext(channel)[0],
        )
    except ValueError:
        return None


class TiffAcquisitionReader:
    """Reads, projects and merges the tiles of an acquisition folder, well by well."""

    def __init__(
        self,
        input_folder: str,
        channel_names: Optional[list[str]] = None,
        num_channels: Optional[int] = None,
        brightfield_channel: Optional[int] = None,
        background_subtraction: bool = False,
        rolling_ball_radius: float = 50.0,
    ):
        self.input_folder = pathlib.Path(input_folder)
        self.background_subtraction = background_subtraction
        self.rolling_ball_radius = rolling_ball_radius

        with open(self.input_folder / ACQUISITION_PARAMS_FILE) as f:
            self.acquisition_params = json.load(f)
        self.pixel_size_um = pixel_size_um(self.acquisition_params)
        logger.info(f"pixel_size_um: {self.pixel_size_um}")

        image_folder = self.input_folder / IMAGE_SUBFOLDER
        self.coordinates = pd.read_csv(image_folder / COORDINATES_FILE)

        # (region, fov) -> channel -> [(z, path)]
        self._files: dict[tuple[str, int], dict[str, list[tuple[int, pathlib.Path]]]] = (
            defaultdict(lambda: defaultdict(list))
        )
        found_channels = set()
        for path in sorted(image_folder.iterdir()):
            parsed = parse_image_filename(path)
            if parsed is None:
                continue
            self._files[(parsed.region, parsed.fov)][parsed.channel].append(
                (parsed.z_level, path)
            )
            found_channels.add(parsed.channel)

        # Channel order follows sorted file names.
        self.channels = sorted(found_channels)
        self.num_channels = num_channels or len(self.channels)
        identifiers, guessed_bf = identify_channels(self.channels)
        self.channel_names = channel_names or identifiers
        self.brightfield_channel = (
            brightfield_channel if brightfield_channel is not None else guessed_bf
        )
        logger.info(
            f"Found channels {self.channels} (named {self.channel_names}, "
            f"brightfield index {self.brightfield_channel})"
        )

    def well_names(self) -> list[str]:
        return sorted(str(r) for r in self.coordinates["region"].unique())

    def _read_stack(self, files: list[tuple[int, pathlib.Path]]) -> np.ndarray:
        planes = []
        for _, path in sorted(files):
            image = tifffile.imread(path)
            planes.extend(image if image.ndim == 3 else [image])
        return np.stack(planes)

    def read_tile(self, region: str, fov: int) -> np.ndarray:
        """Projected (C, Y, X) buffer of one tile.

        Raises:
            MissingChannelError: if the tile lacks a file for one of the well's channels.
        """
        by_channel = self._files.get((region, fov), {})
        expected = self.channels[: self.num_channels]
        missing = [c for c in expected if not by_channel.get(c)]
        if missing or len(expected) < self.num_channels:
            raise MissingChannelError(
                f"Tile {region}_{fov} is missing channels {missing}; "
                f"expected {self.num_channels} channels, found {self.channels}"
            )

        projections = []
        for index, channel in enumerate(expected):
            stack = self._read_stack(by_channel[channel])
            if index == self.brightfield_channel:
                projection = project_stack(stack, ProjectionMethod.min)
            else:
                projection = project_stack(
                    stack,
                    ProjectionMethod.max,
                    subtract_bg=self.background_subtraction,
                    radius=self.rolling_ball_radius,
                )
            del stack
            projections.append(projection)
        merged = merge_channels(projections)
        projections.clear()
        return merged

    def read_well(self, well: str) -> WellInput:
        rows = self.coordinates[self.coordinates["region"].astype(str) == well]
        if "z_level" in rows.columns:
            rows = rows.sort_values("z_level")
        rows = rows.drop_duplicates(subset="fov", keep="first").sort_values("fov")

        tiles = []
        for _, row in rows.iterrows():
            fov = int(row["fov"])
            # Stage positions are in mm, calibration in um per pixel.
            tiles.append(
                TileRecord(
                    id=fov,
                    absolute_x=float(row["x (mm)"]) * UM_PER_MM,
                    absolute_y=float(row["y (mm)"]) * UM_PER_MM,
                    pixels=self.read_tile(well, fov),
                )
            )
        logger.info(f"Read {len(tiles)} tiles of well {well}")
        return WellInput.from_tiles(
            name=well,
            tiles=tiles,
            pixel_calibration=self.pixel_size_um,
            channel_names=self.channel_names[: self.num_channels],
        )

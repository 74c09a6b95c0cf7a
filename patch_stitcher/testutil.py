import contextlib
import json
import os
import pathlib
import tempfile
from typing import Generator, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import tifffile
from scipy import ndimage

from .acquisition import TileRecord, WellInput
from .parameters import ImagePlaneDims


def textured_scene(
    height: int, width: int, seed: int = 0, sigma: float = 2.0, dtype=np.uint16
) -> np.ndarray:
    """Smoothed random texture, stretched to most of the dtype's range."""
    rng = np.random.default_rng(seed)
    scene = ndimage.gaussian_filter(rng.random((height, width)), sigma)
    scene = (scene - scene.min()) / (scene.max() - scene.min())
    if np.issubdtype(dtype, np.integer):
        return (scene * (np.iinfo(dtype).max * 0.9) + 100).astype(dtype)
    return scene.astype(dtype)


def grid_positions(
    n_rows: int, n_cols: int, size: ImagePlaneDims, overlap: float = 0.1
) -> dict[int, tuple[float, float]]:
    """Row-major (x, y) pixel positions of a regular grid of tiles."""
    step_x = size.width_px * (1.0 - overlap)
    step_y = size.height_px * (1.0 - overlap)
    positions = {}
    for r in range(n_rows):
        for c in range(n_cols):
            positions[r * n_cols + c] = (c * step_x, r * step_y)
    return positions


def cut_tiles(
    scene: np.ndarray,
    positions: Mapping[int, tuple[float, float]],
    size: ImagePlaneDims,
) -> dict[int, np.ndarray]:
    """Tiles of `scene` with their top-left corner at the given (x, y) pixel positions."""
    tiles = {}
    for tile_id, (x, y) in positions.items():
        x0, y0 = int(round(x)), int(round(y))
        tile = scene[..., y0:y0 + size.height_px, x0:x0 + size.width_px]
        if tile.shape[-2:] != (size.height_px, size.width_px):
            raise ValueError(f"Tile {tile_id} at ({x}, {y}) does not fit in the scene")
        tiles[tile_id] = tile.copy()
    return tiles


def make_well(
    name: str,
    pixel_positions: Mapping[int, tuple[float, float]],
    tiles: Mapping[int, np.ndarray],
    calibration: Optional[float] = 0.5,
    channel_names: Optional[list[str]] = None,
) -> WellInput:
    """Well whose stage positions normalize back to `pixel_positions`
    (relative to the lowest tile id).

    Stage X runs opposite to pixel x, so positions are converted with the
    default axis policy reversed.
    """
    scale = calibration if calibration is not None else 1.0
    records = [
        TileRecord(
            id=tile_id,
            absolute_x=1000.0 - x * scale,
            absolute_y=-250.0 + y * scale,
            pixels=tiles[tile_id],
        )
        for tile_id, (x, y) in pixel_positions.items()
    ]
    return WellInput.from_tiles(
        name=name,
        tiles=records,
        pixel_calibration=calibration,
        channel_names=channel_names,
    )


@contextlib.contextmanager
def temporary_acquisition_folder(
    regions: Mapping[str, Mapping[int, tuple[float, float]]],
    tiles: Mapping[str, Mapping[int, np.ndarray]],
    channel_names: Sequence[str] = ("DAPI",),
    n_z: int = 1,
    sensor_pixel_size_um: float = 20.0,
    magnification: float = 20.0,
    skip_files: Sequence[str] = (),
    name: str = "acquisition",
) -> Generator[pathlib.Path, None, None]:
    """Write an acquisition folder and yield its path.

    This includes:
        - one TIFF per region, fov, z-level and channel
        - the coordinates CSV file
        - the acquisition params file

    Args:
        regions: region -> fov -> (x, y) pixel position of the tile.
        tiles: region -> fov -> (Y, X) tile, written to every channel and
            z-level with the channel index added to it.
        skip_files: file names not to write, to simulate missing channels.
    """
    with tempfile.TemporaryDirectory() as d:
        base_dir = pathlib.Path(d) / name
        os.makedirs(base_dir / "0", exist_ok=True)
        # With the default objective and tube lens this is the pixel size in um.
        pixel_size_um = sensor_pixel_size_um / magnification

        coordinates = []
        for region, positions in regions.items():
            for fov, (x, y) in positions.items():
                for z in range(n_z):
                    coordinates.append(
                        {
                            "region": region,
                            "fov": fov,
                            "z_level": z,
                            "x (mm)": -x * pixel_size_um / 1000.0,
                            "y (mm)": y * pixel_size_um / 1000.0,
                            "z (um)": z * 1.5,
                        }
                    )
                    for c, channel in enumerate(channel_names):
                        filename = f"{region}_{fov}_{z}_{channel}.tiff"
                        if filename in skip_files:
                            continue
                        image = tiles[region][fov] + np.asarray(c, dtype=tiles[region][fov].dtype)
                        tifffile.imwrite(base_dir / "0" / filename, image)
        pd.DataFrame(coordinates).to_csv(base_dir / "0" / "coordinates.csv", index=False)

        acq_params = {
            "dz(um)": 1.5,
            "Nz": n_z,
            "objective": {
                "magnification": magnification,
                "NA": 0.8,
                "tube_lens_f_mm": 180.0,
                "name": f"{int(magnification)}x",
            },
            "sensor_pixel_size_um": sensor_pixel_size_um,
            "tube_lens_mm": 180,
        }
        with open(base_dir / "acquisition parameters.json", "w") as f:
            json.dump(acq_params, f)

        yield base_dir

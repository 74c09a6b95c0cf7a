"""Saving fused patches as ImageJ TIFF hyperstacks."""
import logging
import pathlib
from typing import Optional

import numpy as np
import tifffile

from .pipeline import FusedPatch

logger = logging.getLogger(__name__)

# ImageJ's default channel colors when merging channels.
CHANNEL_COLORS = (
    (255, 0, 0),
    (0, 255, 0),
    (0, 0, 255),
    (255, 255, 255),
    (0, 255, 255),
    (255, 0, 255),
    (255, 255, 0),
)
GRAY = (255, 255, 255)
IMAGEJ_DTYPES = (np.dtype(np.uint8), np.dtype(np.uint16), np.dtype(np.float32))


def color_lut(color: tuple[int, int, int]) -> np.ndarray:
    """(3, 256) uint8 lookup table ramping from black to `color`."""
    ramp = np.arange(256, dtype=np.float64) / 255.0
    return np.rint(np.outer(np.asarray(color, dtype=np.float64), ramp)).astype(np.uint8)


def channel_luts(num_channels: int, brightfield_channel: Optional[int]) -> list[np.ndarray]:
    """One LUT per channel; the brightfield channel is shown in gray."""
    luts = []
    for c in range(num_channels):
        color = GRAY if c == brightfield_channel else CHANNEL_COLORS[c % len(CHANNEL_COLORS)]
        luts.append(color_lut(color))
    return luts


class TiffImageWriter:
    """Writes `<output_folder>/<title>.tif` for every fused patch."""

    def __init__(self, output_folder: pathlib.Path, unit: str = "um"):
        self.output_folder = pathlib.Path(output_folder)
        self.unit = unit

    def output_path(self, patch: FusedPatch) -> pathlib.Path:
        return self.output_folder / f"{patch.title}.tif"

    def write(self, patch: FusedPatch) -> pathlib.Path:
        self.output_folder.mkdir(parents=True, exist_ok=True)
        path = self.output_path(patch)
        pixels = patch.pixels
        multichannel = pixels.ndim == 3

        kwargs: dict = {}
        if patch.calibration:
            kwargs["resolution"] = (1.0 / patch.calibration, 1.0 / patch.calibration)

        if pixels.dtype in IMAGEJ_DTYPES:
            metadata: dict = {"axes": "CYX" if multichannel else "YX", "unit": self.unit}
            if multichannel:
                metadata["mode"] = "composite"
                metadata["LUTs"] = channel_luts(pixels.shape[0], patch.brightfield_channel)
                if patch.channel_names:
                    metadata["Labels"] = list(patch.channel_names)
            tifffile.imwrite(path, pixels, imagej=True, metadata=metadata, **kwargs)
        else:
            logger.warning(
                f"{pixels.dtype} is not an ImageJ sample type, writing {path.name} as plain TIFF"
            )
            tifffile.imwrite(path, pixels, **kwargs)

        logger.info(f"Saved {patch.title} {pixels.shape} {pixels.dtype} to {path}")
        return path

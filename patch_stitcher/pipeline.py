"""Turning the tiles of each well into one fused image per patch.

For every well the stages run strictly in sequence:

    normalize stage positions -> cluster into patches
        -> for each patch: register -> fuse -> hand off

Pixel buffers are taken out of the well as each patch is processed and
dropped once the patch is fused, so a well never holds more than the
unprocessed tiles plus one patch's working set. Wells are independent and can
be processed by several workers at once.
"""
import functools
import gc
import logging
import pathlib
import time
from dataclasses import dataclass, field
from multiprocessing.pool import ThreadPool
from typing import Callable, Iterable, Iterator, Optional, Protocol

import numpy as np
from tqdm import tqdm

from .acquisition import AcquisitionReader, WellInput
from .benchmarking_util import debug_timing
from .coordinates import TilePosition, normalize_stage_positions, positions_table
from .fusion import FusedImage, fuse_patch
from .parameters import ImagePlaneDims, PatchStitchingParameters
from .patches import Patch, cluster_patches
from .registration import register_patch

logger = logging.getLogger(__name__)


@dataclass
class ProgressCallbacks:
    starting_well: Callable[[str], None]
    finished_patch: Callable[[str, int, int], None]
    skipped_well: Callable[[str, Exception], None]
    finished_well: Callable[[str, int], None]

    @classmethod
    def no_op(cls):
        return cls(
            starting_well=lambda _w: None,
            finished_patch=lambda _w, _i, _n: None,
            skipped_well=lambda _w, _e: None,
            finished_well=lambda _w, _n: None,
        )


@dataclass
class FusedPatch:
    """The fused image of one patch, ready to be saved."""

    well: str
    patch_id: int
    title: str
    image: FusedImage
    tile_ids: list[int]
    channel_names: list[str] = field(default_factory=list)
    brightfield_channel: Optional[int] = None
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def pixels(self) -> np.ndarray:
        return self.image.pixels

    @property
    def calibration(self) -> Optional[float]:
        return self.image.calibration


class ImageWriter(Protocol):
    def write(self, patch: FusedPatch) -> pathlib.Path: ...


@dataclass
class WellResult:
    well: str
    patches: list[FusedPatch] = field(default_factory=list)
    outputs: list[pathlib.Path] = field(default_factory=list)
    error: Optional[Exception] = None


@dataclass
class PipelineResult:
    """Outcome of a run, in input well order.

    `patches` is only filled when no writer was given; otherwise every patch
    is written and dropped as soon as it is fused and `outputs` lists the
    written files.
    """

    patches: list[FusedPatch] = field(default_factory=list)
    outputs: dict[str, list[pathlib.Path]] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failures


def patch_title(base_title: str, patch_id: int, num_patches: int) -> str:
    """`<base>` for a single patch, `<base>_patchNN` otherwise."""
    if num_patches == 1:
        return base_title
    return f"{base_title}_patch{patch_id:02d}"


class PatchPipeline:
    def __init__(
        self,
        params: Optional[PatchStitchingParameters] = None,
        callbacks: ProgressCallbacks = ProgressCallbacks.no_op(),
        brightfield_channel: Optional[int] = None,
    ):
        self.params = params if params is not None else PatchStitchingParameters()
        self.callbacks = callbacks
        self.brightfield_channel = brightfield_channel
        self.tqdm_class = tqdm

    def normalize(self, well: WellInput) -> dict[int, TilePosition]:
        return normalize_stage_positions(
            well.stage_positions,
            well.pixel_calibration,
            invert_x=self.params.invert_x,
            invert_y=self.params.invert_y,
        )

    def cluster(
        self, positions: dict[int, TilePosition], footprint: ImagePlaneDims
    ) -> list[Patch]:
        return cluster_patches(
            positions,
            footprint,
            footprint_margin=self.params.clustering.footprint_margin,
            method=self.params.clustering.method,
        )

    def process_patch(
        self, well: WellInput, patch: Patch, patch_id: int, num_patches: int
    ) -> FusedPatch:
        """Register and fuse one patch.

        The patch's pixel buffers are removed from `well` and released before
        returning.
        """
        timings: dict[str, float] = {}
        pixels = well.take_pixels(patch.tile_ids)
        try:
            nominal = positions_table(patch.elements.values())
            with debug_timing("registration", timings, logger):
                transforms = register_patch(nominal, pixels, self.params.registration)
            with debug_timing("fusion", timings, logger):
                fused = fuse_patch(
                    transforms,
                    pixels,
                    self.params.fusion,
                    calibration=well.pixel_calibration,
                )
        finally:
            pixels.clear()
            del pixels
            gc.collect()

        return FusedPatch(
            well=well.name,
            patch_id=patch_id,
            title=patch_title(well.title, patch_id, num_patches),
            image=fused,
            tile_ids=patch.tile_ids,
            channel_names=list(well.channel_names),
            brightfield_channel=self.brightfield_channel,
            timings=timings,
        )

    def iter_well(self, well: WellInput) -> Iterator[FusedPatch]:
        """Fused patches of a well, one at a time, in patch order."""
        positions = self.normalize(well)
        missing = sorted(set(positions) - set(well.pixels))
        if missing:
            raise KeyError(f"Well {well.name} has no pixel data for tiles {missing}")
        patches = self.cluster(positions, well.footprint)
        logger.info(f"Well {well.name}: {len(positions)} tiles in {len(patches)} patches")

        for patch_id, patch in enumerate(
            self.tqdm_class(patches, desc=f"{well.name} patches", disable=len(patches) < 2)
        ):
            fused = self.process_patch(well, patch, patch_id, len(patches))
            logger.debug(
                f"{fused.title}: {len(patch)} tiles -> {fused.pixels.shape}, "
                + ", ".join(f"{k} {v:0.2f}s" for k, v in fused.timings.items())
            )
            self.callbacks.finished_patch(well.name, patch_id, len(patches))
            yield fused

    def process_well(self, well: WellInput) -> list[FusedPatch]:
        """Fuse every patch of a well. Errors propagate to the caller."""
        return list(self.iter_well(well))

    def _run_one(
        self,
        name: str,
        load: Callable[[], WellInput],
        writer: Optional[ImageWriter],
    ) -> WellResult:
        result = WellResult(well=name)
        wtime = time.time()
        self.callbacks.starting_well(name)
        try:
            well = load()
            for fused in self.iter_well(well):
                if writer is None:
                    result.patches.append(fused)
                    continue
                result.outputs.append(writer.write(fused))
                del fused
            del well
        except Exception as e:
            logger.error(f"Skipping well {name}: {type(e).__name__}: {e}")
            logger.debug("Traceback for skipped well", exc_info=True)
            result.error = e
            result.patches.clear()
            self.callbacks.skipped_well(name, e)
            return result
        finally:
            gc.collect()

        num_patches = len(result.patches) or len(result.outputs)
        logger.info(f"Completed well {name} ({num_patches} patches): {time.time() - wtime:0.2f}s")
        self.callbacks.finished_well(name, num_patches)
        return result

    def _run_all(
        self,
        loaders: list[tuple[str, Callable[[], WellInput]]],
        writer: Optional[ImageWriter],
    ) -> PipelineResult:
        stime = time.time()

        def run_one(item: tuple[str, Callable[[], WellInput]]) -> WellResult:
            return self._run_one(item[0], item[1], writer)

        workers = min(self.params.max_workers, len(loaders)) or 1
        progress = self.tqdm_class(total=len(loaders), desc="wells")
        well_results = []
        if workers > 1:
            with ThreadPool(workers) as pool:
                # imap keeps input order whatever the completion order is.
                for well_result in pool.imap(run_one, loaders):
                    well_results.append(well_result)
                    progress.update(1)
        else:
            for item in loaders:
                well_results.append(run_one(item))
                progress.update(1)
        progress.close()

        result = PipelineResult()
        for well_result in well_results:
            if well_result.error is not None:
                result.failures[well_result.well] = well_result.error
                continue
            result.patches.extend(well_result.patches)
            if writer is not None:
                result.outputs[well_result.well] = well_result.outputs

        logger.info(
            f"Processed {len(loaders)} wells ({len(result.failures)} skipped): "
            f"{time.time() - stime:0.2f}s"
        )
        return result

    def run(
        self, wells: Iterable[WellInput], writer: Optional[ImageWriter] = None
    ) -> PipelineResult:
        """Process already loaded wells.

        A well that fails is logged, recorded in `PipelineResult.failures` and
        skipped; the remaining wells are still processed.
        """
        loaders = [(well.name, (lambda w=well: w)) for well in wells]
        return self._run_all(loaders, writer)

    def run_reader(
        self,
        reader: AcquisitionReader,
        writer: Optional[ImageWriter] = None,
        wells: Optional[list[str]] = None,
    ) -> PipelineResult:
        """Read and process the wells of an acquisition one at a time.

        Read errors, such as a tile with a missing channel file, skip the
        affected well like processing errors do.
        """
        names = wells if wells is not None else reader.well_names()
        loaders = [(name, functools.partial(reader.read_well, name)) for name in names]
        return self._run_all(loaders, writer)

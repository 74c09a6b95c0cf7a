import enum
import os
import pathlib
from typing import Annotated, NamedTuple, Optional

from pydantic import AfterValidator, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FusionMode(enum.Enum):
    linear_blend = "linear_blend"
    nearest = "nearest"
    average = "average"
    max_intensity = "max_intensity"
    min_intensity = "min_intensity"


class ClusteringMethod(enum.Enum):
    greedy = "greedy"
    connected_components = "connected_components"


class ImagePlaneDims(NamedTuple):
    width_px: int
    height_px: int


def input_path_exists(path: str) -> str:
    """Pydantic validator to check the path exists."""
    if not os.path.exists(path):
        raise ValueError(f"Input folder does not exist: {path}")

    return path


class RegistrationParameters(BaseModel, use_attribute_docstrings=True):
    """How tiles of one patch are aligned against each other."""

    subpixel: bool = True
    """Refine the best integer shift of every pair to sub-pixel accuracy."""

    quality_threshold: float = Field(default=0.3, ge=-1.0, le=1.0)
    """Minimum normalized cross-correlation for a pairwise shift to be trusted.

    Pairs scoring below this are ignored; a tile left without any trusted pair
    keeps its nominal stage position.
    """

    check_peaks: int = Field(default=5, ge=1)
    """Number of phase-correlation peaks checked per pair."""

    upsample_factor: int = Field(default=100, ge=1)
    """Upsampling used for sub-pixel refinement (1/upsample_factor px precision)."""

    compute_overlap: bool = True
    """Correlate pairs only over their nominal overlap instead of the whole tile."""

    channel: Optional[int] = Field(default=None, ge=0)
    """Channel of multi-channel tiles used for registration. `None` averages all channels."""

    max_relative_residual: float = Field(default=2.5, gt=0)
    """A pair is dropped from the global fit when its residual exceeds this
    multiple of the mean residual (and the absolute limit below)."""

    max_absolute_residual: float = Field(default=3.5, ge=0)
    """Residual, in pixels, a pair must exceed before it can be dropped."""

    max_workers: Optional[int] = Field(default=None, ge=1)
    """Threads used for pairwise correlations. `None` uses one per CPU."""


class FusionParameters(BaseModel, use_attribute_docstrings=True):
    """How the registered tiles of a patch are composited."""

    mode: FusionMode = FusionMode.linear_blend
    """Blending policy in regions covered by more than one tile."""

    blending_alpha: float = Field(default=1.5, gt=0)
    """Exponent applied to the linear blending ramp.

    Larger values make a tile's contribution fall off faster toward its border.
    """

    subpixel_interpolation: bool = False
    """Resample tiles at their fractional position instead of rounding it.

    When off, single-tile regions are copied bit for bit.
    """


class ClusteringParameters(BaseModel, use_attribute_docstrings=True):
    """How stage positions are grouped into independent patches."""

    footprint_margin: float = Field(default=1.0, ge=0)
    """Multiple of the tile footprint used to grow a patch's bounding box
    when testing whether a tile belongs to it."""

    method: ClusteringMethod = ClusteringMethod.greedy
    """`greedy` scans patches in creation order and joins the first match;
    `connected_components` builds the proximity graph and is order independent."""


class PatchStitchingParameters(BaseModel, use_attribute_docstrings=True):
    """Parameters for turning the tiles of a well into fused patches."""

    registration: RegistrationParameters = Field(default_factory=RegistrationParameters)
    fusion: FusionParameters = Field(default_factory=FusionParameters)
    clustering: ClusteringParameters = Field(default_factory=ClusteringParameters)

    invert_x: bool = True
    """Increasing stage X moves toward decreasing mosaic X."""

    invert_y: bool = False
    """Increasing stage Y moves toward decreasing mosaic Y."""

    max_workers: int = Field(default=1, ge=1)
    """Number of wells processed concurrently."""

    verbose: bool = False
    """Show debug-level logging."""

    @classmethod
    def from_json_file(cls, json_path: str) -> "PatchStitchingParameters":
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file."""
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


class PipelineCliParameters(BaseSettings, PatchStitchingParameters):
    """Command line parameters: where to read the acquisition and where to save patches."""

    # Flags keep the field names (`--input_folder`, `--fusion.mode`).
    model_config = SettingsConfigDict(
        use_attribute_docstrings=True,
        env_prefix="PATCH_STITCHER_",
        cli_kebab_case=False,
        cli_implicit_flags=True,
    )

    input_folder: Annotated[str, AfterValidator(input_path_exists)]
    """A folder containing an acquisition.

    It holds `acquisition parameters.json` and a `0/` folder with
    `coordinates.csv` and one TIFF per region, fov, z-level and channel.
    """

    output_folder: Optional[pathlib.Path] = None
    """Where fused patches are written. Defaults to `<input_folder>_patches`."""

    channel_names: Optional[list[str]] = None
    """Identifiers of the channels, in file order. Guessed from file names if unset."""

    num_channels: Optional[int] = Field(default=None, ge=1)
    """Number of channels every tile must have. Defaults to the channels found."""

    brightfield_channel: Optional[int] = Field(default=None, ge=0)
    """0-based index of the brightfield channel (min-projected, no background
    subtraction). Guessed from the channel names if unset."""

    background_subtraction: bool = False
    """Subtract a rolling-ball background from every fluorescence plane before projecting."""

    rolling_ball_radius: float = Field(default=50.0, gt=0)
    """Radius in pixels of the background subtraction ball."""

    @property
    def patches_folder(self) -> pathlib.Path:
        if self.output_folder is not None:
            return self.output_folder
        return pathlib.Path(self.input_folder.rstrip("/\\") + "_patches")

"""Patch Stitcher Package.

This package assembles mosaic images from stage-positioned microscopy tiles.
Tiles of one well are grouped into spatially independent patches, and every
patch is registered and fused into its own image.

Main functionality:
- Coordinate normalization: stage positions to a pixel frame
- Patch clustering: grouping tiles that belong to one contiguous mosaic
- Tile registration: phase-correlation shifts reconciled by least squares
- Fusion: linear blending (and other modes) of registered tiles
- Pipeline: per-well orchestration with prompt release of pixel buffers
"""

from .coordinates import TilePosition, normalize_stage_positions, positions_table
from .errors import (
    EmptyTileSetError,
    IncompatiblePixelTypeError,
    MissingCalibrationError,
    MissingChannelError,
    PatchStitchingError,
    RegistrationFailed,
)
from .fusion import FusedImage, blending_weights, fuse_patch
from .patches import Patch, cluster_patches
from .pipeline import FusedPatch, PatchPipeline, PipelineResult, ProgressCallbacks
from .registration import compute_pair_translation, reconcile_translations, register_patch

__all__ = [
    'TilePosition',
    'normalize_stage_positions',
    'positions_table',
    'Patch',
    'cluster_patches',
    'register_patch',
    'compute_pair_translation',
    'reconcile_translations',
    'FusedImage',
    'fuse_patch',
    'blending_weights',
    'PatchPipeline',
    'FusedPatch',
    'PipelineResult',
    'ProgressCallbacks',
    'PatchStitchingError',
    'MissingCalibrationError',
    'EmptyTileSetError',
    'MissingChannelError',
    'RegistrationFailed',
    'IncompatiblePixelTypeError',
]

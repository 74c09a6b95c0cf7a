"""Exceptions raised while turning a well's tiles into fused patches.

Every error derives from `PatchStitchingError` and from the builtin exception
it most resembles, so callers can catch either family.
"""


class PatchStitchingError(Exception):
    """Base class for all errors raised by this package."""


class MissingCalibrationError(PatchStitchingError, ValueError):
    """The pixel calibration of an acquisition could not be read."""


class EmptyTileSetError(PatchStitchingError, ValueError):
    """An operation that needs at least one tile received none."""


class MissingChannelError(PatchStitchingError, ValueError):
    """A tile has fewer channel images than the acquisition declares."""


class RegistrationFailed(PatchStitchingError, RuntimeError):
    """Registration was asked to align a patch without any tiles."""


class IncompatiblePixelTypeError(PatchStitchingError, TypeError):
    """The tiles of a patch do not share a sample type or channel layout."""

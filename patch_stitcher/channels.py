"""Guessing channel identifiers from acquisition file names."""
from typing import Optional, Sequence

# Checked in this order; a later match overrides an earlier one.
KNOWN_CHANNELS = ("DAPI", "BF", "470", "555", "640")
DEFAULT_CHANNEL = "dapi"
BRIGHTFIELD = "BF"


def identify_channel(name: str) -> str:
    identifier = DEFAULT_CHANNEL
    for known in KNOWN_CHANNELS:
        if known in name:
            identifier = known
    return identifier


def identify_channels(names: Sequence[str]) -> tuple[list[str], Optional[int]]:
    """Channel identifiers for file or channel names, and the brightfield index.

    Returns:
        (identifiers in input order, index of the first brightfield channel or None)
    """
    identifiers = [identify_channel(n) for n in names]
    brightfield = identifiers.index(BRIGHTFIELD) if BRIGHTFIELD in identifiers else None
    return identifiers, brightfield

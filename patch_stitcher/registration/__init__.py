"""Registration of the tiles of a patch: pairwise shifts and their global reconciliation."""

from ._global_optimization import PairTranslation, reconcile_translations
from ._translation_computation import PairwiseShift, compute_translation
from .tile_registration import (
    OverlapPair,
    compute_pair_translation,
    find_overlapping_pairs,
    register_patch,
)

__all__ = [
    'register_patch',
    'find_overlapping_pairs',
    'compute_pair_translation',
    'compute_translation',
    'reconcile_translations',
    'OverlapPair',
    'PairTranslation',
    'PairwiseShift',
]

"""Pairwise translation estimation between two overlapping image crops.

The estimate follows the phase-correlation method used by most microscopy
stitchers:

1. The peak correlation matrix (PCM) of the two crops is computed from the
   normalized cross-power spectrum of their zero-mean, Hann-windowed versions.
2. The highest peaks of the PCM are taken as candidate shifts. Because the
   PCM is periodic, each peak position (py, px) stands for four shifts
   (py or py - H, px or px - W).
3. Every candidate is scored by the normalized cross-correlation (NCC) of the
   two crops over the overlap it implies; the best scoring one wins.
4. Optionally, the winning shift is refined to sub-pixel precision with an
   upsampled cross-correlation around it.

Throughout, a shift (y, x) means `image1[u] == image2[u - (y, x)]`: it is the
displacement of image1's content relative to image2's.
"""
import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from skimage.filters import window
from skimage.registration import phase_cross_correlation

from ._typing_utils import FloatArray, Int, IntArray, NumArray

logger = logging.getLogger(__name__)

MIN_OVERLAP_PIXELS = 25
# Sub-pixel refinement may not move the integer estimate further than this.
MAX_SUBPIXEL_CORRECTION = 1.0


@dataclass(frozen=True)
class PairwiseShift:
    """Best shift found between two crops and its NCC score."""

    ncc: float
    y: float
    x: float

    @property
    def is_valid(self) -> bool:
        return np.isfinite(self.ncc)


INVALID_SHIFT = PairwiseShift(ncc=float("-inf"), y=0.0, x=0.0)


def validate_image_pair(image1: NumArray, image2: NumArray) -> None:
    """Check that two crops can be correlated.

    Raises:
        ValueError: If images are invalid or incompatible
    """
    if image1.ndim != 2 or image2.ndim != 2:
        raise ValueError("Images must be 2-dimensional")
    if image1.shape != image2.shape:
        raise ValueError(f"Images must have same shape. Got {image1.shape} and {image2.shape}")
    if min(image1.shape) < 2:
        raise ValueError(f"Images too small to correlate: {image1.shape}")


def _tapered(image: NumArray, taper: FloatArray) -> FloatArray:
    a = np.asarray(image, dtype=np.float64)
    return (a - a.mean()) * taper


def pcm(image1: NumArray, image2: NumArray) -> FloatArray:
    """Compute the peak correlation matrix of two images.

    PCM = IFFT(F1 * conj(F2) / |F1 * conj(F2)|)

    Both images are made zero-mean and tapered with a Hann window first, so
    the frame borders do not produce spurious peaks near zero shift.

    Args:
        image1: First image (2D array)
        image2: Second image (2D array, same size as image1)

    Returns:
        Peak correlation matrix as a 2D float array
    """
    validate_image_pair(image1, image2)
    taper = window("hann", image1.shape)
    f1 = np.fft.fft2(_tapered(image1, taper))
    f2 = np.fft.fft2(_tapered(image2, taper))
    cross_power = f1 * np.conjugate(f2)
    # Epsilon keeps empty frequencies (constant images) from dividing by zero.
    epsilon = np.finfo(np.float64).eps * 100
    cross_power /= np.abs(cross_power) + epsilon
    return np.fft.ifft2(cross_power).real


def multi_peak_max(
    PCM: FloatArray, max_peaks: Optional[int] = None
) -> Tuple[IntArray, IntArray, FloatArray]:
    """Find the largest peaks of a peak correlation matrix.

    Args:
        PCM: 2D correlation matrix.
        max_peaks: number of peaks to return, all of them if None.

    Returns:
        (rows, cols, values) of the peaks, in descending order of value. Equal
        values keep row-major order, so the result is deterministic.
    """
    if PCM.ndim != 2 or PCM.size == 0:
        raise ValueError(f"PCM must be a non-empty 2D array, got shape {PCM.shape}")
    if max_peaks is not None and max_peaks <= 0:
        raise ValueError(f"max_peaks must be positive, got {max_peaks}")

    flat = PCM.ravel()
    order = np.argsort(-flat, kind="stable")
    if max_peaks is not None:
        order = order[:max_peaks]
    rows, cols = np.unravel_index(order, PCM.shape)
    return rows.astype(np.int64), cols.astype(np.int64), flat[order].astype(np.float64)


def ncc(image1: NumArray, image2: NumArray, min_overlap_pixels: int = MIN_OVERLAP_PIXELS) -> float:
    """Normalized cross-correlation of two equally shaped images.

    NCC = sum((I1 - m1)(I2 - m2)) / sqrt(sum((I1 - m1)^2) * sum((I2 - m2)^2))

    Returns:
        A value in [-1, 1], or -inf when the images are too small or one of
        them is constant while the other is not. Two identical constant images
        correlate perfectly.
    """
    if image1.shape != image2.shape or image1.size < min_overlap_pixels:
        return float("-inf")

    a = np.asarray(image1, dtype=np.float64)
    b = np.asarray(image2, dtype=np.float64)
    centered1 = a - a.mean()
    centered2 = b - b.mean()
    var1 = float(np.sum(centered1 * centered1))
    var2 = float(np.sum(centered2 * centered2))
    denominator = np.sqrt(var1 * var2)
    if denominator == 0.0 or not np.isfinite(denominator):
        if var1 == 0.0 and var2 == 0.0 and np.array_equal(a, b):
            return 1.0
        return float("-inf")

    value = float(np.sum(centered1 * centered2)) / denominator
    if not np.isfinite(value):
        return float("-inf")
    return float(np.clip(value, -1.0, 1.0))


def extract_overlap_subregion(image: NumArray, y: Int, x: Int) -> NumArray:
    """Part of `image` that stays inside the frame after shifting by (y, x).

    Returns an empty array when the shift leaves no overlap.
    """
    size_y, size_x = image.shape[:2]
    if abs(y) >= size_y or abs(x) >= size_x:
        return image[0:0, 0:0]
    ystart = int(max(0, min(y, size_y)))
    yend = int(max(0, min(y + size_y, size_y)))
    xstart = int(max(0, min(x, size_x)))
    xend = int(max(0, min(x + size_x, size_x)))
    return image[ystart:yend, xstart:xend]


def shift_ncc(image1: NumArray, image2: NumArray, y: int, x: int) -> float:
    """NCC of two images over the overlap implied by shift (y, x)."""
    sub1 = extract_overlap_subregion(image1, y, x)
    sub2 = extract_overlap_subregion(image2, -y, -x)
    if sub1.size == 0 or sub2.size == 0:
        return float("-inf")
    return ncc(sub1, sub2)


def candidate_shifts(rows: IntArray, cols: IntArray, size_y: int, size_x: int) -> list[tuple[int, int]]:
    """Expand PCM peak positions into the shifts they can stand for.

    A peak at row r corresponds to a shift of r or r - size_y (and the same for
    columns). Candidates are returned peak by peak, without duplicates.
    """
    seen = set()
    candidates = []
    for r, c in zip(rows.tolist(), cols.tolist()):
        for y in (r, r - size_y):
            for x in (c, c - size_x):
                if (y, x) not in seen:
                    seen.add((y, x))
                    candidates.append((y, x))
    return candidates


def interpret_translation(
    image1: NumArray,
    image2: NumArray,
    rows: IntArray,
    cols: IntArray,
    max_shift: Optional[Tuple[float, float]] = None,
) -> PairwiseShift:
    """Pick the PCM peak interpretation with the highest NCC.

    Args:
        image1: First image array
        image2: Second image array
        rows: Y coordinates of peaks
        cols: X coordinates of peaks
        max_shift: optional (max |y|, max |x|) allowed for a candidate.

    Returns:
        The best integer shift, or an invalid shift when no candidate has a
        usable overlap.
    """
    size_y, size_x = image1.shape
    best = INVALID_SHIFT
    for y, x in candidate_shifts(rows, cols, size_y, size_x):
        if max_shift is not None and (abs(y) > max_shift[0] or abs(x) > max_shift[1]):
            continue
        score = shift_ncc(image1, image2, y, x)
        # Strict comparison: on ties the earlier (stronger) peak wins.
        if score > best.ncc:
            best = PairwiseShift(ncc=score, y=float(y), x=float(x))
    return best


def refine_subpixel(
    image1: NumArray,
    image2: NumArray,
    shift: PairwiseShift,
    upsample_factor: int = 100,
) -> PairwiseShift:
    """Refine an integer shift with upsampled phase cross-correlation.

    The refinement is computed on the overlap implied by the integer shift, so
    it only has to resolve the residual fraction of a pixel. It is rejected if
    it moves the estimate by more than `MAX_SUBPIXEL_CORRECTION`.
    """
    if not shift.is_valid or upsample_factor <= 1:
        return shift
    y, x = int(shift.y), int(shift.x)
    sub1 = extract_overlap_subregion(image1, y, x)
    sub2 = extract_overlap_subregion(image2, -y, -x)
    if min(sub1.shape, default=0) < 2 or sub1.shape != sub2.shape:
        return shift

    with warnings.catch_warnings():
        # Constant crops trigger a divide warning inside scikit-image.
        warnings.simplefilter("ignore", RuntimeWarning)
        residual, _, _ = phase_cross_correlation(
            np.asarray(sub1, dtype=np.float64),
            np.asarray(sub2, dtype=np.float64),
            upsample_factor=upsample_factor,
        )
    dy, dx = float(residual[0]), float(residual[1])
    if not (np.isfinite(dy) and np.isfinite(dx)):
        return shift
    if abs(dy) > MAX_SUBPIXEL_CORRECTION or abs(dx) > MAX_SUBPIXEL_CORRECTION:
        logger.debug(f"Discarding sub-pixel correction ({dy:.2f}, {dx:.2f}) for shift ({y}, {x})")
        return shift
    return PairwiseShift(ncc=shift.ncc, y=y + dy, x=x + dx)


def compute_translation(
    image1: NumArray,
    image2: NumArray,
    check_peaks: int = 5,
    subpixel: bool = True,
    upsample_factor: int = 100,
    max_shift: Optional[Tuple[float, float]] = None,
) -> PairwiseShift:
    """Estimate the shift between two equally shaped crops.

    Args:
        image1: reference crop.
        image2: moving crop.
        check_peaks: number of PCM peaks to interpret.
        subpixel: refine the winning shift below one pixel.
        upsample_factor: precision of the sub-pixel refinement.
        max_shift: optional bound on |y| and |x| of accepted shifts.

    Returns:
        The best shift and its NCC score (-inf when nothing could be matched).
    """
    validate_image_pair(image1, image2)
    rows, cols, _ = multi_peak_max(pcm(image1, image2), max_peaks=check_peaks)
    best = interpret_translation(image1, image2, rows, cols, max_shift=max_shift)
    if subpixel:
        best = refine_subpixel(image1, image2, best, upsample_factor=upsample_factor)
    return best

"""
Post-Processing Module.

Turns the accumulated canvas into the final reference frame: back to native
resolution, cropped to the covered area, normalized by the overlap count,
quantized to 8 bits, and with uncovered pixels filled by noise drawn from
the covered ones so that holes carry no structure.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .errors import DegenerateMotionError


def downsample_grids(
    accumulator: np.ndarray,
    counter: np.ndarray,
    scale: int,
    interpolation: int = cv2.INTER_AREA
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Bring both grids back to native resolution.

    The grids are resized independently with the same kernel and only
    divided afterwards. This is not exact area averaging of the normalized
    image; the order is kept for compatibility with existing references.
    Grids are zero-padded to a multiple of `scale` first.

    Strips are upsampled with cubic interpolation, but the way down uses
    area averaging rather than the same cubic kernel: for an integer scale
    it averages each scale x scale block exactly and cannot ring below
    zero at the canvas edges.

    Returns:
        (accumulator, counter) as float64 at 1/scale size
    """
    accumulator = accumulator.astype(np.float64)
    counter = counter.astype(np.float64)
    if scale <= 1:
        return accumulator, counter

    h, w = accumulator.shape
    pad_h = (-h) % scale
    pad_w = (-w) % scale
    if pad_h or pad_w:
        accumulator = np.pad(accumulator, ((0, pad_h), (0, pad_w)))
        counter = np.pad(counter, ((0, pad_h), (0, pad_w)))

    size = ((w + pad_w) // scale, (h + pad_h) // scale)
    accumulator = cv2.resize(accumulator, size, interpolation=interpolation)
    counter = cv2.resize(counter, size, interpolation=interpolation)
    return accumulator, counter


def coverage_bounds(counter: np.ndarray) -> Tuple[int, int, int, int]:
    """
    Bounding box of nonzero coverage.

    Returns:
        (top, bottom, left, right), bottom/right exclusive

    Raises:
        DegenerateMotionError: if nothing is covered
    """
    rows_valid = np.any(counter > 0, axis=1)
    cols_valid = np.any(counter > 0, axis=0)
    if not rows_valid.any():
        raise DegenerateMotionError("no strip was placed on the reference canvas")

    top = int(np.argmax(rows_valid))
    bottom = int(len(rows_valid) - np.argmax(rows_valid[::-1]))
    left = int(np.argmax(cols_valid))
    right = int(len(cols_valid) - np.argmax(cols_valid[::-1]))
    return top, bottom, left, right


def normalize(accumulator: np.ndarray, counter: np.ndarray) -> np.ndarray:
    """accumulator / counter, NaN where the counter is zero."""
    with np.errstate(divide='ignore', invalid='ignore'):
        image = accumulator / counter
    image[counter == 0] = np.nan
    return image


def quantize(image: np.ndarray) -> np.ndarray:
    """Round and saturate to uint8; NaN becomes 0. No range rescaling."""
    values = np.nan_to_num(image, nan=0.0, posinf=255.0, neginf=0.0)
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def fill_uncovered(
    image: np.ndarray,
    counter: np.ndarray,
    rng: np.random.Generator
) -> Tuple[np.ndarray, int]:
    """
    Replace uncovered pixels with values sampled from covered ones.

    Args:
        image: Quantized reference frame
        counter: Coverage of each pixel
        rng: Random generator used for the draw

    Returns:
        (filled image, number of filled pixels)
    """
    uncovered = counter == 0
    n_uncovered = int(np.count_nonzero(uncovered))
    if n_uncovered == 0:
        return image, 0

    valid_values = image[~uncovered]
    filled = image.copy()
    filled[uncovered] = rng.choice(valid_values, size=n_uncovered, replace=True)
    return filled, n_uncovered


def fix_black_lines(frame: np.ndarray) -> np.ndarray:
    """
    Fill empty scanlines by interpolating between neighbouring rows.

    Only rows that are entirely zero and lie between two non-empty rows are
    filled; empty margins at the top and bottom are left alone.
    """
    non_empty = np.flatnonzero(np.any(frame != 0, axis=1))
    if len(non_empty) < 2:
        return frame

    rows = np.arange(non_empty[0] + 1, non_empty[-1])
    black = rows[~np.any(frame[rows] != 0, axis=1)]
    if len(black) == 0:
        return frame

    pos = np.searchsorted(non_empty, black)
    above = non_empty[pos - 1]
    below = non_empty[pos]
    weight = ((black - above) / (below - above).astype(np.float64))[:, None]

    fixed = frame.astype(np.float64, copy=True)
    fixed[black] = (1.0 - weight) * fixed[above] + weight * fixed[below]
    return fixed


@dataclass
class PostProcessResult:
    """Final images derived from a canvas."""
    reference_frame: np.ndarray
    reference_float: np.ndarray
    coverage: np.ndarray
    crop_box: Tuple[int, int, int, int]
    noise_filled_pixels: int


class PostProcessor:
    """Downsamples, crops, normalizes and noise-fills a reference canvas."""

    def __init__(self, random_seed: Optional[int] = 0):
        self.random_seed = random_seed

    def process(
        self,
        accumulator: np.ndarray,
        counter: np.ndarray,
        scale: int
    ) -> PostProcessResult:
        """
        Build the reference frame from accumulated grids.

        Args:
            accumulator: Sum grid at canvas scale
            counter: Overlap count grid at canvas scale
            scale: Canvas scale factor

        Returns:
            PostProcessResult
        """
        accumulator, counter = downsample_grids(accumulator, counter, scale)

        top, bottom, left, right = coverage_bounds(counter)
        accumulator = accumulator[top:bottom, left:right]
        counter = counter[top:bottom, left:right]

        reference_float = normalize(accumulator, counter)
        reference = quantize(reference_float)

        rng = np.random.default_rng(self.random_seed)
        reference, n_filled = fill_uncovered(reference, counter, rng)

        return PostProcessResult(
            reference_frame=reference,
            reference_float=reference_float,
            coverage=counter,
            crop_box=(top, bottom, left, right),
            noise_filled_pixels=n_filled
        )

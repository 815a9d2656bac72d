"""
Canvas Allocation Module.

The reference frame is accumulated on a sum grid and an overlap-count grid
sized from the extent of all usable motion, at 2 ** subpixel_exponent times
the native resolution. Both grids keep their size for the whole run.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .errors import DegenerateMotionError
from .resampling import ResampledTrace, StripGrid


def round_half_up(value):
    """Round half away from zero (the usual image-coordinate rounding)."""
    return np.sign(value) * np.floor(np.abs(value) + 0.5)


@dataclass
class StripPlacement:
    """Destination rectangle of one strip on the canvas."""
    top: float
    left: float
    height: int
    width: int

    @property
    def defined(self) -> bool:
        return bool(np.isfinite(self.top) and np.isfinite(self.left))

    def slices(self) -> Tuple[slice, slice]:
        top, left = int(self.top), int(self.left)
        return slice(top, top + self.height), slice(left, left + self.width)

    def clipped(self, shape: Tuple[int, int]) -> Tuple[Tuple[slice, slice], Tuple[slice, slice]]:
        """
        Canvas and strip slices of the part that falls inside `shape`.

        Returns:
            (canvas_slices, strip_slices); empty slices if fully outside
        """
        top, left = int(self.top), int(self.left)
        y0, x0 = max(top, 0), max(left, 0)
        y1 = min(top + self.height, shape[0])
        x1 = min(left + self.width, shape[1])
        y1, x1 = max(y1, y0), max(x1, x0)
        canvas_sl = (slice(y0, y1), slice(x0, x1))
        strip_sl = (slice(y0 - top, y1 - top), slice(x0 - left, x1 - left))
        return canvas_sl, strip_sl


class Canvas:
    """
    Sum and count grids for strip accumulation.

    counter[p] is the number of strips added over pixel p, and accumulator[p]
    is zero wherever counter[p] is zero.
    """

    def __init__(self, height: int, width: int, scale: int, min_position: np.ndarray):
        self.scale = scale
        self.min_position = np.asarray(min_position, dtype=np.float64)
        self.accumulator = np.zeros((height, width), dtype=np.float64)
        self.counter = np.zeros((height, width), dtype=np.int32)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.accumulator.shape

    def placement(
        self,
        position: np.ndarray,
        row: int,
        strip_shape: Tuple[int, int]
    ) -> StripPlacement:
        """
        Destination of a strip on this canvas.

        Args:
            position: Resampled (x, y) position of the strip, may be NaN
            row: Top row of the strip within its frame
            strip_shape: (height, width) of the upsampled strip

        Returns:
            StripPlacement; undefined when position is NaN
        """
        offset = np.asarray(position, dtype=np.float64) - self.min_position + np.array([0.0, row])
        left, top = round_half_up(self.scale * offset)
        return StripPlacement(top=top, left=left, height=strip_shape[0], width=strip_shape[1])

    def add(self, placement: StripPlacement, strip: np.ndarray):
        """Add a strip at its placement and count the overlap."""
        canvas_sl, strip_sl = placement.clipped(self.shape)
        self.accumulator[canvas_sl] += strip[strip_sl]
        self.counter[canvas_sl] += 1

    def normalized(self) -> np.ndarray:
        """accumulator / counter, NaN where nothing was added."""
        with np.errstate(divide='ignore', invalid='ignore'):
            return self.accumulator / self.counter


class CanvasAllocator:
    """Sizes the canvas from the usable motion extent."""

    def __init__(self, subpixel_exponent: int = 2):
        self.subpixel_exponent = subpixel_exponent
        self.scale = 2 ** subpixel_exponent

    def motion_extent(self, resampled: ResampledTrace) -> Tuple[np.ndarray, np.ndarray]:
        """
        Componentwise min and max position over usable resampled samples.

        Raises:
            DegenerateMotionError: if no sample is usable
        """
        valid = resampled.usable & resampled.defined
        if not np.any(valid):
            raise DegenerateMotionError(
                "no strip passed the quality filter; cannot size the reference canvas"
            )
        positions = resampled.positions[valid]
        return positions.min(axis=0), positions.max(axis=0)

    def allocate(self, resampled: ResampledTrace, grid: StripGrid) -> Canvas:
        """Allocate zeroed accumulator and counter grids."""
        min_pos, max_pos = self.motion_extent(resampled)
        extent = max_pos - min_pos
        width = int(round_half_up((extent[0] + grid.strip_width + 1) * self.scale))
        height = int(round_half_up((extent[1] + grid.frame_height + 1) * self.scale))
        return Canvas(height, width, self.scale, min_pos)

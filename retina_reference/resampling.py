"""
Position Resampling Module.

The tracker reports one motion sample per old strip. The reference frame
is built from strips of a different (usually smaller) height, so the
motion trace and the usability flags are re-projected onto the new strip
grid by linear interpolation in time.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.interpolate import interp1d

from .errors import ConfigurationError
from .motion_trace import MotionTrace


@dataclass
class StripGrid:
    """Geometry of the new strips cut from every frame."""
    frame_height: int
    frame_width: int
    strip_height: int
    strip_width: Optional[int] = None
    trim: Tuple[int, int] = (0, 0)

    def __post_init__(self):
        if self.strip_height > self.frame_height:
            raise ConfigurationError(
                f"new strip height {self.strip_height} exceeds frame height {self.frame_height}"
            )
        if self.strip_width is None:
            self.strip_width = self.frame_width

    @property
    def row_numbers(self) -> np.ndarray:
        """0-based top row of each new strip; every strip lies inside the frame."""
        return np.arange(0, self.frame_height - self.strip_height + 1, self.strip_height)

    @property
    def strips_per_frame(self) -> int:
        return len(self.row_numbers)

    @property
    def lines_per_frame(self) -> int:
        """Scanlines per frame period, including rows trimmed upstream."""
        return self.frame_height + sum(self.trim)

    @property
    def column_window(self) -> Tuple[int, int]:
        """(left, right) columns of the centred strip window, right exclusive."""
        left = max(0, (self.frame_width - self.strip_width) // 2)
        right = min(self.frame_width, left + self.strip_width)
        return left, right


@dataclass
class ResampledTrace:
    """Motion samples on the new strip grid, frame-major."""
    timestamps: np.ndarray
    positions: np.ndarray
    usable: np.ndarray
    strips_per_frame: int

    def __len__(self) -> int:
        return len(self.timestamps)

    def sample_index(self, frame_index: int, strip_index: int) -> int:
        return frame_index * self.strips_per_frame + strip_index

    @property
    def defined(self) -> np.ndarray:
        """True where the position could be interpolated."""
        return np.all(np.isfinite(self.positions), axis=1)


def _interpolate(
    t_src: np.ndarray,
    values: np.ndarray,
    t_new: np.ndarray
) -> np.ndarray:
    """Linear interpolation along axis 0, NaN outside [t_src[0], t_src[-1]]."""
    out_shape = (len(t_new),) + values.shape[1:]
    if len(t_src) == 0:
        return np.full(out_shape, np.nan)
    if len(t_src) == 1:
        out = np.full(out_shape, np.nan)
        out[t_new == t_src[0]] = values[0]
        return out

    f = interp1d(
        t_src,
        values,
        axis=0,
        kind='linear',
        bounds_error=False,
        fill_value=np.nan,
        assume_sorted=True
    )
    return f(t_new)


class PositionResampler:
    """Re-projects a motion trace onto a new strip grid."""

    def __init__(self, grid: StripGrid):
        self.grid = grid

    def new_timestamps(self, trace: MotionTrace, n_frames: int) -> np.ndarray:
        """
        Acquisition time of every new strip, frame-major.

        Uses the per-scanline interval from the first two samples and counts
        trimmed rows as part of the frame period.
        """
        dt = trace.scanline_interval()
        frames = np.arange(n_frames, dtype=np.float64)[:, None]
        rows = self.grid.row_numbers[None, :].astype(np.float64)
        lines = frames * self.grid.lines_per_frame + rows - trace.row_numbers[0]
        return trace.timestamps[0] + dt * lines.ravel()

    def resample(
        self,
        trace: MotionTrace,
        usable: np.ndarray,
        n_frames: int
    ) -> ResampledTrace:
        """
        Interpolate usability and position onto the new grid.

        Args:
            trace: Deduplicated motion trace on the old grid
            usable: Quality Filter mask for the trace samples
            n_frames: Number of frames in the video

        Returns:
            ResampledTrace; positions outside the usable time range are NaN
        """
        new_times = self.new_timestamps(trace, n_frames)

        usability = _interpolate(trace.timestamps, usable.astype(np.float64), new_times)
        with np.errstate(invalid='ignore'):
            new_usable = usability > 0.5

        new_positions = _interpolate(
            trace.timestamps[usable],
            trace.positions[usable],
            new_times
        )

        return ResampledTrace(
            timestamps=new_times,
            positions=new_positions,
            usable=new_usable,
            strips_per_frame=self.grid.strips_per_frame
        )

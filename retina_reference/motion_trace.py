"""
Motion Trace Module.

Holds the per-strip output of the upstream strip-analysis tracker:
timestamps, (x, y) position offsets and normalized cross-correlation peaks,
together with the strip geometry they were measured on.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from .errors import ConfigurationError


@dataclass
class MotionTrace:
    """
    Strip motion samples on the old (tracker) strip grid.

    Attributes:
        timestamps: Sample times in seconds, shape (N,)
        positions: (x, y) offset of each strip, shape (N, 2)
        peak_values: Correlation peak of each strip in [0, 1], shape (N,)
        row_numbers: 0-based top row of each strip within a frame
        strip_height: Height of the tracker strips in pixels
        frame_count: Number of frames the trace spans (None: take from video)
        bad_frames: Blink/bad frame indices reported by the tracker
    """
    timestamps: np.ndarray
    positions: np.ndarray
    peak_values: np.ndarray
    row_numbers: Optional[np.ndarray]
    strip_height: Optional[int]
    frame_count: Optional[int] = None
    bad_frames: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        self.timestamps = np.asarray(self.timestamps, dtype=np.float64).ravel()
        self.positions = np.asarray(self.positions, dtype=np.float64).reshape(-1, 2)
        self.peak_values = np.asarray(self.peak_values, dtype=np.float64).ravel()
        if self.row_numbers is not None:
            self.row_numbers = np.asarray(self.row_numbers, dtype=np.float64).ravel()
        self.bad_frames = tuple(int(i) for i in np.asarray(self.bad_frames).ravel())

        n = len(self.timestamps)
        if len(self.positions) != n or len(self.peak_values) != n:
            raise ConfigurationError(
                f"timestamps ({n}), positions ({len(self.positions)}) and "
                f"peak values ({len(self.peak_values)}) must have the same length"
            )

    def __len__(self) -> int:
        return len(self.timestamps)

    def validate_geometry(self):
        """Raise ConfigurationError if the old strip geometry is unusable."""
        if self.strip_height is None or int(self.strip_height) <= 0:
            raise ConfigurationError("old strip height is required from strip analysis")
        if self.row_numbers is None or len(self.row_numbers) < 2:
            raise ConfigurationError(
                "old strip row template is required and needs at least two rows"
            )
        if self.row_numbers[1] == self.row_numbers[0]:
            raise ConfigurationError("old strip row template has repeated rows")
        if len(self) < 2:
            raise ConfigurationError(
                "motion trace needs at least two samples with distinct timestamps"
            )
        if np.any(np.diff(self.timestamps) < 0):
            raise ConfigurationError("motion trace timestamps must be non-decreasing")

    def deduplicated(self) -> 'MotionTrace':
        """
        Drop samples whose timestamp repeats the next one.

        Interpolation is undefined on repeated abscissas, so of each run of
        equal timestamps only the last sample is kept.
        """
        keep = np.ones(len(self), dtype=bool)
        keep[:-1] = np.diff(self.timestamps) != 0
        if np.all(keep):
            return self

        kept_idx = np.flatnonzero(keep)
        return MotionTrace(
            timestamps=self.timestamps[kept_idx],
            positions=self.positions[kept_idx],
            peak_values=self.peak_values[kept_idx],
            row_numbers=self.row_numbers,
            strip_height=self.strip_height,
            frame_count=self.frame_count,
            bad_frames=self.bad_frames,
        )

    def scanline_interval(self) -> float:
        """Time between two successive scanlines, from the first two samples."""
        dt_sample = self.timestamps[1] - self.timestamps[0]
        return float(dt_sample / (self.row_numbers[1] - self.row_numbers[0]))

    def strips_per_frame(self, n_frames: int) -> float:
        """Number of old-grid samples per frame."""
        return len(self) / float(n_frames)

    def save(self, path: Union[str, Path]):
        """Write the trace to an .npz file readable by load()."""
        arrays = {
            'timestamps': self.timestamps,
            'positions': self.positions,
            'peak_values': self.peak_values,
            'bad_frames': np.asarray(self.bad_frames, dtype=np.int64),
        }
        if self.row_numbers is not None:
            arrays['row_numbers'] = self.row_numbers
        if self.strip_height is not None:
            arrays['strip_height'] = np.asarray(self.strip_height)
        if self.frame_count is not None:
            arrays['frame_count'] = np.asarray(self.frame_count)
        np.savez(path, **arrays)

    @staticmethod
    def load(path: Union[str, Path]) -> 'MotionTrace':
        """
        Load a trace saved by the strip-analysis stage.

        Args:
            path: .npz file with timestamps, positions, peak_values,
                row_numbers, strip_height and optionally frame_count and
                bad_frames

        Returns:
            MotionTrace
        """
        with np.load(path, allow_pickle=False) as data:
            missing = [k for k in ('timestamps', 'positions', 'peak_values') if k not in data]
            if missing:
                raise ConfigurationError(f"{path}: missing motion trace arrays {missing}")

            def optional(key):
                return data[key] if key in data else None

            strip_height = optional('strip_height')
            frame_count = optional('frame_count')
            bad_frames = optional('bad_frames')
            return MotionTrace(
                timestamps=data['timestamps'],
                positions=data['positions'],
                peak_values=data['peak_values'],
                row_numbers=optional('row_numbers'),
                strip_height=int(strip_height) if strip_height is not None else None,
                frame_count=int(frame_count) if frame_count is not None else None,
                bad_frames=tuple(bad_frames.tolist()) if bad_frames is not None else (),
            )

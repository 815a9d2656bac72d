"""
Quality Filter Module.

A strip is trusted for the reference frame only when the tracker matched it
with a high cross-correlation peak and the eye did not move much since the
previous strip.
"""

import numpy as np

from .errors import ConfigurationError


def compute_motion_magnitude(
    positions: np.ndarray,
    frame_height: int,
    strips_per_frame: float
) -> np.ndarray:
    """
    Per-sample motion relative to the previous sample.

    The position delta is normalized by the frame height and multiplied by
    the number of strips per frame, so the value is the fraction of a frame
    height moved per frame at the current strip-to-strip speed.

    Args:
        positions: (x, y) positions, shape (N, 2)
        frame_height: Frame height in pixels
        strips_per_frame: Old-grid samples per frame

    Returns:
        Motion magnitudes, shape (N,); the first sample is 0
    """
    positions = np.asarray(positions, dtype=np.float64)
    motion = np.zeros(len(positions), dtype=np.float64)
    if len(positions) > 1:
        delta = np.diff(positions, axis=0) / float(frame_height)
        motion[1:] = np.sqrt(np.sum(delta ** 2, axis=1))
    return motion * strips_per_frame


class QualityFilter:
    """Classifies tracker samples as usable from peak value and motion."""

    def __init__(
        self,
        min_peak_threshold: float = 0.75,
        max_motion_threshold: float = 0.05
    ):
        """
        Initialize the filter.

        Args:
            min_peak_threshold: Minimum correlation peak, within [0, 1]
            max_motion_threshold: Maximum motion per strip as a fraction of
                the frame height, within [0, 1]
        """
        for name, value in (('min_peak_threshold', min_peak_threshold),
                            ('max_motion_threshold', max_motion_threshold)):
            if not 0.0 <= float(value) <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")

        self.min_peak_threshold = float(min_peak_threshold)
        self.max_motion_threshold = float(max_motion_threshold)

    def classify(
        self,
        peak_values: np.ndarray,
        positions: np.ndarray,
        frame_height: int,
        strips_per_frame: float
    ) -> np.ndarray:
        """
        Compute the usability mask.

        NaN peaks or positions compare false and are therefore unusable.

        Returns:
            Boolean array, True where the sample can be used
        """
        peak_values = np.asarray(peak_values, dtype=np.float64)
        motion = compute_motion_magnitude(positions, frame_height, strips_per_frame)

        with np.errstate(invalid='ignore'):
            return (peak_values >= self.min_peak_threshold) & \
                   (motion <= self.max_motion_threshold)

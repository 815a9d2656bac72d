"""
Configuration for reference frame construction.

All options are validated up front so that a bad value fails before any
frame is decoded. Thresholds are never clamped: a value outside [0, 1] is
an error.
"""

import numbers
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union

import numpy as np

from .errors import ConfigurationError


class Verbosity(IntEnum):
    """How much the builder reports while running."""
    NONE = 0
    SUMMARY = 1
    PER_FRAME = 2

    @classmethod
    def parse(cls, value: Union[str, int, 'Verbosity']) -> 'Verbosity':
        """Accept enum members, integers 0-2 and their names."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return cls.SUMMARY if value else cls.NONE
        if isinstance(value, numbers.Integral):
            try:
                return cls(int(value))
            except ValueError:
                raise ConfigurationError(f"Unknown verbosity level: {value}")
        if isinstance(value, str):
            key = value.strip().lower().replace('_', '').replace('-', '')
            aliases = {
                'none': cls.NONE,
                'summary': cls.SUMMARY,
                'video': cls.SUMMARY,
                'perframe': cls.PER_FRAME,
                'frame': cls.PER_FRAME,
            }
            if key in aliases:
                return aliases[key]
        raise ConfigurationError(f"Unknown verbosity level: {value!r}")

    @property
    def label(self) -> str:
        return {0: 'none', 1: 'summary', 2: 'perFrame'}[int(self)]


FULL_FRAME_LABELS = ('full', 'full frame', 'fullframe')


@dataclass
class ReferenceConfig:
    """
    Options recognized by the reference frame builder.

    Attributes:
        overwrite: Recompute even if a reference record already exists
        verbosity: none, summary or perFrame reporting
        subpixel_exponent: Canvas scale is 2 ** subpixel_exponent
        new_strip_height: Height in pixels of the strips placed on the canvas
        new_strip_width: Strip width in pixels, None for the full frame width
        min_peak_threshold: Minimum correlation peak of a usable strip
        max_motion_threshold: Maximum strip-to-strip motion as a fraction
            of the frame height
        trim: Rows removed from (top, bottom) of each frame upstream
        enhance_strips: Contrast stretch each strip before accumulation
        produce_stabilized_video: Also build the motion-stabilized stream
        bad_frames: 0-based indices of blink/bad frames to skip
        random_seed: Seed for the noise fill of uncovered pixels
        video_codec: FourCC used for the stabilized video file
    """
    overwrite: bool = False
    verbosity: Verbosity = Verbosity.NONE
    subpixel_exponent: int = 2
    new_strip_height: int = 15
    new_strip_width: Optional[int] = None
    min_peak_threshold: float = 0.75
    max_motion_threshold: float = 0.05
    trim: Tuple[int, int] = (0, 0)
    enhance_strips: bool = True
    produce_stabilized_video: bool = False
    bad_frames: FrozenSet[int] = field(default_factory=frozenset)
    random_seed: int = 0
    video_codec: str = 'MJPG'

    def __post_init__(self):
        self.verbosity = Verbosity.parse(self.verbosity)
        if isinstance(self.new_strip_width, str):
            if self.new_strip_width.strip().lower() not in FULL_FRAME_LABELS:
                raise ConfigurationError(
                    f"new_strip_width must be a positive integer or 'full frame', "
                    f"got {self.new_strip_width!r}"
                )
            self.new_strip_width = None
        self.validate()

    @property
    def scale(self) -> int:
        """Sub-pixel upsampling factor."""
        return 2 ** self.subpixel_exponent

    def validate(self) -> 'ReferenceConfig':
        """Raise ConfigurationError on the first invalid option."""
        for name in ('min_peak_threshold', 'max_motion_threshold'):
            value = getattr(self, name)
            if not isinstance(value, numbers.Real) or not (0.0 <= float(value) <= 1.0):
                raise ConfigurationError(f"{name} must be within [0, 1], got {value!r}")

        if not _is_int(self.subpixel_exponent) or self.subpixel_exponent < 0:
            raise ConfigurationError(
                f"subpixel_exponent must be an integer >= 0, got {self.subpixel_exponent!r}"
            )
        if not _is_int(self.new_strip_height) or self.new_strip_height <= 0:
            raise ConfigurationError(
                f"new_strip_height must be a positive integer, got {self.new_strip_height!r}"
            )
        if self.new_strip_width is not None and (
            not _is_int(self.new_strip_width) or self.new_strip_width <= 0
        ):
            raise ConfigurationError(
                f"new_strip_width must be a positive integer, got {self.new_strip_width!r}"
            )

        trim = tuple(self.trim)
        if len(trim) != 2 or not all(_is_int(t) and t >= 0 for t in trim):
            raise ConfigurationError(f"trim must be two non-negative integers, got {self.trim!r}")
        self.trim = (int(trim[0]), int(trim[1]))

        if not _is_int(self.random_seed):
            raise ConfigurationError(f"random_seed must be an integer, got {self.random_seed!r}")
        if not isinstance(self.video_codec, str) or len(self.video_codec) != 4:
            raise ConfigurationError(f"video_codec must be a FourCC string, got {self.video_codec!r}")

        if not isinstance(self.bad_frames, frozenset):
            self.bad_frames = _bad_frames_to_set(self.bad_frames)
        if any(i < 0 for i in self.bad_frames):
            raise ConfigurationError("bad_frames must contain non-negative frame indices")
        return self

    def with_overrides(self, **changes) -> 'ReferenceConfig':
        """Return a validated copy with some fields replaced."""
        return replace(self, **changes)

    def to_dict(self, strip_width: Optional[int] = None) -> Dict[str, Any]:
        """
        JSON-serializable view of the resolved configuration.

        Args:
            strip_width: Actual strip width used, recorded in place of None
        """
        return {
            'overwrite': bool(self.overwrite),
            'verbosity': self.verbosity.label,
            'subpixel_exponent': int(self.subpixel_exponent),
            'new_strip_height': int(self.new_strip_height),
            'new_strip_width': int(strip_width) if strip_width is not None else self.new_strip_width,
            'min_peak_threshold': float(self.min_peak_threshold),
            'max_motion_threshold': float(self.max_motion_threshold),
            'trim': list(self.trim),
            'enhance_strips': bool(self.enhance_strips),
            'produce_stabilized_video': bool(self.produce_stabilized_video),
            'bad_frames': sorted(int(i) for i in self.bad_frames),
            'random_seed': int(self.random_seed),
            'video_codec': self.video_codec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReferenceConfig':
        """Rebuild a configuration saved with to_dict()."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if 'trim' in known:
            known['trim'] = tuple(known['trim'])
        if 'bad_frames' in known:
            known['bad_frames'] = frozenset(int(i) for i in known['bad_frames'])
        return cls(**known)


def resolve_bad_frames(bad_frames: Iterable, n_frames: int) -> np.ndarray:
    """
    Turn a set of frame indices or a boolean mask into a skip mask.

    Args:
        bad_frames: 0-based indices, or a boolean array of length n_frames
        n_frames: Number of frames in the video

    Returns:
        Boolean array of length n_frames, True for frames to skip
    """
    skip = np.zeros(n_frames, dtype=bool)
    arr = np.asarray(list(bad_frames) if not isinstance(bad_frames, np.ndarray) else bad_frames)
    if arr.size == 0:
        return skip

    if arr.dtype == bool:
        if arr.shape != (n_frames,):
            raise ConfigurationError(
                f"bad frame mask has length {arr.size}, expected {n_frames}"
            )
        return arr.copy()

    indices = arr.astype(np.int64)
    out_of_range = (indices < 0) | (indices >= n_frames)
    if np.any(out_of_range):
        raise ConfigurationError(
            f"bad frame indices out of range [0, {n_frames}): {sorted(indices[out_of_range].tolist())}"
        )
    skip[indices] = True
    return skip


def _bad_frames_to_set(bad_frames) -> FrozenSet[int]:
    if bad_frames is None:
        return frozenset()
    arr = bad_frames if isinstance(bad_frames, np.ndarray) else np.asarray(list(bad_frames))
    if arr.dtype == bool:
        return frozenset(int(i) for i in np.flatnonzero(arr))
    try:
        return frozenset(int(i) for i in arr.ravel())
    except (TypeError, ValueError):
        raise ConfigurationError(f"bad_frames must be frame indices or a boolean mask, got {bad_frames!r}")


def _is_int(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)

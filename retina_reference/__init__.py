"""
Retinal Reference Frame Builder

Builds a high-quality reference frame for a retinal video by averaging
short horizontal strips placed at their tracked motion offsets on a
sub-pixel canvas, keeping only strips with a strong correlation peak and
little strip-to-strip motion.
"""

from .pipeline import ReferenceFrameBuilder, ReferenceResult
from .config import ReferenceConfig, Verbosity
from .motion_trace import MotionTrace
from .quality_filter import QualityFilter
from .resampling import PositionResampler, StripGrid
from .canvas import Canvas, CanvasAllocator
from .compositor import CancellationToken, StripCompositor
from .postprocessing import PostProcessor
from .errors import (
    ConfigurationError,
    DegenerateMotionError,
    ReferenceFrameError,
    ReferenceIOError,
)

__version__ = "1.0.0"
__all__ = [
    "ReferenceFrameBuilder",
    "ReferenceResult",
    "ReferenceConfig",
    "Verbosity",
    "MotionTrace",
    "QualityFilter",
    "PositionResampler",
    "StripGrid",
    "Canvas",
    "CanvasAllocator",
    "CancellationToken",
    "StripCompositor",
    "PostProcessor",
    "ConfigurationError",
    "DegenerateMotionError",
    "ReferenceFrameError",
    "ReferenceIOError",
]

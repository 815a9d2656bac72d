"""
Exception hierarchy for reference frame construction.
"""


class ReferenceFrameError(Exception):
    """Base class for all reference frame errors."""


class ConfigurationError(ReferenceFrameError, ValueError):
    """Invalid configuration or missing upstream strip geometry."""


class DegenerateMotionError(ReferenceFrameError):
    """No usable strip, so the canvas cannot be sized or filled."""


class ReferenceIOError(ReferenceFrameError, IOError):
    """Source video cannot be read or an output cannot be written."""

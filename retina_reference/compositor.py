"""
Strip Compositor Module.

The per-frame, per-strip loop: cut each new strip out of the decoded frame,
upsample it to the canvas scale, and add it to the reference canvas at the
position given by the resampled motion trace. Optionally also builds one
motion-stabilized frame per input frame from every strip, usable or not.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Optional

import cv2
import numpy as np
from skimage import exposure
from tqdm import tqdm

from .canvas import Canvas, StripPlacement
from .config import Verbosity
from .postprocessing import fix_black_lines, quantize
from .resampling import ResampledTrace, StripGrid

ProgressCallback = Callable[[int, np.ndarray], None]


class CancellationToken:
    """Cooperative cancellation flag, polled once per frame."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class CompositorStats:
    """Counts from one compositing pass."""
    frames_processed: int = 0
    frames_skipped: int = 0
    strips_processed: int = 0
    strips_placed: int = 0
    cancelled: bool = False


def stretch_contrast(strip: np.ndarray, saturation: float = 0.01) -> np.ndarray:
    """
    Linear contrast stretch of a strip to the full 8-bit range.

    The lowest and highest `saturation` fraction of pixels are saturated.
    A strip with no spread is returned unchanged.

    Args:
        strip: uint8 strip
        saturation: Fraction saturated at each end

    Returns:
        Stretched strip as float64 with integer values in [0, 255]
    """
    low, high = np.percentile(strip, (100.0 * saturation, 100.0 * (1.0 - saturation)))
    if high <= low:
        return strip.astype(np.float64)

    stretched = exposure.rescale_intensity(
        strip.astype(np.float64),
        in_range=(float(low), float(high)),
        out_range=(0.0, 255.0)
    )
    return np.rint(stretched)


class StabilizationBuffer:
    """Frame-local sum and count for one stabilized output frame."""

    def __init__(self, shape):
        self.total = np.zeros(shape, dtype=np.float64)
        self.count = np.zeros(shape, dtype=np.int32)

    def add(self, placement: StripPlacement, strip: np.ndarray):
        canvas_sl, strip_sl = placement.clipped(self.total.shape)
        self.total[canvas_sl] += strip[strip_sl]
        self.count[canvas_sl] += 1

    def render(self) -> np.ndarray:
        """Normalize, remove black lines and quantize to uint8."""
        frame = np.zeros_like(self.total)
        covered = self.count > 0
        frame[covered] = self.total[covered] / self.count[covered]
        return quantize(fix_black_lines(frame))


def placeholder_frame(shape) -> np.ndarray:
    """All-white frame written in place of a skipped frame."""
    return np.full(shape, 255, dtype=np.uint8)


class StripCompositor:
    """
    Accumulates strips from every good frame onto a Canvas.

    Strips are placed in frame order and top-to-bottom within a frame;
    since the canvas only sums and counts, the order does not change the
    result.
    """

    def __init__(
        self,
        grid: StripGrid,
        canvas: Canvas,
        enhance_strips: bool = True,
        interpolation: int = cv2.INTER_CUBIC,
        verbosity: Verbosity = Verbosity.NONE,
        progress_callback: Optional[ProgressCallback] = None
    ):
        """
        Initialize compositor.

        Args:
            grid: New strip geometry
            canvas: Allocated reference canvas
            enhance_strips: Contrast stretch strips before accumulation
            interpolation: OpenCV interpolation flag for upsampling
            verbosity: Progress reporting level
            progress_callback: Called as (frame_index, normalized_canvas)
                after every processed frame
        """
        self.grid = grid
        self.canvas = canvas
        self.enhance_strips = enhance_strips
        self.interpolation = interpolation
        self.verbosity = verbosity
        self.progress_callback = progress_callback

    def extract_strip(self, frame: np.ndarray, row: int) -> np.ndarray:
        """Cut the band starting at `row` within the centred column window."""
        left, right = self.grid.column_window
        bottom = min(self.grid.frame_height, row + self.grid.strip_height)
        return frame[row:bottom, left:right]

    def upsample(self, strip: np.ndarray) -> np.ndarray:
        """Resize a strip by the canvas scale."""
        scale = self.canvas.scale
        if scale == 1:
            return strip
        h, w = strip.shape[:2]
        return cv2.resize(strip, (w * scale, h * scale), interpolation=self.interpolation)

    def composite(
        self,
        source,
        resampled: ResampledTrace,
        skip_mask: np.ndarray,
        sink=None,
        cancel_token: Optional[CancellationToken] = None
    ) -> CompositorStats:
        """
        Run the frame loop.

        Args:
            source: Frame source with read() and skip()
            resampled: Motion trace on the new strip grid
            skip_mask: True for bad/blink frames
            sink: Optional stabilized-frame sink with write(frame)
            cancel_token: Polled before each frame

        Returns:
            CompositorStats; `cancelled` is set if the loop was aborted
        """
        stats = CompositorStats()
        rows = self.grid.row_numbers
        n_frames = len(skip_mask)

        if self.verbosity >= Verbosity.SUMMARY:
            iterator = tqdm(range(n_frames), desc="Reference frame")
        else:
            iterator = range(n_frames)

        for fr in iterator:
            if cancel_token is not None and cancel_token.cancelled:
                stats.cancelled = True
                break

            if skip_mask[fr]:
                source.skip()
                if sink is not None:
                    sink.write(placeholder_frame(self.canvas.shape))
                stats.frames_skipped += 1
                continue

            frame = source.read()
            stab = StabilizationBuffer(self.canvas.shape) if sink is not None else None
            placed_in_frame = 0

            for sn, row in enumerate(rows):
                sample = resampled.sample_index(fr, sn)
                strip = self.upsample(self.extract_strip(frame, int(row)))
                placement = self.canvas.placement(resampled.positions[sample], int(row), strip.shape)
                stats.strips_processed += 1

                # stabilized frames use every strip regardless of quality
                if stab is not None and placement.defined:
                    stab.add(placement, strip.astype(np.float64))

                if not resampled.usable[sample] or not placement.defined:
                    continue

                if self.enhance_strips:
                    values = stretch_contrast(strip)
                else:
                    values = strip.astype(np.float64)

                self.canvas.add(placement, values)
                placed_in_frame += 1

            stats.strips_placed += placed_in_frame
            stats.frames_processed += 1

            if stab is not None:
                sink.write(stab.render())

            if self.verbosity >= Verbosity.PER_FRAME:
                tqdm.write(f"  Frame {fr}: placed {placed_in_frame}/{len(rows)} strips")

            if self.progress_callback is not None:
                self.progress_callback(fr, self.canvas.normalized())

        return stats

"""
Main Pipeline Orchestrator.

Builds a reference frame for a retinal video from strip motion:
Quality filter → Position resampling → Canvas allocation → Strip compositing → Post-processing

The reference frame is the average of every trusted strip placed at its
estimated position on a sub-pixel canvas. An optional motion-stabilized
video is produced from the same placements in the same pass.
"""

import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np

from .canvas import CanvasAllocator
from .compositor import CancellationToken, ProgressCallback, StripCompositor
from .config import ReferenceConfig, Verbosity, resolve_bad_frames
from .errors import ConfigurationError, ReferenceIOError
from .motion_trace import MotionTrace
from .postprocessing import PostProcessor
from .quality_filter import QualityFilter
from .resampling import PositionResampler, StripGrid
from .storage import (
    load_reference,
    record_exists,
    reference_output_path,
    save_reference,
    stabilized_video_path,
)
from .video_io import FrameCollector, StabilizedVideoWriter, VideoInput, open_video_source


@dataclass
class ReferenceResult:
    """
    Everything a run produces.

    Image fields are None only when the run was cancelled.
    """
    reference_frame: Optional[np.ndarray]
    reference_float: Optional[np.ndarray]
    coverage: Optional[np.ndarray]
    output_path: Optional[Path]
    stabilized_video_path: Optional[Path]
    stabilized_frames: List[np.ndarray] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    from_existing: bool = False


class ReferenceFrameBuilder:
    """
    Complete reference frame pipeline.

    Selects strips with a high correlation peak and little motion, places
    them on a 2 ** subpixel_exponent canvas and averages the overlaps.
    """

    def __init__(
        self,
        config: Optional[ReferenceConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
        **overrides
    ):
        """
        Initialize the builder.

        Args:
            config: Options; defaults are used if None
            progress_callback: Called as (frame_index, normalized_canvas)
                after each processed frame
            **overrides: ReferenceConfig fields replacing those of `config`
        """
        config = config if config is not None else ReferenceConfig()
        self.config = config.with_overrides(**overrides) if overrides else config
        self.progress_callback = progress_callback

        self.quality_filter = QualityFilter(
            min_peak_threshold=self.config.min_peak_threshold,
            max_motion_threshold=self.config.max_motion_threshold
        )
        self.allocator = CanvasAllocator(subpixel_exponent=self.config.subpixel_exponent)
        self.post_processor = PostProcessor(random_seed=self.config.random_seed)

    def _log(self, message: str):
        """Print message if verbose mode is enabled."""
        if self.config.verbosity >= Verbosity.SUMMARY:
            print(message)

    def build(
        self,
        video: VideoInput,
        trace: MotionTrace,
        output_path: Optional[Union[str, os.PathLike]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ReferenceResult:
        """
        Build the reference frame for a video.

        A record is written when `video` is a path or `output_path` is
        given. In-memory input without `output_path` writes nothing and
        returns stabilized frames in the result instead. Without
        `overwrite`, an existing record is returned as is and a stabilized
        video left without its record raises ReferenceIOError.

        Args:
            video: Video path or in-memory frames
            trace: Strip motion from the tracker
            output_path: Reference record path (default next to the video)
            cancel_token: Cooperative cancellation flag

        Returns:
            ReferenceResult
        """
        start_time = time.time()
        config = self.config

        if output_path is None and isinstance(video, (str, os.PathLike)):
            output_path = reference_output_path(video)
        output_path = Path(output_path) if output_path is not None else None
        stab_path = None
        if output_path is not None and config.produce_stabilized_video:
            stab_path = stabilized_video_path(output_path)

        # Step 0: Reuse an existing record unless asked to overwrite
        if record_exists(output_path):
            if not config.overwrite:
                self._log(f"Reference record exists, not overwriting: {output_path}")
                return self._load_existing(output_path, stab_path)
            self._log(f"Overwriting existing reference record: {output_path}")
        if stab_path is not None and stab_path.exists() and not config.overwrite:
            raise ReferenceIOError(
                f"Stabilized video exists without its reference record, "
                f"not overwriting: {stab_path}"
            )

        trace = trace.deduplicated()
        trace.validate_geometry()

        source = open_video_source(video)
        sink = None
        try:
            width, height = source.frame_size
            n_frames = trace.frame_count or source.frame_count
            self._log(f"Building reference from {n_frames} frames, size {width}x{height}")
            if n_frames <= 0:
                raise ConfigurationError("frame count is unknown or zero")

            skip_mask = resolve_bad_frames(
                sorted(set(config.bad_frames) | set(trace.bad_frames)), n_frames
            )

            # Step 1: Quality filter on the tracker grid
            usable = self.quality_filter.classify(
                trace.peak_values,
                trace.positions,
                height,
                trace.strips_per_frame(n_frames)
            )
            self._log(f"  Usable strips: {int(usable.sum())}/{len(usable)}")

            # Step 2: Resample onto the new strip grid
            grid = StripGrid(
                frame_height=height,
                frame_width=width,
                strip_height=config.new_strip_height,
                strip_width=config.new_strip_width,
                trim=config.trim
            )
            resampled = PositionResampler(grid).resample(trace, usable, n_frames)

            # Step 3: Allocate the canvas
            canvas = self.allocator.allocate(resampled, grid)
            self._log(f"  Canvas: {canvas.shape[1]}x{canvas.shape[0]} at scale {canvas.scale}")

            # Step 4: Composite strips
            if config.produce_stabilized_video:
                if stab_path is not None:
                    sink = StabilizedVideoWriter(stab_path, source.fps, config.video_codec)
                else:
                    sink = FrameCollector()

            compositor = StripCompositor(
                grid,
                canvas,
                enhance_strips=config.enhance_strips,
                verbosity=config.verbosity,
                progress_callback=self.progress_callback
            )
            stats = compositor.composite(source, resampled, skip_mask, sink, cancel_token)

            if stats.cancelled:
                self._log("Cancelled; discarding partial output")
                if sink is not None:
                    sink.discard()
                return ReferenceResult(
                    reference_frame=None,
                    reference_float=None,
                    coverage=None,
                    output_path=None,
                    stabilized_video_path=None,
                    config=config.to_dict(grid.strip_width),
                    cancelled=True
                )

            if sink is not None:
                sink.release()

            # Step 5: Post-process
            post = self.post_processor.process(canvas.accumulator, canvas.counter, canvas.scale)

            params = config.to_dict(grid.strip_width)
            if output_path is not None:
                self._log(f"Saving to {output_path}...")
                save_reference(
                    output_path,
                    post.reference_frame,
                    post.reference_float,
                    post.coverage,
                    params
                )
        except BaseException:
            if sink is not None:
                sink.discard()
            raise
        finally:
            source.release()

        processing_time = time.time() - start_time
        metrics = {
            'n_frames': n_frames,
            'frames_processed': stats.frames_processed,
            'frames_skipped': stats.frames_skipped,
            'strips_processed': stats.strips_processed,
            'strips_placed': stats.strips_placed,
            'usable_fraction': float(usable.mean()),
            'resampled_usable_fraction': float(resampled.usable.mean()),
            'canvas_size': (canvas.shape[1], canvas.shape[0]),
            'reference_size': (post.reference_frame.shape[1], post.reference_frame.shape[0]),
            'noise_filled_pixels': post.noise_filled_pixels,
            'processing_time': processing_time,
        }

        self._log(f"Done! Processing time: {processing_time:.1f}s")
        self._print_metrics(metrics)

        return ReferenceResult(
            reference_frame=post.reference_frame,
            reference_float=post.reference_float,
            coverage=post.coverage,
            output_path=output_path,
            stabilized_video_path=stab_path,
            stabilized_frames=sink.frames if isinstance(sink, FrameCollector) else [],
            config=params,
            metrics=metrics
        )

    def _load_existing(self, output_path: Path, stab_path: Optional[Path]) -> ReferenceResult:
        record = load_reference(output_path)
        if stab_path is not None and not stab_path.exists():
            stab_path = None
        return ReferenceResult(
            reference_frame=record['reference_frame'],
            reference_float=record['reference_float'],
            coverage=record['coverage'],
            output_path=output_path,
            stabilized_video_path=stab_path,
            config=record['params'],
            from_existing=True
        )

    def _print_metrics(self, metrics: Dict[str, Any]):
        """Print metrics summary."""
        if self.config.verbosity < Verbosity.SUMMARY:
            return

        print("\n=== Reference Frame Metrics ===")
        print(f"Frames used: {metrics['frames_processed']}/{metrics['n_frames']} "
              f"({metrics['frames_skipped']} skipped)")
        print(f"Strips placed: {metrics['strips_placed']}/{metrics['strips_processed']}")
        print(f"Usable samples: {metrics['usable_fraction'] * 100:.1f}% "
              f"(resampled {metrics['resampled_usable_fraction'] * 100:.1f}%)")
        print(f"Reference size: {metrics['reference_size'][0]}x{metrics['reference_size'][1]}")
        print(f"Noise-filled pixels: {metrics['noise_filled_pixels']}")


def main(argv: Optional[List[str]] = None):
    """Command-line interface for reference frame construction."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Build a retinal reference frame from strip motion"
    )
    parser.add_argument("video", help="Input video path")
    parser.add_argument("trace", help="Motion trace (.npz) from strip analysis")
    parser.add_argument("--output", default=None,
                        help="Reference record path (default: <video>_reference.npz)")
    parser.add_argument("--overwrite", action="store_true", help="Overwrite existing outputs")
    parser.add_argument("--verbosity", default="summary",
                        help="none, summary or perFrame")
    parser.add_argument("--subpixel", type=int, default=2,
                        help="Sub-pixel depth in octaves (2 = quarter pixel)")
    parser.add_argument("--strip-height", type=int, default=15, help="New strip height in pixels")
    parser.add_argument("--strip-width", type=int, default=None,
                        help="New strip width in pixels (default: full frame)")
    parser.add_argument("--min-peak", type=float, default=0.75, help="Minimum peak value (0-1)")
    parser.add_argument("--max-motion", type=float, default=0.05,
                        help="Maximum motion between strips as a fraction of frame height (0-1)")
    parser.add_argument("--trim", type=int, nargs=2, default=[0, 0], metavar=("TOP", "BOTTOM"),
                        help="Rows trimmed from the top and bottom of each frame")
    parser.add_argument("--no-enhance", action="store_true", help="Disable strip contrast stretch")
    parser.add_argument("--stabilized-video", action="store_true",
                        help="Also write a motion-stabilized video")
    parser.add_argument("--bad-frames", type=int, nargs="*", default=[],
                        help="0-based indices of blink/bad frames")
    parser.add_argument("--seed", type=int, default=0, help="Seed for noise fill")

    args = parser.parse_args(argv)

    config = ReferenceConfig(
        overwrite=args.overwrite,
        verbosity=args.verbosity,
        subpixel_exponent=args.subpixel,
        new_strip_height=args.strip_height,
        new_strip_width=args.strip_width,
        min_peak_threshold=args.min_peak,
        max_motion_threshold=args.max_motion,
        trim=tuple(args.trim),
        enhance_strips=not args.no_enhance,
        produce_stabilized_video=args.stabilized_video,
        bad_frames=frozenset(args.bad_frames),
        random_seed=args.seed
    )
    trace = MotionTrace.load(args.trace)

    # Ctrl-C stops after the current frame
    token = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())

    builder = ReferenceFrameBuilder(config)
    try:
        result = builder.build(args.video, trace, output_path=args.output, cancel_token=token)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if result.cancelled:
        print("Reference frame construction cancelled; no output written.")
        return 1
    print(f"Reference frame: {result.output_path}")
    if result.stabilized_video_path is not None:
        print(f"Stabilized video: {result.stabilized_video_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

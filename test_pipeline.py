#!/usr/bin/env python3
"""
End-to-end tests for reference frame construction with dummy data.
"""

import numpy as np
import cv2
import pytest

from retina_reference import (
    CancellationToken,
    ConfigurationError,
    DegenerateMotionError,
    MotionTrace,
    ReferenceConfig,
    ReferenceFrameBuilder,
    ReferenceIOError,
)
from retina_reference.pipeline import main
from retina_reference.storage import load_reference
from retina_reference.video_io import StabilizedVideoWriter, read_video_frames

LINE_TIME = 2.0 ** -12


def create_dummy_retinal_texture(size=(60, 80), seed: int = 0) -> np.ndarray:
    """
    Synthetic grayscale fundus patch with vessel-like dark lines.
    """
    rng = np.random.default_rng(seed)
    h, w = size
    texture = rng.integers(90, 170, size=(h, w)).astype(np.uint8)
    texture = cv2.GaussianBlur(texture, (5, 5), 1.0)

    center = (w // 2, h // 2)
    for angle in [0, 60, 120, 200, 290]:
        rad = np.radians(angle)
        end = (int(center[0] + 60 * np.cos(rad)), int(center[1] + 60 * np.sin(rad)))
        cv2.line(texture, center, end, 40, 2)
    return texture


def create_shifted_frames(texture, offsets, frame_size=(48, 64)):
    """Crop one frame per (x, y) offset so that frame[r, c] = texture[r + y, c + x]."""
    h, w = frame_size
    return [texture[y:y + h, x:x + w].copy() for x, y in offsets]


def create_trace_for_offsets(
    offsets,
    frame_height: int = 48,
    strip_height: int = 16,
    peaks=None
) -> MotionTrace:
    """Tracker output where every strip of a frame has that frame's offset."""
    rows = np.arange(0, frame_height, strip_height)
    n_frames = len(offsets)
    lines = np.arange(n_frames)[:, None] * frame_height + rows[None, :]
    positions = np.repeat(np.asarray(offsets, dtype=np.float64), len(rows), axis=0)
    if peaks is None:
        peaks = np.ones(lines.size)
    return MotionTrace(
        timestamps=lines.ravel() * LINE_TIME,
        positions=positions,
        peak_values=peaks,
        row_numbers=rows,
        strip_height=strip_height,
        frame_count=n_frames
    )


def write_dummy_video(path, frames, fps: float = 30.0):
    h, w = frames[0].shape[:2]
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*'MJPG'), fps, (w, h), True)
    for frame in frames:
        writer.write(cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR))
    writer.release()
    return path


OFFSETS = [(0, 0), (3, 2), (6, 1), (2, 5)]


@pytest.mark.parametrize("subpixel_exponent", [0, 2])
def test_zero_motion_uniform_frame(subpixel_exponent):
    value = 100
    frames = [np.full((64, 80), value, dtype=np.uint8)]
    trace = create_trace_for_offsets([(0, 0)], frame_height=64, strip_height=16)

    builder = ReferenceFrameBuilder(
        subpixel_exponent=subpixel_exponent,
        new_strip_height=64
    )
    result = builder.build(frames, trace)

    assert result.reference_frame.shape == (64, 80)
    assert np.all(result.reference_frame == value)
    assert np.allclose(result.reference_float, value)
    assert np.all(result.coverage > 0)
    assert result.metrics['noise_filled_pixels'] == 0
    assert result.output_path is None


def test_shifted_frames_rebuild_texture():
    texture = create_dummy_retinal_texture()
    frames = create_shifted_frames(texture, OFFSETS)
    trace = create_trace_for_offsets(OFFSETS)

    builder = ReferenceFrameBuilder(
        subpixel_exponent=0,
        new_strip_height=16,
        enhance_strips=False,
        min_peak_threshold=0.5,
        max_motion_threshold=1.0
    )
    result = builder.build(frames, trace)

    # extent of motion plus frame size
    assert result.reference_frame.shape == (5 + 48, 6 + 64)
    covered = result.coverage > 0
    expected = texture[:53, :70]
    assert np.allclose(result.reference_float[covered], expected[covered])
    assert np.array_equal(result.reference_frame[covered], expected[covered])
    assert result.metrics['noise_filled_pixels'] == int((~covered).sum())


def test_bad_frame_is_skipped():
    frames = [np.full((48, 64), v, dtype=np.uint8) for v in (50, 250, 50)]
    trace = create_trace_for_offsets([(0, 0)] * 3)

    builder = ReferenceFrameBuilder(
        subpixel_exponent=1,
        new_strip_height=16,
        enhance_strips=False,
        produce_stabilized_video=True,
        bad_frames={1}
    )
    result = builder.build(frames, trace)

    assert result.metrics['strips_processed'] == 6
    assert result.metrics['strips_placed'] == 6
    assert result.metrics['frames_skipped'] == 1
    assert np.all(result.reference_frame == 50)

    canvas_w, canvas_h = result.metrics['canvas_size']
    assert len(result.stabilized_frames) == 3
    assert result.stabilized_frames[1].shape == (canvas_h, canvas_w)
    assert np.all(result.stabilized_frames[1] == 255)
    assert np.all(result.stabilized_frames[0][:96, :128] == 50)


def test_bad_frames_from_trace_are_skipped():
    frames = [np.full((48, 64), v, dtype=np.uint8) for v in (50, 250, 50)]
    trace = create_trace_for_offsets([(0, 0)] * 3)
    trace.bad_frames = (1,)

    result = ReferenceFrameBuilder(subpixel_exponent=0, new_strip_height=16,
                                   enhance_strips=False).build(frames, trace)
    assert result.metrics['frames_skipped'] == 1
    assert np.all(result.reference_frame == 50)


def test_runs_are_deterministic():
    texture = create_dummy_retinal_texture(seed=4)
    frames = create_shifted_frames(texture, OFFSETS)
    trace = create_trace_for_offsets(OFFSETS)
    config = ReferenceConfig(subpixel_exponent=2, new_strip_height=8,
                             max_motion_threshold=1.0, min_peak_threshold=0.5)

    first = ReferenceFrameBuilder(config).build(frames, trace)
    second = ReferenceFrameBuilder(config).build(frames, trace)

    assert first.metrics['noise_filled_pixels'] > 0
    assert first.reference_frame.tobytes() == second.reference_frame.tobytes()
    assert np.array_equal(first.reference_float, second.reference_float, equal_nan=True)


def test_peak_threshold_at_one_keeps_perfect_strips_only():
    frames = [np.full((48, 64), 90, dtype=np.uint8)] * 2
    peaks = np.tile([1.0, 0.99], 3)
    trace = create_trace_for_offsets([(0, 0)] * 2, peaks=peaks)

    result = ReferenceFrameBuilder(min_peak_threshold=1.0, subpixel_exponent=0,
                                   new_strip_height=16).build(frames, trace)
    assert result.metrics['usable_fraction'] == pytest.approx(0.5)
    assert result.metrics['strips_placed'] == 3


def test_no_usable_strip_raises():
    frames = [np.full((48, 64), 90, dtype=np.uint8)] * 2
    trace = create_trace_for_offsets([(0, 0)] * 2, peaks=np.full(6, 0.1))
    with pytest.raises(DegenerateMotionError):
        ReferenceFrameBuilder().build(frames, trace)


def test_missing_row_template_raises():
    frames = [np.full((48, 64), 90, dtype=np.uint8)] * 2
    trace = create_trace_for_offsets([(0, 0)] * 2)
    trace.row_numbers = None
    with pytest.raises(ConfigurationError):
        ReferenceFrameBuilder().build(frames, trace)


def test_repeated_timestamps_collapse_to_too_few_samples():
    frames = [np.full((48, 64), 90, dtype=np.uint8)]
    trace = MotionTrace(
        timestamps=[0.0, 0.0, 0.0],
        positions=np.zeros((3, 2)),
        peak_values=np.ones(3),
        row_numbers=[0, 16, 32],
        strip_height=16
    )
    with pytest.raises(ConfigurationError):
        ReferenceFrameBuilder(new_strip_height=16).build(frames, trace)


def test_missing_video_raises(tmp_path):
    trace = create_trace_for_offsets([(0, 0)] * 2)
    with pytest.raises(ReferenceIOError):
        ReferenceFrameBuilder().build(tmp_path / "missing.avi", trace)
    assert not (tmp_path / "missing_reference.npz").exists()


def test_decode_failure_discards_partial_output(tmp_path):
    video_path = write_dummy_video(
        tmp_path / "clip.avi",
        [np.full((48, 64), 128, dtype=np.uint8)] * 2
    )
    # trace claims more frames than the file holds
    trace = create_trace_for_offsets([(0, 0)] * 4)

    builder = ReferenceFrameBuilder(new_strip_height=16, produce_stabilized_video=True)
    with pytest.raises(ReferenceIOError):
        builder.build(video_path, trace)

    assert not (tmp_path / "clip_stabilized.avi").exists()
    assert not (tmp_path / "clip_reference.npz").exists()


def test_orphaned_stabilized_video_is_not_overwritten(tmp_path):
    output_path = tmp_path / "clip_reference.npz"
    stabilized_path = tmp_path / "clip_stabilized.avi"
    stabilized_path.write_bytes(b"previous run")
    frames = [np.full((48, 64), 80, dtype=np.uint8)] * 2
    trace = create_trace_for_offsets([(0, 0)] * 2)

    builder = ReferenceFrameBuilder(new_strip_height=16, produce_stabilized_video=True)
    with pytest.raises(ReferenceIOError):
        builder.build(frames, trace, output_path)
    assert stabilized_path.read_bytes() == b"previous run"
    assert not output_path.exists()

    result = ReferenceFrameBuilder(builder.config, overwrite=True).build(frames, trace, output_path)
    assert output_path.exists()
    assert result.stabilized_video_path == stabilized_path
    assert stabilized_path.read_bytes() != b"previous run"


def test_stabilized_writer_accepts_gray_frames(tmp_path):
    path = tmp_path / "gray.avi"
    writer = StabilizedVideoWriter(path, fps=30.0)
    for _ in range(3):
        writer.write(np.full((40, 48), 200, dtype=np.uint8))
    writer.release()

    written, _ = read_video_frames(path)
    assert len(written) == 3
    assert written[0].shape == (40, 48)
    assert abs(float(written[0].mean()) - 200.0) < 3.0


def test_existing_record_is_not_overwritten(tmp_path):
    output_path = tmp_path / "clip_reference.npz"
    trace = create_trace_for_offsets([(0, 0)] * 2)
    builder = ReferenceFrameBuilder(subpixel_exponent=0, new_strip_height=16, enhance_strips=False)

    first = builder.build([np.full((48, 64), 80, dtype=np.uint8)] * 2, trace, output_path)
    assert output_path.exists()
    assert not first.from_existing

    frames = [np.full((48, 64), 120, dtype=np.uint8)] * 2
    cached = builder.build(frames, trace, output_path)
    assert cached.from_existing
    assert np.all(cached.reference_frame == 80)
    assert cached.config == first.config

    recomputed = ReferenceFrameBuilder(builder.config, overwrite=True).build(frames, trace, output_path)
    assert not recomputed.from_existing
    assert np.all(recomputed.reference_frame == 120)
    assert np.all(load_reference(output_path)['reference_frame'] == 120)


def test_cancellation_leaves_no_output(tmp_path):
    output_path = tmp_path / "clip_reference.npz"
    texture = create_dummy_retinal_texture()
    frames = create_shifted_frames(texture, OFFSETS)
    trace = create_trace_for_offsets(OFFSETS)
    token = CancellationToken()

    seen = []

    def on_progress(frame_index, normalized):
        seen.append(frame_index)
        token.cancel()

    builder = ReferenceFrameBuilder(
        progress_callback=on_progress,
        max_motion_threshold=1.0,
        produce_stabilized_video=True
    )
    result = builder.build(frames, trace, output_path, cancel_token=token)

    assert result.cancelled
    assert result.reference_frame is None
    assert seen == [0]
    assert not output_path.exists()
    assert not (tmp_path / "clip_stabilized.avi").exists()


def test_progress_callback_sees_every_processed_frame():
    texture = create_dummy_retinal_texture()
    frames = create_shifted_frames(texture, OFFSETS)
    trace = create_trace_for_offsets(OFFSETS)
    seen = []

    builder = ReferenceFrameBuilder(
        progress_callback=lambda i, canvas: seen.append((i, canvas.shape)),
        max_motion_threshold=1.0,
        bad_frames={2}
    )
    result = builder.build(frames, trace)

    canvas_w, canvas_h = result.metrics['canvas_size']
    assert [i for i, _ in seen] == [0, 1, 3]
    assert all(shape == (canvas_h, canvas_w) for _, shape in seen)


def test_stabilized_video_is_written(tmp_path):
    output_path = tmp_path / "clip_reference.npz"
    texture = create_dummy_retinal_texture()
    frames = create_shifted_frames(texture, OFFSETS)
    trace = create_trace_for_offsets(OFFSETS)

    result = ReferenceFrameBuilder(
        max_motion_threshold=1.0,
        produce_stabilized_video=True
    ).build(frames, trace, output_path)

    assert result.stabilized_video_path == tmp_path / "clip_stabilized.avi"
    assert result.stabilized_video_path.exists()
    assert result.stabilized_frames == []

    written, _ = read_video_frames(result.stabilized_video_path)
    canvas_w, canvas_h = result.metrics['canvas_size']
    assert len(written) == len(frames)
    assert written[0].shape == (canvas_h, canvas_w)


def test_video_file_input(tmp_path):
    video_path = write_dummy_video(
        tmp_path / "clip.avi",
        [np.full((48, 64), 128, dtype=np.uint8)] * 3
    )
    trace = create_trace_for_offsets([(0, 0)] * 3)

    result = ReferenceFrameBuilder(new_strip_height=16, bad_frames={1}).build(video_path, trace)

    assert result.output_path == tmp_path / "clip_reference.npz"
    assert result.output_path.exists()
    assert result.metrics['frames_processed'] == 2
    record = load_reference(result.output_path)
    assert record['params']['bad_frames'] == [1]
    assert record['reference_frame'].shape == result.reference_frame.shape


def test_command_line(tmp_path):
    video_path = write_dummy_video(
        tmp_path / "clip.avi",
        [np.full((48, 64), 128, dtype=np.uint8)] * 2
    )
    trace_path = tmp_path / "clip_trace.npz"
    create_trace_for_offsets([(0, 0)] * 2).save(trace_path)

    status = main([str(video_path), str(trace_path), "--verbosity", "none",
                   "--strip-height", "16", "--subpixel", "1"])
    assert status == 0
    assert (tmp_path / "clip_reference.npz").exists()


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))

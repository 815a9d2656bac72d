"""
Video I/O Module.

Frame sources deliver single-channel uint8 frames in order, either decoded
from a file with OpenCV or taken from frames already in memory. Frame sinks
receive the stabilized frames, either written to a video file or collected
in a list.
"""

import os
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .errors import ReferenceIOError

VideoInput = Union[str, os.PathLike, np.ndarray, Sequence[np.ndarray]]


def to_gray_uint8(frame: np.ndarray) -> np.ndarray:
    """Convert a BGR or grayscale frame to single-channel uint8."""
    if frame.ndim == 3:
        if frame.shape[2] == 1:
            frame = frame[:, :, 0]
        else:
            frame = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    if frame.dtype != np.uint8:
        frame = np.clip(np.rint(frame), 0, 255).astype(np.uint8)
    return frame


class VideoFileSource:
    """Sequential reader over a video file."""

    def __init__(self, video_path: Union[str, os.PathLike]):
        self.video_path = str(video_path)
        self.cap = cv2.VideoCapture(self.video_path)
        if not self.cap.isOpened():
            raise ReferenceIOError(f"Cannot open video: {self.video_path}")

        self.fps = self.cap.get(cv2.CAP_PROP_FPS) or 30.0
        self.frame_count = int(self.cap.get(cv2.CAP_PROP_FRAME_COUNT))
        width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.frame_size = (width, height)
        self._next_index = 0

    def read(self) -> np.ndarray:
        """Decode the next frame."""
        ret, frame = self.cap.read()
        if not ret:
            raise ReferenceIOError(
                f"Cannot decode frame {self._next_index} of {self.video_path}"
            )
        self._next_index += 1
        return to_gray_uint8(frame)

    def skip(self):
        """Advance past the next frame without decoding it."""
        if not self.cap.grab():
            raise ReferenceIOError(
                f"Cannot advance past frame {self._next_index} of {self.video_path}"
            )
        self._next_index += 1

    def release(self):
        self.cap.release()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()


class ArraySource:
    """Frames already loaded in memory, as a list or an (N, H, W[, C]) array."""

    def __init__(self, frames: Union[np.ndarray, Sequence[np.ndarray]], fps: float = 30.0):
        if len(frames) == 0:
            raise ReferenceIOError("No frames given")
        self.frames = frames
        self.fps = fps
        self.frame_count = len(frames)
        h, w = np.asarray(frames[0]).shape[:2]
        self.frame_size = (w, h)
        self._next_index = 0

    def read(self) -> np.ndarray:
        if self._next_index >= self.frame_count:
            raise ReferenceIOError(f"Frame {self._next_index} requested but only {self.frame_count} given")
        frame = np.asarray(self.frames[self._next_index])
        self._next_index += 1
        return to_gray_uint8(frame)

    def skip(self):
        self._next_index += 1

    def release(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()


def open_video_source(video: VideoInput, fps: float = 30.0):
    """Return a frame source for a path or in-memory frames."""
    if isinstance(video, (str, os.PathLike)):
        return VideoFileSource(video)
    return ArraySource(video, fps=fps)


class StabilizedVideoWriter:
    """
    Writes stabilized frames to a video file.

    The writer opens on the first frame, since the canvas size is only
    known after allocation. discard() releases and deletes the file.
    """

    def __init__(self, output_path: Union[str, os.PathLike], fps: float, codec: str = 'MJPG'):
        self.output_path = str(output_path)
        self.fps = fps
        self.codec = codec
        self.writer: Optional[cv2.VideoWriter] = None
        self.frames_written = 0

    def _open(self, size: Tuple[int, int]):
        fourcc = cv2.VideoWriter_fourcc(*self.codec)
        self.writer = cv2.VideoWriter(self.output_path, fourcc, self.fps, size, False)
        if not self.writer.isOpened():
            self.writer = None
            raise ReferenceIOError(f"Cannot open video writer: {self.output_path}")

    def write(self, frame: np.ndarray):
        h, w = frame.shape[:2]
        if self.writer is None:
            self._open((w, h))
        self.writer.write(frame)
        self.frames_written += 1

    def release(self):
        if self.writer is not None:
            self.writer.release()
            self.writer = None

    def discard(self):
        """Release the writer and delete the partial file."""
        self.release()
        if os.path.exists(self.output_path):
            os.remove(self.output_path)


class FrameCollector:
    """Keeps stabilized frames in memory."""

    def __init__(self):
        self.frames: List[np.ndarray] = []

    def write(self, frame: np.ndarray):
        self.frames.append(frame)

    def release(self):
        pass

    def discard(self):
        self.frames.clear()


def read_video_frames(video_path: Union[str, os.PathLike]) -> Tuple[List[np.ndarray], float]:
    """Load every frame of a video as grayscale uint8."""
    frames = []
    with VideoFileSource(video_path) as source:
        fps = source.fps
        while True:
            ret, frame = source.cap.read()
            if not ret:
                break
            frames.append(to_gray_uint8(frame))
    return frames, fps

"""
Reference record persistence.

A reference record is an .npz archive with the quantized reference frame,
the pre-quantization float image, the coverage map and the resolved
configuration as JSON. Records are written to a temporary file first and
moved into place, so an interrupted write never leaves a truncated record.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

from .errors import ReferenceIOError

REFERENCE_SUFFIX = '_reference.npz'
STABILIZED_SUFFIX = '_stabilized.avi'

PathLike = Union[str, os.PathLike]


def reference_output_path(video_path: PathLike) -> Path:
    """<dir>/<stem>_reference.npz next to the video."""
    video_path = Path(video_path)
    return video_path.with_name(video_path.stem + REFERENCE_SUFFIX)


def stabilized_video_path(output_path: PathLike) -> Path:
    """Stabilized video path matching a reference record path."""
    output_path = Path(output_path)
    name = output_path.name
    if name.endswith(REFERENCE_SUFFIX):
        stem = name[:-len(REFERENCE_SUFFIX)]
    else:
        stem = output_path.stem
    return output_path.with_name(stem + STABILIZED_SUFFIX)


def save_reference(
    output_path: PathLike,
    reference_frame: np.ndarray,
    reference_float: np.ndarray,
    coverage: np.ndarray,
    params: Dict[str, Any]
) -> Path:
    """
    Write a reference record.

    Raises:
        ReferenceIOError: if the record cannot be written
    """
    output_path = Path(output_path)
    tmp_path = output_path.with_name(output_path.name + '.partial')
    try:
        with open(tmp_path, 'wb') as f:
            np.savez_compressed(
                f,
                reference_frame=reference_frame,
                reference_float=reference_float,
                coverage=coverage,
                params=np.array(json.dumps(params))
            )
        os.replace(tmp_path, output_path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise ReferenceIOError(f"Cannot write reference record {output_path}: {e}") from e
    return output_path


def load_reference(output_path: PathLike) -> Dict[str, Any]:
    """
    Read a record written by save_reference().

    Returns:
        Dict with reference_frame, reference_float, coverage and params
    """
    try:
        with np.load(output_path, allow_pickle=False) as data:
            return {
                'reference_frame': data['reference_frame'],
                'reference_float': data['reference_float'],
                'coverage': data['coverage'],
                'params': json.loads(str(data['params'])),
            }
    except (OSError, KeyError, ValueError) as e:
        raise ReferenceIOError(f"Cannot read reference record {output_path}: {e}") from e


def record_exists(output_path: Optional[PathLike]) -> bool:
    return output_path is not None and Path(output_path).exists()

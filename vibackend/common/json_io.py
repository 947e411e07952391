"""
JSON I/O for persisted estimation sessions.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

logger = logging.getLogger(__name__)

SESSION_FORMAT = "vibackend-session"
SESSION_FORMAT_VERSION = 1


class SessionFormatError(ValueError):
    """Document is not a session of a supported format version."""


class NumpyJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy arrays."""

    def default(self, obj):
        """Convert numpy arrays to lists."""
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, (np.float32, np.float64)):
            return float(obj)
        if isinstance(obj, (np.int32, np.int64)):
            return int(obj)
        return super().default(obj)


def session_header() -> Dict[str, Any]:
    """Format tag and version written at the top of every session document."""
    return {
        "format": SESSION_FORMAT,
        "format_version": SESSION_FORMAT_VERSION,
    }


def session_metadata(num_states: int, num_landmarks: int, num_residuals: int) -> Dict[str, Any]:
    return {
        "created": datetime.now().isoformat(),
        "num_states": num_states,
        "num_landmarks": num_landmarks,
        "num_residuals": num_residuals,
    }


def check_session_header(data: Any) -> None:
    """
    Validate the format tag and version of a decoded document.

    Raises:
        SessionFormatError: If the document is not a supported session
    """
    if not isinstance(data, dict):
        raise SessionFormatError("Session document must be a JSON object")
    if data.get("format") != SESSION_FORMAT:
        raise SessionFormatError(f"Unknown document format: {data.get('format')!r}")
    version = data.get("format_version")
    if version != SESSION_FORMAT_VERSION:
        raise SessionFormatError(
            f"Unsupported session format version {version!r} "
            f"(supported: {SESSION_FORMAT_VERSION})"
        )


def write_json_atomic(data: Dict[str, Any], filepath: Union[str, Path]) -> Path:
    """
    Write JSON so that the destination is either fully replaced or untouched.

    The document is written to a temporary file in the destination directory
    and moved into place with os.replace. The temporary file is removed on
    failure.

    Args:
        data: JSON-serializable dictionary (numpy arrays allowed)
        filepath: Destination file

    Returns:
        Path of the written file
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=filepath.parent, prefix=f".{filepath.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, cls=NumpyJSONEncoder)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, filepath)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    logger.debug(f"Wrote {filepath}")
    return filepath


def read_json(filepath: Union[str, Path]) -> Dict[str, Any]:
    """Load a JSON document."""
    filepath = Path(filepath)
    with open(filepath, 'r') as f:
        return json.load(f)

"""
Session container: IMU parameters, camera rig, multi-frames and the
estimation graph, with atomic persistence.

The graph is either owned by the session (created by it or loaded from
disk) or borrowed from the caller. A borrowed graph is never cleared or
mutated by the session.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import ValidationError

from vibackend.common.config import CameraRigConfig, ImuParameters
from vibackend.common.data_structures import MultiFrame
from vibackend.common.errors import NumericalError
from vibackend.common.json_io import (
    SessionFormatError, check_session_header, read_json, session_header,
    session_metadata, write_json_atomic
)
from vibackend.estimation.camera_model import CameraRig
from vibackend.estimation.graph import ViGraph

logger = logging.getLogger(__name__)


@dataclass
class OwnedGraph:
    """Graph created or loaded by the session, torn down on close."""
    graph: ViGraph


@dataclass
class BorrowedGraph:
    """Graph supplied by the caller, only referenced by the session."""
    graph: ViGraph


GraphHandle = Union[OwnedGraph, BorrowedGraph]


class Session:
    """
    Container of everything needed to persist and resume an estimation.

    Callers mutating the graph while another thread may save or load must
    hold `session.lock`.
    """

    def __init__(
        self,
        imu_parameters: Optional[ImuParameters] = None,
        camera_rig: Optional[CameraRig] = None,
        graph: Optional[ViGraph] = None,
        frames: Optional[Iterable[MultiFrame]] = None
    ):
        """
        Args:
            imu_parameters: IMU noise and bias parameters
            camera_rig: Camera rig shared by all frames
            graph: External graph to borrow; a new owned graph is created if None
            frames: Multi-frames to keep, indexed by their id
        """
        self.lock = threading.RLock()
        self.imu_parameters = imu_parameters or ImuParameters()
        self.camera_rig = camera_rig or CameraRig()
        self._handle: Optional[GraphHandle] = (
            BorrowedGraph(graph) if graph is not None else OwnedGraph(ViGraph())
        )
        self.frames: Dict[int, MultiFrame] = {}
        for frame in frames or []:
            self.add_frame(frame)

    # ------------------------------------------------------------------
    # Graph ownership
    # ------------------------------------------------------------------

    @property
    def graph(self) -> ViGraph:
        if self._handle is None:
            raise RuntimeError("Session is closed")
        return self._handle.graph

    @property
    def owns_graph(self) -> bool:
        return isinstance(self._handle, OwnedGraph)

    @property
    def is_closed(self) -> bool:
        return self._handle is None

    def close(self) -> None:
        """Tear down an owned graph; a borrowed graph is only released."""
        with self.lock:
            if isinstance(self._handle, OwnedGraph):
                self._handle.graph.clear()
            self._handle = None
            self.frames = {}

    def __enter__(self) -> 'Session':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def add_frame(self, frame: MultiFrame) -> None:
        with self.lock:
            if frame.id in self.frames:
                raise KeyError(f"Frame {frame.id} already exists")
            self.frames[frame.id] = frame

    def frame(self, frame_id: int) -> MultiFrame:
        return self.frames[frame_id]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the versioned session document."""
        graph = self.graph
        document = session_header()
        document.update({
            "metadata": session_metadata(graph.num_states, graph.num_landmarks, graph.num_residuals),
            "imu_parameters": self.imu_parameters.model_dump(mode='json'),
            "camera_rig": self.camera_rig.to_config().model_dump(mode='json'),
            "graph": graph.to_dict(),
            "frames": [self.frames[fid].to_dict() for fid in sorted(self.frames)],
        })
        return document

    def save(self, filepath: Union[str, Path]) -> bool:
        """
        Save the session atomically.

        Args:
            filepath: Destination JSON file

        Returns:
            True on success; on failure an existing file is left unchanged
        """
        with self.lock:
            try:
                document = self.to_dict()
                write_json_atomic(document, filepath)
            except (OSError, TypeError, ValueError, RuntimeError):
                logger.exception(f"Failed to save session to {filepath}")
                return False

            logger.info(
                f"Saved session to {filepath}: {document['metadata']['num_states']} states, "
                f"{document['metadata']['num_landmarks']} landmarks, "
                f"{len(document['frames'])} frames"
            )
            return True

    def load(self, filepath: Union[str, Path]) -> bool:
        """
        Replace the session content with a saved one.

        The file is fully decoded before anything is swapped in; the loaded
        graph becomes owned. A previously borrowed graph is released untouched.

        Args:
            filepath: Session JSON file

        Returns:
            True on success; on failure the session is unchanged
        """
        with self.lock:
            try:
                data = read_json(filepath)
                check_session_header(data)
                imu_parameters = ImuParameters(**data["imu_parameters"])
                camera_rig = CameraRig.from_config(CameraRigConfig(**data["camera_rig"]))
                graph = ViGraph.from_dict(data["graph"])
                frames: Dict[int, MultiFrame] = {}
                for frame_data in data.get("frames", []):
                    frame = MultiFrame.from_dict(frame_data, camera_rig)
                    if frame.id in frames:
                        raise ValueError(f"Duplicate frame id {frame.id}")
                    frames[frame.id] = frame
            except FileNotFoundError:
                logger.error(f"Session file not found: {filepath}")
                return False
            except SessionFormatError as e:
                logger.error(f"Cannot load {filepath}: {e}")
                return False
            except (OSError, AttributeError, IndexError, KeyError, TypeError, ValueError,
                    ValidationError, NumericalError):
                logger.exception(f"Failed to load session from {filepath}")
                return False

            previous = self._handle
            if isinstance(previous, OwnedGraph) and previous.graph is not graph:
                previous.graph.clear()
            self.imu_parameters = imu_parameters
            self.camera_rig = camera_rig
            self._handle = OwnedGraph(graph)
            self.frames = frames

            logger.info(
                f"Loaded session from {filepath}: {graph.num_states} states, "
                f"{graph.num_landmarks} landmarks, {len(frames)} frames"
            )
            return True

"""
Core data structures for the estimation core.
Following the naming convention: T_AB transforms points FROM frame B TO frame A,
r_AB is the position of B's origin in A, C_AB the matching rotation matrix.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import numpy as np

from vibackend.common.errors import ConfigurationError
from vibackend.utils.math_utils import (
    quaternion_inverse, quaternion_multiply, quaternion_normalize,
    quaternion_to_rotation_matrix, rotation_matrix_to_quaternion
)

if TYPE_CHECKING:
    from vibackend.estimation.camera_model import CameraRig, PinholeCamera


# ============================================================================
# Pose Data Structures
# ============================================================================

@dataclass
class Transformation:
    """
    Rigid transformation with translation and unit quaternion.

    The ambient parameter vector is [x, y, z, qx, qy, qz, qw]; the quaternion
    is renormalized on construction.
    """
    r: np.ndarray = field(default_factory=lambda: np.zeros(3))
    q: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))

    def __post_init__(self):
        """Validate dimensions and normalize quaternion."""
        self.r = np.asarray(self.r, dtype=float).flatten()
        self.q = np.asarray(self.q, dtype=float).flatten()

        if len(self.r) != 3:
            raise ValueError(f"Translation must be 3D, got {len(self.r)}")
        if len(self.q) != 4:
            raise ValueError(f"Quaternion must be 4D, got {len(self.q)}")

        self.q = quaternion_normalize(self.q)

    @classmethod
    def identity(cls) -> 'Transformation':
        return cls()

    @classmethod
    def from_parameters(cls, parameters: np.ndarray) -> 'Transformation':
        """Create from a 7-element ambient parameter vector."""
        parameters = np.asarray(parameters, dtype=float).flatten()
        if len(parameters) != 7:
            raise ValueError(f"Pose parameters must be 7D, got {len(parameters)}")
        return cls(r=parameters[:3], q=parameters[3:])

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> 'Transformation':
        """Create from 4x4 transformation matrix."""
        T = np.asarray(T, dtype=float)
        return cls(r=T[:3, 3], q=rotation_matrix_to_quaternion(T[:3, :3]))

    def parameters(self) -> np.ndarray:
        """Ambient parameter vector [x, y, z, qx, qy, qz, qw]."""
        return np.concatenate([self.r, self.q])

    @property
    def C(self) -> np.ndarray:
        """3x3 rotation matrix."""
        return quaternion_to_rotation_matrix(self.q)

    @property
    def T(self) -> np.ndarray:
        """4x4 transformation matrix."""
        T = np.eye(4)
        T[:3, :3] = self.C
        T[:3, 3] = self.r
        return T

    def inverse(self) -> 'Transformation':
        q_inv = quaternion_inverse(self.q)
        return Transformation(r=-quaternion_to_rotation_matrix(q_inv) @ self.r, q=q_inv)

    def __mul__(self, other: 'Transformation') -> 'Transformation':
        """Compose: (T_AB * T_BC) = T_AC."""
        return Transformation(
            r=self.r + self.C @ other.r,
            q=quaternion_multiply(self.q, other.q)
        )

    def transform_homogeneous(self, hp: np.ndarray) -> np.ndarray:
        """Apply to a homogeneous point [x, y, z, w]."""
        hp = np.asarray(hp, dtype=float).flatten()
        return np.concatenate([self.C @ hp[:3] + self.r * hp[3], [hp[3]]])

    def is_close(self, other: 'Transformation', atol: float = 1e-9) -> bool:
        """Compare, treating q and -q as the same rotation."""
        same_rotation = (np.allclose(self.q, other.q, atol=atol)
                         or np.allclose(self.q, -other.q, atol=atol))
        return bool(np.allclose(self.r, other.r, atol=atol) and same_rotation)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "r": self.r.tolist(),
            "q": self.q.tolist()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transformation':
        """Create from dictionary."""
        return cls(r=np.array(data["r"]), q=np.array(data["q"]))


# ============================================================================
# Keypoint Data Structures
# ============================================================================

@dataclass(frozen=True, order=True)
class KeypointIdentifier:
    """Unique key of a keypoint: (frame id, camera index, keypoint index)."""
    frame_id: int
    camera_index: int
    keypoint_index: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "frame_id": self.frame_id,
            "camera_index": self.camera_index,
            "keypoint_index": self.keypoint_index
        }

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> 'KeypointIdentifier':
        return cls(
            frame_id=int(data["frame_id"]),
            camera_index=int(data["camera_index"]),
            keypoint_index=int(data["keypoint_index"])
        )


# Landmark id meaning "no landmark" in keypoint association maps
NO_LANDMARK = 0


@dataclass
class MultiFrame:
    """
    Keypoints observed by every camera of the rig at one time instant.

    Attributes:
        id: Frame (state) identifier
        timestamp: Time in seconds
        rig: Camera rig providing the geometry of each camera
        keypoints: Per camera, Nx2 pixel coordinates
        keypoint_sizes: Per camera, N keypoint diameters in pixels
        T_SC: Per camera, extrinsics estimate at this frame
    """
    id: int
    timestamp: float
    rig: 'CameraRig'
    keypoints: List[np.ndarray] = field(default_factory=list)
    keypoint_sizes: List[np.ndarray] = field(default_factory=list)
    T_SC: List[Transformation] = field(default_factory=list)

    def __post_init__(self):
        """Fill per-camera defaults and validate against the rig."""
        n = self.rig.num_cameras
        if not self.keypoints:
            self.keypoints = [np.empty((0, 2)) for _ in range(n)]
        if not self.keypoint_sizes:
            self.keypoint_sizes = [np.full(len(kps), 1.0) for kps in self.keypoints]
        if not self.T_SC:
            self.T_SC = [self.rig.T_SC(i) for i in range(n)]

        if not (len(self.keypoints) == len(self.keypoint_sizes) == len(self.T_SC) == n):
            raise ConfigurationError(
                f"Frame {self.id} has data for {len(self.keypoints)} cameras, rig has {n}"
            )

        self.keypoints = [np.asarray(k, dtype=float).reshape(-1, 2) for k in self.keypoints]
        self.keypoint_sizes = [np.asarray(s, dtype=float).flatten() for s in self.keypoint_sizes]
        for cam, (kps, sizes) in enumerate(zip(self.keypoints, self.keypoint_sizes)):
            if len(kps) != len(sizes):
                raise ValueError(
                    f"Camera {cam}: {len(kps)} keypoints but {len(sizes)} keypoint sizes"
                )

    @property
    def num_cameras(self) -> int:
        return len(self.keypoints)

    def geometry(self, camera_index: int) -> 'PinholeCamera':
        return self.rig.geometry(camera_index)

    def num_keypoints(self, camera_index: int) -> int:
        return len(self.keypoints[camera_index])

    def keypoint(self, camera_index: int, keypoint_index: int) -> np.ndarray:
        return self.keypoints[camera_index][keypoint_index]

    def keypoint_size(self, camera_index: int, keypoint_index: int) -> float:
        return float(self.keypoint_sizes[camera_index][keypoint_index])

    def set_keypoints(
        self,
        camera_index: int,
        keypoints: np.ndarray,
        keypoint_sizes: Optional[np.ndarray] = None
    ) -> None:
        """Replace the keypoints of one camera."""
        keypoints = np.asarray(keypoints, dtype=float).reshape(-1, 2)
        if keypoint_sizes is None:
            keypoint_sizes = np.full(len(keypoints), 1.0)
        keypoint_sizes = np.asarray(keypoint_sizes, dtype=float).flatten()
        if len(keypoint_sizes) != len(keypoints):
            raise ValueError("Keypoint and keypoint size counts differ")
        self.keypoints[camera_index] = keypoints
        self.keypoint_sizes[camera_index] = keypoint_sizes

    def back_projection(self, camera_index: int, keypoint_index: int) -> Optional[np.ndarray]:
        """Direction [x, y, 1] in the camera frame, or None if undistortion fails."""
        return self.geometry(camera_index).back_project(
            self.keypoint(camera_index, keypoint_index)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "cameras": [
                {
                    "keypoints": kps.tolist(),
                    "keypoint_sizes": sizes.tolist(),
                    "T_SC": T_SC.to_dict()
                }
                for kps, sizes, T_SC in zip(self.keypoints, self.keypoint_sizes, self.T_SC)
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rig: 'CameraRig') -> 'MultiFrame':
        """Create from dictionary, attaching the given rig."""
        cameras = data["cameras"]
        return cls(
            id=int(data["id"]),
            timestamp=float(data["timestamp"]),
            rig=rig,
            keypoints=[np.array(c["keypoints"], dtype=float).reshape(-1, 2) for c in cameras],
            keypoint_sizes=[np.array(c["keypoint_sizes"], dtype=float) for c in cameras],
            T_SC=[Transformation.from_dict(c["T_SC"]) for c in cameras]
        )

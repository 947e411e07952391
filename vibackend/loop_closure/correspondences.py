"""
2D-3D correspondences between the keypoints of a query multi-frame and
mapped landmarks, in the form a non-central absolute pose solver consumes.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping

import numpy as np

from vibackend.common.data_structures import KeypointIdentifier, MultiFrame, NO_LANDMARK
from vibackend.common.errors import ConfigurationError
from vibackend.estimation.camera_model import CameraRig
from vibackend.estimation.reprojection_error import keypoint_sigma

logger = logging.getLogger(__name__)

# |w| below this marks a landmark at infinity
POINT_AT_INFINITY_THRESHOLD = 1.0e-8

FALLBACK_BEARING = np.array([1.0, 0.0, 0.0])


@dataclass(frozen=True)
class Correspondence:
    """
    One keypoint matched to a finite landmark.

    Attributes:
        point: Landmark position in the world frame
        bearing: Unit bearing vector in the camera frame
        camera_index: Camera that observed the keypoint
        keypoint_index: Keypoint index within that camera
        sigma_angle: Angular standard deviation (rad)
    """
    point: np.ndarray
    bearing: np.ndarray
    camera_index: int
    keypoint_index: int
    sigma_angle: float


def sigma_angle(keypoint_size: float, focal_length_u: float) -> float:
    """Angular uncertainty from the keypoint size and horizontal focal length."""
    sigma = keypoint_sigma(keypoint_size)
    return float(np.sqrt(2.0) * sigma * sigma / (focal_length_u * focal_length_u))


class LoopClosureCorrespondences:
    """
    Read-only set of 2D-3D correspondences of one query frame.

    Camera extrinsics are taken from the query frame once, at construction.
    Keypoints without a usable landmark are skipped.
    """

    def __init__(
        self,
        points: Mapping[int, np.ndarray],
        matches: Mapping[KeypointIdentifier, int],
        rig: CameraRig,
        frame: MultiFrame
    ):
        """
        Args:
            points: Landmark id -> homogeneous point [x, y, z, w] in the world frame
            matches: Keypoint -> landmark id (0 means no landmark)
            rig: Camera rig, all cameras must share one distortion type
            frame: Query multi-frame

        Raises:
            ConfigurationError: If the rig mixes distortion types or does not
                match the frame
        """
        if not rig.has_uniform_distortion():
            types = sorted({rig.distortion_type(i).value for i in range(rig.num_cameras)})
            raise ConfigurationError(f"mixed distortion types are not supported: {types}")
        if frame.num_cameras < rig.num_cameras:
            raise ConfigurationError(
                f"Frame {frame.id} has {frame.num_cameras} cameras, rig has {rig.num_cameras}"
            )

        self._num_cameras = rig.num_cameras
        self._cam_offsets: List[np.ndarray] = []
        self._cam_rotations: List[np.ndarray] = []
        self._correspondences: List[Correspondence] = []

        skipped: Dict[str, int] = {"unmatched": 0, "no_landmark": 0, "unknown": 0, "infinity": 0}

        for cam in range(self._num_cameras):
            T_SC = frame.T_SC[cam]
            offset = T_SC.r.copy()
            rotation = T_SC.C
            offset.setflags(write=False)
            rotation.setflags(write=False)
            self._cam_offsets.append(offset)
            self._cam_rotations.append(rotation)

            fu = frame.geometry(cam).focal_length_u

            for k in range(frame.num_keypoints(cam)):
                kid = KeypointIdentifier(frame.id, cam, k)
                if kid not in matches:
                    skipped["unmatched"] += 1
                    continue
                landmark_id = matches[kid]
                if landmark_id == NO_LANDMARK:
                    skipped["no_landmark"] += 1
                    continue
                if landmark_id not in points:
                    logger.debug(f"Keypoint {kid} matched to unknown landmark {landmark_id}")
                    skipped["unknown"] += 1
                    continue

                hp = np.asarray(points[landmark_id], dtype=float).flatten()
                if not abs(hp[3]) >= POINT_AT_INFINITY_THRESHOLD:
                    skipped["infinity"] += 1
                    continue

                bearing = frame.back_projection(cam, k)
                if bearing is None:
                    logger.warning(f"Back-projection of keypoint {kid} failed, using fallback bearing")
                    bearing = FALLBACK_BEARING.copy()
                bearing = bearing / np.linalg.norm(bearing)

                self._add(Correspondence(
                    point=hp[:3] / hp[3],
                    bearing=bearing,
                    camera_index=cam,
                    keypoint_index=k,
                    sigma_angle=sigma_angle(frame.keypoint_size(cam, k), fu)
                ))

        logger.info(
            f"Frame {frame.id}: {len(self._correspondences)} correspondences "
            f"(skipped {skipped})"
        )

    def _add(self, correspondence: Correspondence) -> None:
        if not 0 <= correspondence.camera_index < self._num_cameras:
            raise IndexError(f"Camera index {correspondence.camera_index} out of range")
        correspondence.point.setflags(write=False)
        correspondence.bearing.setflags(write=False)
        self._correspondences.append(correspondence)

    def bearing_vector(self, index: int) -> np.ndarray:
        return self._correspondences[index].bearing

    def point(self, index: int) -> np.ndarray:
        return self._correspondences[index].point

    def cam_offset(self, index: int) -> np.ndarray:
        """Position of the observing camera in the body frame."""
        return self._cam_offsets[self._correspondences[index].camera_index]

    def cam_rotation(self, index: int) -> np.ndarray:
        """Rotation C_SC of the observing camera."""
        return self._cam_rotations[self._correspondences[index].camera_index]

    def sigma_angle(self, index: int) -> float:
        return self._correspondences[index].sigma_angle

    def camera_index(self, index: int) -> int:
        return self._correspondences[index].camera_index

    def keypoint_index(self, index: int) -> int:
        return self._correspondences[index].keypoint_index

    def number_of_correspondences(self) -> int:
        return len(self._correspondences)

    def __len__(self) -> int:
        return len(self._correspondences)

    def __getitem__(self, index: int) -> Correspondence:
        return self._correspondences[index]

    def __iter__(self) -> Iterator[Correspondence]:
        return iter(self._correspondences)

    def as_arrays(self) -> Dict[str, np.ndarray]:
        """
        Stacked arrays for an absolute pose solver.

        Returns:
            Dictionary with 'bearings' (N, 3), 'points' (N, 3), 'cam_offsets' (N, 3),
            'cam_rotations' (N, 3, 3), 'sigma_angles' (N,), 'camera_indices' (N,)
            and 'keypoint_indices' (N,)
        """
        n = len(self._correspondences)
        return {
            "bearings": np.array([c.bearing for c in self]).reshape(n, 3),
            "points": np.array([c.point for c in self]).reshape(n, 3),
            "cam_offsets": np.array([self.cam_offset(i) for i in range(n)]).reshape(n, 3),
            "cam_rotations": np.array([self.cam_rotation(i) for i in range(n)]).reshape(n, 3, 3),
            "sigma_angles": np.array([c.sigma_angle for c in self], dtype=float),
            "camera_indices": np.array([c.camera_index for c in self], dtype=int),
            "keypoint_indices": np.array([c.keypoint_index for c in self], dtype=int),
        }

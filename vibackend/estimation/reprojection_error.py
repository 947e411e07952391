"""
Reprojection error of a homogeneous landmark observed by one camera of the rig.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from vibackend.common.config import CameraConfig
from vibackend.common.data_structures import Transformation
from vibackend.estimation.camera_model import PinholeCamera, ProjectionStatus
from vibackend.estimation.manifolds import HOMOGENEOUS_POINT_MANIFOLD, POSE_MANIFOLD
from vibackend.estimation.residuals import ManifoldResidual, register_residual
from vibackend.utils.math_utils import skew


def keypoint_sigma(keypoint_size: float) -> float:
    """Keypoint standard deviation in pixels from its diameter."""
    return 0.8 * keypoint_size / 12.0


@register_residual
class ReprojectionError(ManifoldResidual):
    """
    Reprojection error over blocks [T_WS (7), hp_W (4)].

    The camera extrinsics T_SC and intrinsics are held fixed. The error is
    measurement - projection. A landmark behind the camera yields a zero
    error and zero Jacobians.
    """

    residual_dim = 2
    manifolds = (POSE_MANIFOLD, HOMOGENEOUS_POINT_MANIFOLD)
    type_name = "reprojection"

    def __init__(
        self,
        camera: PinholeCamera,
        T_SC: Transformation,
        measurement: np.ndarray,
        information: np.ndarray
    ):
        """
        Args:
            camera: Camera geometry
            T_SC: Camera extrinsics
            measurement: Observed keypoint (pixels)
            information: 2x2 information matrix of the keypoint
        """
        self.camera = camera
        self.T_SC = T_SC
        self.measurement = np.asarray(measurement, dtype=float).flatten()
        super().__init__(information)

    @classmethod
    def from_keypoint_size(
        cls,
        camera: PinholeCamera,
        T_SC: Transformation,
        measurement: np.ndarray,
        keypoint_size: float
    ) -> 'ReprojectionError':
        """Isotropic information from the keypoint diameter."""
        sigma = keypoint_sigma(keypoint_size)
        return cls(camera, T_SC, measurement, np.eye(2) / (sigma * sigma))

    def error_and_minimal_jacobians(
        self,
        parameters: Sequence[np.ndarray],
        need_jacobians: Sequence[bool]
    ) -> Tuple[np.ndarray, List[Optional[np.ndarray]]]:
        T_WS = Transformation.from_parameters(parameters[0])
        hp_W = np.asarray(parameters[1], dtype=float)

        T_SW = T_WS.inverse()
        T_CS = self.T_SC.inverse()
        hp_S = T_SW.transform_homogeneous(hp_W)
        hp_C = T_CS.transform_homogeneous(hp_S)

        # a negative w flips the direction the point lies in
        sign = -1.0 if hp_C[3] < 0 else 1.0
        projection = self.camera.project(sign * hp_C[:3])

        jacobians: List[Optional[np.ndarray]] = [None, None]
        if projection.status in (ProjectionStatus.BEHIND_CAMERA, ProjectionStatus.INVALID):
            if need_jacobians[0]:
                jacobians[0] = np.zeros((2, 6))
            if need_jacobians[1]:
                jacobians[1] = np.zeros((2, 3))
            return np.zeros(2), jacobians

        error = self.measurement - projection.pixel
        if not any(need_jacobians):
            return error, jacobians

        # d error / d hp_C (w does not enter the projection)
        J_h = np.zeros((2, 4))
        J_h[:, :3] = -sign * projection.jacobian
        J_h_S = J_h @ T_CS.T

        if need_jacobians[0]:
            w = hp_W[3]
            C_SW = T_SW.C
            J_S_pose = np.zeros((4, 6))
            J_S_pose[:3, :3] = -C_SW * w
            J_S_pose[:3, 3:] = C_SW @ skew(hp_W[:3] - T_WS.r * w)
            jacobians[0] = J_h_S @ J_S_pose

        if need_jacobians[1]:
            jacobians[1] = (J_h_S @ T_SW.T)[:, :3]

        return error, jacobians

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "camera": self.camera.to_config(self.T_SC).model_dump(mode='json'),
            "measurement": self.measurement.tolist(),
            "information": self.information.tolist()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReprojectionError':
        config = CameraConfig(**data["camera"])
        return cls(
            camera=PinholeCamera.from_config(config),
            T_SC=Transformation(r=config.extrinsics.translation, q=config.extrinsics.quaternion),
            measurement=np.array(data["measurement"]),
            information=np.array(data["information"])
        )

"""
Camera geometry for estimation: pinhole projection with lens distortion,
back-projection, and the multi-camera rig.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from vibackend.common.config import (
    CameraConfig, CameraExtrinsics, CameraRigConfig, DistortionType
)
from vibackend.common.data_structures import Transformation
from vibackend.common.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ProjectionStatus(Enum):
    """Outcome of projecting a point into the image."""
    SUCCESSFUL = "successful"
    OUTSIDE_IMAGE = "outside_image"
    BEHIND_CAMERA = "behind_camera"
    INVALID = "invalid"


@dataclass
class ProjectionResult:
    """
    Projection of a 3D point.

    Attributes:
        status: Projection outcome
        pixel: 2D image point (None if behind camera or invalid)
        jacobian: Jacobian of the pixel w.r.t. the point in camera frame (2x3)
    """
    status: ProjectionStatus
    pixel: Optional[np.ndarray] = None
    jacobian: Optional[np.ndarray] = None


# ============================================================================
# Distortion Models
# ============================================================================

class Distortion(ABC):
    """Lens distortion acting on normalized image coordinates."""

    distortion_type: DistortionType

    @property
    @abstractmethod
    def coefficients(self) -> List[float]:
        """Coefficients in configuration order."""

    @abstractmethod
    def distort(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Apply distortion.

        Args:
            x: Undistorted normalized coordinates (2,)

        Returns:
            Distorted coordinates (2,) and their Jacobian w.r.t. x (2x2)
        """

    def undistort(
        self,
        x_d: np.ndarray,
        max_iterations: int = 20,
        tolerance: float = 1e-10
    ) -> Optional[np.ndarray]:
        """
        Invert the distortion with Gauss-Newton iterations.

        Args:
            x_d: Distorted normalized coordinates (2,)
            max_iterations: Iteration limit
            tolerance: Accepted residual norm

        Returns:
            Undistorted coordinates, or None if no consistent solution was found
        """
        x_d = np.asarray(x_d, dtype=float)
        x = x_d.copy()

        with np.errstate(over='ignore', invalid='ignore'):
            for _ in range(max_iterations):
                y, J = self.distort(x)
                error = x_d - y
                if np.linalg.norm(error) < tolerance:
                    break
                try:
                    x = x + np.linalg.solve(J, error)
                except np.linalg.LinAlgError:
                    return None
                if not np.all(np.isfinite(x)):
                    return None

            y, _ = self.distort(x)
            if not np.all(np.isfinite(y)) or np.linalg.norm(x_d - y) > 1e3 * tolerance:
                return None
        return x


def _radial_tangential(
    x: np.ndarray,
    numerator: Sequence[float],
    denominator: Sequence[float],
    p1: float,
    p2: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Rational radial polynomial in r² plus tangential terms, with Jacobian."""
    x0, x1 = x
    r2 = x0 * x0 + x1 * x1

    # numerator/denominator coefficients multiply r2, r2^2, r2^3
    n = 1.0 + sum(k * r2 ** (i + 1) for i, k in enumerate(numerator))
    d = 1.0 + sum(k * r2 ** (i + 1) for i, k in enumerate(denominator))
    dn = sum((i + 1) * k * r2 ** i for i, k in enumerate(numerator))
    dd = sum((i + 1) * k * r2 ** i for i, k in enumerate(denominator))
    radial = n / d
    dradial_dr2 = (dn * d - n * dd) / (d * d)
    dradial_dx0 = dradial_dr2 * 2.0 * x0
    dradial_dx1 = dradial_dr2 * 2.0 * x1

    distorted = np.array([
        x0 * radial + 2.0 * p1 * x0 * x1 + p2 * (r2 + 2.0 * x0 * x0),
        x1 * radial + p1 * (r2 + 2.0 * x1 * x1) + 2.0 * p2 * x0 * x1
    ])

    J = np.array([
        [radial + x0 * dradial_dx0 + 2.0 * p1 * x1 + 6.0 * p2 * x0,
         x0 * dradial_dx1 + 2.0 * p1 * x0 + 2.0 * p2 * x1],
        [x1 * dradial_dx0 + 2.0 * p1 * x0 + 2.0 * p2 * x1,
         radial + x1 * dradial_dx1 + 6.0 * p1 * x1 + 2.0 * p2 * x0]
    ])
    return distorted, J


class RadialTangentialDistortion(Distortion):
    """Radial-tangential (plumb bob) distortion with k1, k2, p1, p2."""

    distortion_type = DistortionType.RADIAL_TANGENTIAL

    def __init__(self, k1: float, k2: float, p1: float, p2: float):
        self.k1, self.k2, self.p1, self.p2 = k1, k2, p1, p2

    @property
    def coefficients(self) -> List[float]:
        return [self.k1, self.k2, self.p1, self.p2]

    def distort(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return _radial_tangential(x, [self.k1, self.k2], [], self.p1, self.p2)


class RadialTangentialDistortion8(Distortion):
    """Rational radial-tangential distortion with k1, k2, p1, p2, k3, k4, k5, k6."""

    distortion_type = DistortionType.RADIAL_TANGENTIAL8

    def __init__(self, k1: float, k2: float, p1: float, p2: float,
                 k3: float, k4: float, k5: float, k6: float):
        self.k1, self.k2, self.p1, self.p2 = k1, k2, p1, p2
        self.k3, self.k4, self.k5, self.k6 = k3, k4, k5, k6

    @property
    def coefficients(self) -> List[float]:
        return [self.k1, self.k2, self.p1, self.p2, self.k3, self.k4, self.k5, self.k6]

    def distort(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return _radial_tangential(
            x, [self.k1, self.k2, self.k3], [self.k4, self.k5, self.k6], self.p1, self.p2
        )


class EquidistantDistortion(Distortion):
    """Equidistant (fisheye) distortion with k1..k4."""

    distortion_type = DistortionType.EQUIDISTANT

    def __init__(self, k1: float, k2: float, k3: float, k4: float):
        self.k1, self.k2, self.k3, self.k4 = k1, k2, k3, k4

    @property
    def coefficients(self) -> List[float]:
        return [self.k1, self.k2, self.k3, self.k4]

    def distort(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=float)
        r = np.linalg.norm(x)
        if r < 1e-8:
            return x.copy(), np.eye(2)

        theta = np.arctan(r)
        theta2 = theta * theta
        theta4 = theta2 * theta2
        theta6 = theta4 * theta2
        theta8 = theta4 * theta4
        theta_d = theta * (1.0 + self.k1 * theta2 + self.k2 * theta4
                           + self.k3 * theta6 + self.k4 * theta8)
        dtheta_d_dtheta = (1.0 + 3.0 * self.k1 * theta2 + 5.0 * self.k2 * theta4
                           + 7.0 * self.k3 * theta6 + 9.0 * self.k4 * theta8)
        dtheta_d_dr = dtheta_d_dtheta / (1.0 + r * r)

        scale = theta_d / r
        dscale_dr = (dtheta_d_dr * r - theta_d) / (r * r)

        J = scale * np.eye(2) + (dscale_dr / r) * np.outer(x, x)
        return scale * x, J


_DISTORTION_CLASSES = {
    DistortionType.RADIAL_TANGENTIAL: RadialTangentialDistortion,
    DistortionType.RADIAL_TANGENTIAL8: RadialTangentialDistortion8,
    DistortionType.EQUIDISTANT: EquidistantDistortion,
}


def create_distortion(
    distortion_type: Union[DistortionType, str],
    coefficients: Sequence[float]
) -> Distortion:
    """
    Create a distortion model from its family and coefficients.

    Raises:
        ConfigurationError: If the family is unknown or the coefficient count is wrong
    """
    try:
        distortion_type = DistortionType(distortion_type)
    except ValueError:
        raise ConfigurationError(f"Unsupported distortion type: {distortion_type!r}")

    cls = _DISTORTION_CLASSES[distortion_type]
    try:
        return cls(*[float(c) for c in coefficients])
    except TypeError:
        raise ConfigurationError(
            f"Wrong number of coefficients for {distortion_type.value}: {len(coefficients)}"
        )


# ============================================================================
# Pinhole Camera
# ============================================================================

class PinholeCamera:
    """
    Pinhole camera with lens distortion.

    Handles projection with Jacobians and back-projection to bearing directions.
    """

    def __init__(
        self,
        width: int,
        height: int,
        focal_length_u: float,
        focal_length_v: float,
        image_center_u: float,
        image_center_v: float,
        distortion: Distortion
    ):
        self.width = width
        self.height = height
        self.focal_length_u = focal_length_u
        self.focal_length_v = focal_length_v
        self.image_center_u = image_center_u
        self.image_center_v = image_center_v
        self.distortion = distortion

    @property
    def distortion_type(self) -> DistortionType:
        return self.distortion.distortion_type

    @classmethod
    def from_config(cls, config: CameraConfig) -> 'PinholeCamera':
        return cls(
            width=config.width,
            height=config.height,
            focal_length_u=config.focal_length[0],
            focal_length_v=config.focal_length[1],
            image_center_u=config.principal_point[0],
            image_center_v=config.principal_point[1],
            distortion=create_distortion(config.distortion_type, config.distortion_coefficients)
        )

    def is_in_image(self, pixel: np.ndarray) -> bool:
        return bool(0.0 <= pixel[0] < self.width and 0.0 <= pixel[1] < self.height)

    def project(self, point_C: np.ndarray) -> ProjectionResult:
        """
        Project a 3D point given in the camera frame.

        Args:
            point_C: 3D point in camera frame

        Returns:
            ProjectionResult with pixel and 2x3 Jacobian unless behind the camera
        """
        point_C = np.asarray(point_C, dtype=float).flatten()
        if not np.all(np.isfinite(point_C)):
            return ProjectionResult(ProjectionStatus.INVALID)

        x, y, z = point_C
        if z <= 1e-12:
            return ProjectionResult(ProjectionStatus.BEHIND_CAMERA)

        x_n = np.array([x / z, y / z])
        x_d, J_d = self.distortion.distort(x_n)

        pixel = np.array([
            self.focal_length_u * x_d[0] + self.image_center_u,
            self.focal_length_v * x_d[1] + self.image_center_v
        ])

        J_n = np.array([
            [1.0 / z, 0.0, -x / (z * z)],
            [0.0, 1.0 / z, -y / (z * z)]
        ])
        J = np.diag([self.focal_length_u, self.focal_length_v]) @ J_d @ J_n

        status = ProjectionStatus.SUCCESSFUL if self.is_in_image(pixel) else ProjectionStatus.OUTSIDE_IMAGE
        return ProjectionResult(status, pixel, J)

    def back_project(self, pixel: np.ndarray) -> Optional[np.ndarray]:
        """
        Back-project a pixel to a direction in the camera frame.

        Args:
            pixel: 2D image point

        Returns:
            Direction [x, y, 1] (not normalized), or None if undistortion fails
        """
        pixel = np.asarray(pixel, dtype=float).flatten()
        x_d = np.array([
            (pixel[0] - self.image_center_u) / self.focal_length_u,
            (pixel[1] - self.image_center_v) / self.focal_length_v
        ])
        x_n = self.distortion.undistort(x_d)
        if x_n is None:
            return None
        return np.array([x_n[0], x_n[1], 1.0])

    def to_config(self, extrinsics: Transformation) -> CameraConfig:
        return CameraConfig(
            width=self.width,
            height=self.height,
            focal_length=[self.focal_length_u, self.focal_length_v],
            principal_point=[self.image_center_u, self.image_center_v],
            distortion_type=self.distortion_type,
            distortion_coefficients=self.distortion.coefficients,
            extrinsics=CameraExtrinsics(
                translation=extrinsics.r.tolist(),
                quaternion=extrinsics.q.tolist()
            )
        )


# ============================================================================
# Camera Rig
# ============================================================================

class CameraRig:
    """
    Cameras rigidly mounted on one body, each with extrinsics T_SC.
    """

    def __init__(
        self,
        cameras: Optional[List[PinholeCamera]] = None,
        extrinsics: Optional[List[Transformation]] = None
    ):
        self._cameras: List[PinholeCamera] = list(cameras or [])
        self._extrinsics: List[Transformation] = list(extrinsics or [])
        if len(self._cameras) != len(self._extrinsics):
            raise ConfigurationError("Each camera needs exactly one extrinsics transformation")

    def add_camera(self, camera: PinholeCamera, T_SC: Transformation) -> int:
        """Append a camera, returning its index."""
        self._cameras.append(camera)
        self._extrinsics.append(T_SC)
        return len(self._cameras) - 1

    @property
    def num_cameras(self) -> int:
        return len(self._cameras)

    def geometry(self, camera_index: int) -> PinholeCamera:
        return self._cameras[camera_index]

    def T_SC(self, camera_index: int) -> Transformation:
        T = self._extrinsics[camera_index]
        return Transformation(r=T.r.copy(), q=T.q.copy())

    def distortion_type(self, camera_index: int) -> DistortionType:
        return self._cameras[camera_index].distortion_type

    def has_uniform_distortion(self) -> bool:
        return len({cam.distortion_type for cam in self._cameras}) <= 1

    @classmethod
    def from_config(cls, config: CameraRigConfig) -> 'CameraRig':
        cameras = [PinholeCamera.from_config(c) for c in config.cameras]
        extrinsics = [
            Transformation(r=c.extrinsics.translation, q=c.extrinsics.quaternion)
            for c in config.cameras
        ]
        return cls(cameras, extrinsics)

    def to_config(self) -> CameraRigConfig:
        return CameraRigConfig(cameras=[
            cam.to_config(T_SC) for cam, T_SC in zip(self._cameras, self._extrinsics)
        ])

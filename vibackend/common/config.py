"""
Configuration models using Pydantic for type safety and validation.
"""

from enum import Enum
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from vibackend.common.errors import ConfigurationError


class DistortionType(str, Enum):
    """Lens distortion families supported by the pinhole camera model."""
    RADIAL_TANGENTIAL = "radialtangential"
    RADIAL_TANGENTIAL8 = "radialtangential8"
    EQUIDISTANT = "equidistant"


# Number of coefficients each distortion family expects
DISTORTION_COEFFICIENT_COUNT = {
    DistortionType.RADIAL_TANGENTIAL: 4,   # k1, k2, p1, p2
    DistortionType.RADIAL_TANGENTIAL8: 8,  # k1, k2, p1, p2, k3, k4, k5, k6
    DistortionType.EQUIDISTANT: 4,         # k1, k2, k3, k4
}


class ImuParameters(BaseModel):
    """IMU noise and operating parameters."""
    a_max: float = Field(176.0, gt=0, description="Accelerometer saturation (m/s²)")
    g_max: float = Field(7.8, gt=0, description="Gyroscope saturation (rad/s)")
    sigma_g_c: float = Field(
        12.0e-4,
        gt=0,
        description="Gyroscope noise density (rad/s/√Hz)"
    )
    sigma_a_c: float = Field(
        8.0e-3,
        gt=0,
        description="Accelerometer noise density (m/s²/√Hz)"
    )
    sigma_bg: float = Field(0.03, gt=0, description="Initial gyroscope bias uncertainty (rad/s)")
    sigma_ba: float = Field(0.1, gt=0, description="Initial accelerometer bias uncertainty (m/s²)")
    sigma_gw_c: float = Field(
        4.0e-6,
        gt=0,
        description="Gyroscope bias random walk (rad/s²/√Hz)"
    )
    sigma_aw_c: float = Field(
        4.0e-5,
        gt=0,
        description="Accelerometer bias random walk (m/s³/√Hz)"
    )
    g: float = Field(9.81007, gt=0, description="Gravity magnitude (m/s²)")
    a0: List[float] = Field(
        default_factory=lambda: [0.0, 0.0, 0.0],
        description="Accelerometer bias prior (m/s²)"
    )
    g0: List[float] = Field(
        default_factory=lambda: [0.0, 0.0, 0.0],
        description="Gyroscope bias prior (rad/s)"
    )
    rate: float = Field(200.0, gt=0, description="Sampling rate (Hz)")

    @field_validator('a0', 'g0')
    @classmethod
    def validate_bias_prior(cls, v: List[float]) -> List[float]:
        if len(v) != 3:
            raise ValueError('Bias prior must have exactly 3 components')
        return v


class CameraExtrinsics(BaseModel):
    """Camera extrinsics T_SC (camera frame expressed in the sensor/body frame)."""
    translation: List[float] = Field(
        default=[0.0, 0.0, 0.0],
        description="Camera centre in the body frame [x, y, z] in meters"
    )
    quaternion: List[float] = Field(
        default=[0.0, 0.0, 0.0, 1.0],
        description="Rotation quaternion [x, y, z, w]"
    )

    @field_validator('translation')
    @classmethod
    def validate_translation(cls, v: List[float]) -> List[float]:
        if len(v) != 3:
            raise ValueError('Translation must have exactly 3 components')
        return v

    @field_validator('quaternion')
    @classmethod
    def validate_quaternion(cls, v: List[float]) -> List[float]:
        if len(v) != 4:
            raise ValueError('Quaternion must have exactly 4 components')
        norm = sum(x**2 for x in v) ** 0.5
        if norm < 1e-6:
            raise ValueError('Quaternion norm is too small')
        return [x / norm for x in v]


class CameraConfig(BaseModel):
    """Intrinsic and extrinsic calibration of one camera of the rig."""
    width: int = Field(752, gt=0, description="Image width (pixels)")
    height: int = Field(480, gt=0, description="Image height (pixels)")
    focal_length: List[float] = Field(..., description="Focal lengths [fu, fv] (pixels)")
    principal_point: List[float] = Field(..., description="Principal point [cu, cv] (pixels)")
    distortion_type: DistortionType = Field(
        default=DistortionType.RADIAL_TANGENTIAL,
        description="Distortion model family"
    )
    distortion_coefficients: List[float] = Field(
        default_factory=lambda: [0.0, 0.0, 0.0, 0.0],
        description="Distortion coefficients, count depends on the family"
    )
    extrinsics: CameraExtrinsics = Field(default_factory=CameraExtrinsics)

    @field_validator('focal_length')
    @classmethod
    def validate_focal_length(cls, v: List[float]) -> List[float]:
        if len(v) != 2:
            raise ValueError('Focal length must have exactly 2 components')
        if any(f <= 0 for f in v):
            raise ValueError('Focal lengths must be positive')
        return v

    @field_validator('principal_point')
    @classmethod
    def validate_principal_point(cls, v: List[float]) -> List[float]:
        if len(v) != 2:
            raise ValueError('Principal point must have exactly 2 components')
        return v

    @model_validator(mode='after')
    def validate_coefficient_count(self):
        """Ensure the coefficient count matches the distortion family."""
        expected = DISTORTION_COEFFICIENT_COUNT[self.distortion_type]
        if len(self.distortion_coefficients) != expected:
            raise ValueError(
                f"{self.distortion_type.value} distortion needs {expected} coefficients, "
                f"got {len(self.distortion_coefficients)}"
            )
        return self


class CameraRigConfig(BaseModel):
    """Multi-camera rig rigidly mounted on one body."""
    cameras: List[CameraConfig] = Field(
        default_factory=list,
        description="Camera configurations, index order is the camera index"
    )


class RelativePoseNoise(BaseModel):
    """Scalar variances for relative pose constraints."""
    translation_variance: float = Field(1.0e-4, gt=0, description="Translation variance (m²)")
    rotation_variance: float = Field(1.0e-4, gt=0, description="Rotation variance (rad²)")


def _load_yaml(path: Union[str, Path]) -> dict:
    path = Path(path)
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    return data or {}


def load_camera_rig_config(path: Union[str, Path]) -> CameraRigConfig:
    """
    Load camera rig configuration from YAML file.

    Raises:
        ConfigurationError: If a camera names an unsupported distortion type
        ValidationError: For any other invalid value
    """
    try:
        return CameraRigConfig(**_load_yaml(path))
    except ValidationError as e:
        if any(err["loc"][-1:] == ("distortion_type",) for err in e.errors()):
            raise ConfigurationError(f"Unsupported distortion type in {path}: {e}") from e
        raise


def load_imu_parameters(path: Union[str, Path]) -> ImuParameters:
    """Load IMU parameters from YAML file."""
    return ImuParameters(**_load_yaml(path))


def save_config(config: BaseModel, path: Union[str, Path]) -> None:
    """Save configuration to YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Convert to dict and handle enums
    data = config.model_dump(mode='json')

    with open(path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)

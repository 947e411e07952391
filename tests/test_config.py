"""
Unit tests for configuration models and validation.
"""

import pytest
from pathlib import Path
import tempfile

from pydantic import ValidationError

from vibackend.common.config import (
    CameraConfig,
    CameraExtrinsics,
    CameraRigConfig,
    DistortionType,
    ImuParameters,
    RelativePoseNoise,
    load_camera_rig_config,
    load_imu_parameters,
    save_config
)
from vibackend.common.errors import ConfigurationError

CONFIG_DIR = Path(__file__).parent.parent / "config"


class TestCameraConfig:
    """Test camera configuration validation."""

    def test_valid_camera(self):
        """Test creating a valid camera configuration."""
        camera = CameraConfig(
            focal_length=[458.654, 457.296],
            principal_point=[367.215, 248.375]
        )
        assert camera.distortion_type == DistortionType.RADIAL_TANGENTIAL
        assert len(camera.distortion_coefficients) == 4
        assert camera.width == 752

    def test_invalid_focal_length(self):
        """Test that negative focal length raises error."""
        with pytest.raises(ValueError):
            CameraConfig(
                focal_length=[-458.654, 457.296],  # Invalid negative
                principal_point=[367.215, 248.375]
            )

    def test_coefficient_count_must_match_family(self):
        """Test that radialtangential8 needs 8 coefficients."""
        with pytest.raises(ValueError):
            CameraConfig(
                focal_length=[458.654, 457.296],
                principal_point=[367.215, 248.375],
                distortion_type="radialtangential8",
                distortion_coefficients=[0.1, 0.2, 0.0, 0.0]
            )

    def test_unknown_distortion_type(self):
        with pytest.raises(ValueError):
            CameraConfig(
                focal_length=[458.654, 457.296],
                principal_point=[367.215, 248.375],
                distortion_type="omni"
            )


class TestCameraExtrinsics:
    """Test camera extrinsics validation."""

    def test_quaternion_normalization(self):
        """Test that quaternions are normalized."""
        extrinsics = CameraExtrinsics(
            translation=[0.1, 0.2, 0.3],
            quaternion=[0.0, 0.0, 0.0, 2.0]  # Not normalized
        )
        assert extrinsics.quaternion == pytest.approx([0.0, 0.0, 0.0, 1.0])

    def test_invalid_translation_size(self):
        """Test that wrong translation size raises error."""
        with pytest.raises(ValueError):
            CameraExtrinsics(translation=[0.1, 0.2])

    def test_invalid_quaternion_size(self):
        """Test that wrong quaternion size raises error."""
        with pytest.raises(ValueError):
            CameraExtrinsics(quaternion=[0.0, 0.0, 1.0])


class TestImuParameters:
    """Test IMU parameters."""

    def test_default_params(self):
        imu = ImuParameters()
        assert imu.rate == 200.0
        assert imu.g == pytest.approx(9.81007)

    def test_rate_validation(self):
        with pytest.raises(ValueError):
            ImuParameters(rate=0.0)

    def test_bias_prior_size(self):
        with pytest.raises(ValueError):
            ImuParameters(a0=[0.0, 0.0])


class TestRelativePoseNoise:
    """Test relative pose noise settings."""

    def test_variances_must_be_positive(self):
        with pytest.raises(ValueError):
            RelativePoseNoise(translation_variance=-1.0)


class TestConfigIO:
    """Test configuration loading and saving."""

    def test_save_and_load_camera_rig(self):
        """Test saving and loading a camera rig configuration."""
        original = CameraRigConfig(cameras=[
            CameraConfig(
                focal_length=[400.0, 401.0],
                principal_point=[320.0, 240.0],
                distortion_type=DistortionType.EQUIDISTANT,
                distortion_coefficients=[0.01, -0.02, 0.003, 0.0]
            )
        ])

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            save_config(original, f.name)
            temp_path = f.name

        try:
            loaded = load_camera_rig_config(temp_path)
            assert loaded == original
            assert loaded.cameras[0].distortion_type == DistortionType.EQUIDISTANT
        finally:
            Path(temp_path).unlink()

    def test_save_and_load_imu_parameters(self, tmp_path):
        original = ImuParameters(sigma_a_c=2.0e-3, rate=400.0)
        path = tmp_path / "imu.yaml"
        save_config(original, path)
        assert load_imu_parameters(path) == original

    def test_unknown_distortion_in_yaml_raises_configuration_error(self, tmp_path):
        path = tmp_path / "rig.yaml"
        path.write_text(
            "cameras:\n"
            "  - focal_length: [400.0, 400.0]\n"
            "    principal_point: [320.0, 240.0]\n"
            "    distortion_type: fisheye\n"
        )
        with pytest.raises(ConfigurationError, match="distortion type"):
            load_camera_rig_config(path)

    def test_other_invalid_yaml_values_raise_validation_error(self, tmp_path):
        path = tmp_path / "rig.yaml"
        path.write_text(
            "cameras:\n"
            "  - focal_length: [-400.0, 400.0]\n"
            "    principal_point: [320.0, 240.0]\n"
        )
        with pytest.raises(ValidationError):
            load_camera_rig_config(path)

    def test_load_sample_configs(self):
        """Test loading the sample configuration files."""
        rig = load_camera_rig_config(CONFIG_DIR / "camera_rig_stereo.yaml")
        assert len(rig.cameras) == 2
        assert all(c.distortion_type == DistortionType.RADIAL_TANGENTIAL for c in rig.cameras)

        imu = load_imu_parameters(CONFIG_DIR / "imu.yaml")
        assert imu.rate == 200.0

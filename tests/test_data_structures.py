"""
Unit tests for data structures.
"""

import pytest
import numpy as np
from numpy.testing import assert_array_almost_equal

from vibackend.common.data_structures import KeypointIdentifier, MultiFrame, Transformation
from vibackend.common.errors import ConfigurationError
from vibackend.estimation.camera_model import (
    CameraRig, PinholeCamera, RadialTangentialDistortion
)


@pytest.fixture
def rig():
    rig = CameraRig()
    for offset in (0.0, 0.11):
        camera = PinholeCamera(640, 480, 400.0, 400.0, 320.0, 240.0,
                               RadialTangentialDistortion(0.0, 0.0, 0.0, 0.0))
        rig.add_camera(camera, Transformation(r=[offset, 0.0, 0.0]))
    return rig


class TestTransformation:
    """Test rigid transformations."""

    def test_identity(self):
        T = Transformation.identity()
        assert_array_almost_equal(T.T, np.eye(4))
        assert_array_almost_equal(T.parameters(), [0, 0, 0, 0, 0, 0, 1])

    def test_quaternion_normalized(self):
        T = Transformation(q=[0.0, 0.0, 2.0, 2.0])
        assert np.isclose(np.linalg.norm(T.q), 1.0)

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            Transformation(r=[1.0, 2.0])
        with pytest.raises(ValueError):
            Transformation.from_parameters(np.zeros(6))

    def test_compose_with_inverse(self):
        T = Transformation(r=[1.0, -2.0, 3.0], q=[0.2, 0.1, -0.3, 0.9])
        assert (T * T.inverse()).is_close(Transformation.identity())
        assert (T.inverse() * T).is_close(Transformation.identity())

    def test_composition_matches_matrices(self):
        T_AB = Transformation(r=[1.0, 0.0, 0.5], q=[0.0, 0.3, 0.0, 0.95])
        T_BC = Transformation(r=[0.0, 2.0, 0.0], q=[0.1, 0.0, 0.2, 0.97])
        assert_array_almost_equal((T_AB * T_BC).T, T_AB.T @ T_BC.T)

    def test_from_matrix(self):
        T = Transformation(r=[1.0, 2.0, 3.0], q=[0.1, 0.2, 0.3, 0.9])
        assert Transformation.from_matrix(T.T).is_close(T)

    def test_transform_homogeneous(self):
        T = Transformation(r=[1.0, 2.0, 3.0], q=[0.0, 0.0, 0.7071068, 0.7071068])
        hp = np.array([2.0, 0.0, 0.0, 2.0])
        # point (1, 0, 0) rotated by 90 deg about z, then translated
        result = T.transform_homogeneous(hp)
        assert_array_almost_equal(result / result[3], [1.0, 3.0, 3.0, 1.0])

    def test_is_close_sign_ambiguity(self):
        T = Transformation(r=[1.0, 0.0, 0.0], q=[0.1, 0.2, 0.3, 0.9])
        assert T.is_close(Transformation(r=T.r, q=-T.q))

    def test_dict_round_trip(self):
        T = Transformation(r=[1.0, 2.0, 3.0], q=[0.1, 0.2, 0.3, 0.9])
        assert Transformation.from_dict(T.to_dict()).is_close(T)


class TestKeypointIdentifier:
    """Test keypoint identifiers."""

    def test_hashable_and_ordered(self):
        a = KeypointIdentifier(1, 0, 5)
        b = KeypointIdentifier(1, 1, 0)
        assert {a: 3}[KeypointIdentifier(1, 0, 5)] == 3
        assert a < b
        assert sorted([b, a]) == [a, b]

    def test_dict_round_trip(self):
        kid = KeypointIdentifier(7, 1, 42)
        assert KeypointIdentifier.from_dict(kid.to_dict()) == kid


class TestMultiFrame:
    """Test multi-camera frames."""

    def test_defaults_from_rig(self, rig):
        frame = MultiFrame(id=3, timestamp=1.5, rig=rig)
        assert frame.num_cameras == 2
        assert frame.num_keypoints(0) == 0
        assert_array_almost_equal(frame.T_SC[1].r, [0.11, 0.0, 0.0])

    def test_camera_count_mismatch(self, rig):
        with pytest.raises(ConfigurationError):
            MultiFrame(id=3, timestamp=0.0, rig=rig, keypoints=[np.zeros((1, 2))])

    def test_keypoint_size_count_mismatch(self, rig):
        with pytest.raises(ValueError):
            MultiFrame(
                id=3, timestamp=0.0, rig=rig,
                keypoints=[np.zeros((2, 2)), np.zeros((0, 2))],
                keypoint_sizes=[np.ones(1), np.ones(0)]
            )

    def test_set_keypoints_and_back_projection(self, rig):
        frame = MultiFrame(id=3, timestamp=0.0, rig=rig)
        frame.set_keypoints(1, [[320.0, 240.0], [720.0, 240.0]], [8.0, 12.0])

        assert frame.num_keypoints(1) == 2
        assert frame.keypoint_size(1, 1) == 12.0
        assert_array_almost_equal(frame.back_projection(1, 0), [0.0, 0.0, 1.0])
        assert_array_almost_equal(frame.back_projection(1, 1), [1.0, 0.0, 1.0])

    def test_dict_round_trip(self, rig):
        frame = MultiFrame(id=9, timestamp=2.25, rig=rig)
        frame.set_keypoints(0, [[100.0, 120.0]], [6.0])
        restored = MultiFrame.from_dict(frame.to_dict(), rig)

        assert restored.id == 9
        assert restored.timestamp == 2.25
        assert_array_almost_equal(restored.keypoints[0], frame.keypoints[0])
        assert_array_almost_equal(restored.keypoint_sizes[0], [6.0])
        assert restored.T_SC[1].is_close(frame.T_SC[1])

"""
Unit tests for the relative pose error and the shared residual machinery.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from numpy.testing import assert_array_almost_equal

from vibackend.common.data_structures import Transformation
from vibackend.common.errors import NumericalError
from vibackend.estimation.relative_pose_error import RelativePoseError
from vibackend.estimation.residuals import residual_from_dict
from vibackend.utils.math_utils import quaternion_normalize

from jacobian_checks import check_jacobians


def random_spd(n, seed=0):
    rng = np.random.default_rng(seed)
    A = rng.standard_normal((n, n))
    return A @ A.T + n * np.eye(n)


def random_pose(rng):
    return Transformation(r=rng.standard_normal(3), q=quaternion_normalize(rng.standard_normal(4)))


@pytest.fixture
def poses():
    rng = np.random.default_rng(3)
    return random_pose(rng), random_pose(rng)


class TestInformation:
    """Test information, covariance and square-root information."""

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_spd_information(self, seed):
        """Test covariance is the inverse and U^T U reproduces the information."""
        M = random_spd(6, seed)
        error = RelativePoseError(M, Transformation.identity())

        assert_array_almost_equal(error.covariance @ M, np.eye(6))
        U = error.sqrt_information
        assert_array_almost_equal(U.T @ U, M)
        assert_array_almost_equal(U, np.triu(U))

    def test_from_variances(self):
        error = RelativePoseError.from_variances(0.01, 0.04, Transformation.identity())
        assert_array_almost_equal(np.diag(error.information), [100, 100, 100, 25, 25, 25])
        assert_array_almost_equal(np.diag(error.sqrt_information), [10, 10, 10, 5, 5, 5])

    def test_non_positive_variance_raises(self):
        with pytest.raises(NumericalError):
            RelativePoseError.from_variances(0.0, 0.01, Transformation.identity())

    def test_not_positive_definite_raises(self):
        M = np.eye(6)
        M[2, 2] = -1.0
        with pytest.raises(NumericalError):
            RelativePoseError(M, Transformation.identity())

    def test_asymmetric_raises(self):
        M = np.eye(6)
        M[0, 1] = 0.5
        with pytest.raises(NumericalError):
            RelativePoseError(M, Transformation.identity())

    def test_wrong_shape_raises(self):
        with pytest.raises(ValueError):
            RelativePoseError(np.eye(3), Transformation.identity())

    def test_failed_update_keeps_previous_information(self):
        """Test that a rejected matrix leaves the stored information untouched."""
        M = random_spd(6)
        error = RelativePoseError(M, Transformation.identity())
        with pytest.raises(NumericalError):
            error.set_information(-np.eye(6))
        assert_array_almost_equal(error.information, M)
        assert_array_almost_equal(error.sqrt_information.T @ error.sqrt_information, M)

    def test_information_is_read_only(self):
        error = RelativePoseError(np.eye(6), Transformation.identity())
        with pytest.raises(ValueError):
            error.information[0, 0] = 2.0


class TestRelativePoseResidual:
    """Test residual values."""

    def test_zero_when_measurement_matches(self, poses):
        """Test the residual vanishes for the exact relative transform."""
        T_WA, T_WB = poses
        T_AB = T_WA.inverse() * T_WB
        error = RelativePoseError(random_spd(6), T_AB)

        evaluation = error.compute([T_WA.parameters(), T_WB.parameters()])
        assert_array_almost_equal(evaluation.residual, np.zeros(6), decimal=12)
        assert evaluation.squared_error < 1e-20

    def test_nonzero_when_translation_differs(self, poses):
        T_WA, T_WB = poses
        T_AB = T_WA.inverse() * T_WB
        T_AB.r = T_AB.r + np.array([0.1, 0.0, 0.0])
        error = RelativePoseError(np.eye(6), T_AB)

        residual = error.compute([T_WA.parameters(), T_WB.parameters()]).residual
        assert_array_almost_equal(residual[:3], [0.1, 0.0, 0.0])
        assert_array_almost_equal(residual[3:], np.zeros(3))

    def test_nonzero_when_rotation_differs(self, poses):
        T_WA, T_WB = poses
        T_AB = T_WA.inverse() * T_WB
        dq = np.array([0.0, 0.0, np.sin(0.025), np.cos(0.025)])
        q_measured = (Transformation(q=dq) * Transformation(q=T_AB.q)).q
        error = RelativePoseError(np.eye(6), Transformation(r=T_AB.r, q=q_measured))

        residual = error.compute([T_WA.parameters(), T_WB.parameters()]).residual
        assert_array_almost_equal(residual[:3], np.zeros(3))
        assert_array_almost_equal(residual[3:], [0.0, 0.0, 2.0 * np.sin(0.025)])

    def test_unnormalized_quaternions_are_renormalized(self, poses):
        """Test that scaling a quaternion does not change the residual."""
        T_WA, T_WB = poses
        error = RelativePoseError(random_spd(6), Transformation(r=[0.1, 0.2, 0.3]))
        x_a = T_WA.parameters()
        x_b = T_WB.parameters()
        scaled = x_b.copy()
        scaled[3:] *= 3.0

        r1 = error.compute([x_a, x_b]).residual
        r2 = error.compute([x_a, scaled]).residual
        assert_array_almost_equal(r1, r2)

    def test_evaluate_writes_in_place(self, poses):
        """Test the optimizer callback fills caller-owned buffers."""
        T_WA, T_WB = poses
        error = RelativePoseError(random_spd(6), Transformation(r=[0.5, 0.0, 0.0]))
        residuals = np.full(6, np.nan)
        jacobians = [np.full((6, 7), np.nan), None]

        assert error.evaluate([T_WA.parameters(), T_WB.parameters()], residuals, jacobians)
        assert np.all(np.isfinite(residuals))
        assert np.all(np.isfinite(jacobians[0]))
        assert jacobians[1] is None

    def test_evaluate_without_jacobians(self, poses):
        T_WA, T_WB = poses
        error = RelativePoseError(np.eye(6), Transformation.identity())
        residuals = np.zeros(6)
        assert error.evaluate([T_WA.parameters(), T_WB.parameters()], residuals)

    def test_concurrent_evaluation_matches_serial(self):
        """Test one residual evaluated from several threads gives serial results."""
        rng = np.random.default_rng(11)
        error = RelativePoseError(random_spd(6, seed=5), random_pose(rng))
        parameter_sets = [
            [random_pose(rng).parameters(), random_pose(rng).parameters()]
            for _ in range(32)
        ]

        def run(parameters):
            residuals = np.zeros(6)
            jacobians = [np.zeros((6, 7)), np.zeros((6, 7))]
            minimal = [np.zeros((6, 6)), np.zeros((6, 6))]
            assert error.evaluate_with_minimal_jacobians(parameters, residuals, jacobians, minimal)
            return residuals, jacobians, minimal

        serial = [run(p) for p in parameter_sets]
        with ThreadPoolExecutor(max_workers=8) as executor:
            concurrent = list(executor.map(run, parameter_sets * 4))

        for i, (residuals, jacobians, minimal) in enumerate(concurrent):
            expected = serial[i % len(parameter_sets)]
            assert_array_almost_equal(residuals, expected[0], decimal=12)
            for j in range(2):
                assert_array_almost_equal(jacobians[j], expected[1][j], decimal=12)
                assert_array_almost_equal(minimal[j], expected[2][j], decimal=12)

    def test_wrong_block_count_raises(self, poses):
        T_WA, _ = poses
        error = RelativePoseError(np.eye(6), Transformation.identity())
        with pytest.raises(ValueError):
            error.evaluate([T_WA.parameters()], np.zeros(6))


class TestRelativePoseJacobians:
    """Finite-difference checks of the Jacobians."""

    def test_jacobians_at_measurement(self, poses):
        T_WA, T_WB = poses
        error = RelativePoseError(random_spd(6, 5), T_WA.inverse() * T_WB)
        check_jacobians(error, [T_WA.parameters(), T_WB.parameters()])

    @pytest.mark.parametrize("seed", [10, 11, 12])
    def test_jacobians_away_from_measurement(self, seed):
        rng = np.random.default_rng(seed)
        T_WA, T_WB, T_AB = random_pose(rng), random_pose(rng), random_pose(rng)
        error = RelativePoseError(random_spd(6, seed), T_AB)
        check_jacobians(error, [T_WA.parameters(), T_WB.parameters()])

    def test_minimal_jacobians_first_order(self, poses):
        """Test residual(x + delta) - residual(x) ~ J delta for small delta."""
        T_WA, T_WB = poses
        error = RelativePoseError(random_spd(6, 9), Transformation(r=[0.2, -0.1, 0.3]))
        x = [T_WA.parameters(), T_WB.parameters()]
        evaluation = error.compute(x)

        delta = 1e-6 * np.array([1.0, -2.0, 0.5, 0.3, -1.0, 2.0])
        for i, manifold in enumerate(error.manifolds):
            perturbed = list(x)
            perturbed[i] = manifold.plus(x[i], delta)
            change = error.compute(perturbed, with_jacobians=False).residual - evaluation.residual
            np.testing.assert_allclose(change, evaluation.minimal_jacobians[i] @ delta, atol=1e-9)


class TestRelativePoseSerialization:
    """Test dictionary round trip through the residual registry."""

    def test_round_trip(self, poses):
        T_WA, T_WB = poses
        error = RelativePoseError(random_spd(6), Transformation(r=[1.0, 2.0, 3.0], q=[0, 0, 0.6, 0.8]))
        restored = residual_from_dict(error.to_dict())

        assert isinstance(restored, RelativePoseError)
        assert restored.T_AB.is_close(error.T_AB)
        assert_array_almost_equal(restored.information, error.information)

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            residual_from_dict({"type": "does_not_exist"})

"""
Finite-difference helpers for residual Jacobian tests.
"""

import numpy as np


def numerical_minimal_jacobians(residual, parameters, h=1e-6):
    """Central differences of the whitened residual w.r.t. each tangent perturbation."""
    parameters = [np.asarray(p, dtype=float) for p in parameters]
    jacobians = []
    for i, manifold in enumerate(residual.manifolds):
        J = np.zeros((residual.residual_dim, manifold.minimal_size))
        for j in range(manifold.minimal_size):
            delta = np.zeros(manifold.minimal_size)
            delta[j] = h
            plus = list(parameters)
            minus = list(parameters)
            plus[i] = manifold.plus(parameters[i], delta)
            minus[i] = manifold.plus(parameters[i], -delta)
            r_plus = residual.compute(plus, with_jacobians=False).residual
            r_minus = residual.compute(minus, with_jacobians=False).residual
            J[:, j] = (r_plus - r_minus) / (2 * h)
        jacobians.append(J)
    return jacobians


def check_jacobians(residual, parameters, rtol=1e-5, atol=1e-6):
    """Assert analytic minimal and ambient Jacobians agree with finite differences."""
    evaluation = residual.compute(parameters)
    numerical = numerical_minimal_jacobians(residual, parameters)
    for i, manifold in enumerate(residual.manifolds):
        np.testing.assert_allclose(evaluation.minimal_jacobians[i], numerical[i], rtol=rtol, atol=atol)
        # ambient Jacobian composed with plus_jacobian recovers the minimal one
        np.testing.assert_allclose(
            evaluation.jacobians[i] @ manifold.plus_jacobian(parameters[i]),
            evaluation.minimal_jacobians[i],
            rtol=1e-9, atol=1e-9
        )

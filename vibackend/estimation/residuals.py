"""
Tangent-space residual abstraction shared by all error terms.

A residual type supplies its unweighted error and the minimal (tangent-space)
Jacobian of every parameter block. This base class whitens both with the
square-root information and lifts each minimal Jacobian to the ambient
parameterization using the block's manifold.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

import numpy as np
from scipy.linalg import cholesky

from vibackend.common.errors import NumericalError
from vibackend.estimation.manifolds import Manifold

logger = logging.getLogger(__name__)


@dataclass
class ResidualEvaluation:
    """
    Result of evaluating a residual.

    Attributes:
        residual: Whitened error vector
        jacobians: Per block, whitened Jacobian w.r.t. ambient parameters
        minimal_jacobians: Per block, whitened Jacobian w.r.t. tangent perturbation
        squared_error: Squared norm of the whitened error
    """
    residual: np.ndarray
    jacobians: List[Optional[np.ndarray]]
    minimal_jacobians: List[Optional[np.ndarray]]
    squared_error: float


def information_from_variances(translation_variance: float, rotation_variance: float) -> np.ndarray:
    """Block-diagonal 6x6 information with inverse variances on each 3x3 block."""
    if translation_variance <= 0 or rotation_variance <= 0:
        raise NumericalError("Variances must be positive")
    information = np.zeros((6, 6))
    information[:3, :3] = np.eye(3) / translation_variance
    information[3:, 3:] = np.eye(3) / rotation_variance
    return information


class ManifoldResidual(ABC):
    """
    Error term over manifold parameter blocks.

    Subclasses define `residual_dim`, `manifolds` (one per parameter block),
    `type_name` and implement `error_and_minimal_jacobians`.
    """

    residual_dim: int
    manifolds: Tuple[Manifold, ...]
    type_name: str

    def __init__(self, information: np.ndarray):
        self._information: Optional[np.ndarray] = None
        self._covariance: Optional[np.ndarray] = None
        self._sqrt_information: Optional[np.ndarray] = None
        self.set_information(information)

    # ------------------------------------------------------------------
    # Information handling
    # ------------------------------------------------------------------

    @property
    def information(self) -> np.ndarray:
        return self._information

    @property
    def covariance(self) -> np.ndarray:
        return self._covariance

    @property
    def sqrt_information(self) -> np.ndarray:
        """Upper-triangular U with U^T U = information."""
        return self._sqrt_information

    def set_information(self, information: np.ndarray) -> None:
        """
        Set the information matrix and recompute covariance and square root.

        Args:
            information: Symmetric positive definite matrix (residual_dim x residual_dim)

        Raises:
            NumericalError: If the matrix is not symmetric positive definite
        """
        information = np.array(information, dtype=float)
        n = self.residual_dim
        if information.shape != (n, n):
            raise ValueError(f"Information must be {n}x{n}, got {information.shape}")
        if not np.all(np.isfinite(information)):
            raise NumericalError("Information matrix contains non-finite values")
        if not np.allclose(information, information.T, rtol=1e-10, atol=1e-12):
            raise NumericalError("Information matrix is not symmetric")

        try:
            sqrt_information = cholesky(information, lower=False)
        except np.linalg.LinAlgError as e:
            raise NumericalError(f"Information matrix is not positive definite: {e}") from e
        covariance = np.linalg.inv(information)

        for matrix in (information, covariance, sqrt_information):
            matrix.setflags(write=False)
        self._information = information
        self._covariance = covariance
        self._sqrt_information = sqrt_information

    # ------------------------------------------------------------------
    # Block layout
    # ------------------------------------------------------------------

    @property
    def num_parameter_blocks(self) -> int:
        return len(self.manifolds)

    @property
    def parameter_block_sizes(self) -> List[int]:
        return [m.ambient_size for m in self.manifolds]

    @property
    def minimal_block_sizes(self) -> List[int]:
        return [m.minimal_size for m in self.manifolds]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @abstractmethod
    def error_and_minimal_jacobians(
        self,
        parameters: Sequence[np.ndarray],
        need_jacobians: Sequence[bool]
    ) -> Tuple[np.ndarray, List[Optional[np.ndarray]]]:
        """
        Compute the unweighted error and minimal Jacobians.

        Args:
            parameters: Ambient parameters of each block
            need_jacobians: Per block, whether its Jacobian is requested

        Returns:
            Error vector and per-block minimal Jacobians (None where not requested)
        """

    def evaluate(
        self,
        parameters: Sequence[np.ndarray],
        residuals: np.ndarray,
        jacobians: Optional[List[Optional[np.ndarray]]] = None
    ) -> bool:
        """
        Optimizer callback: write whitened residuals and ambient Jacobians.

        Args:
            parameters: Ambient parameters of each block
            residuals: Output array of size residual_dim
            jacobians: Optional per-block output arrays (residual_dim x ambient size)

        Returns:
            True on success
        """
        return self.evaluate_with_minimal_jacobians(parameters, residuals, jacobians, None)

    def evaluate_with_minimal_jacobians(
        self,
        parameters: Sequence[np.ndarray],
        residuals: np.ndarray,
        jacobians: Optional[List[Optional[np.ndarray]]] = None,
        minimal_jacobians: Optional[List[Optional[np.ndarray]]] = None
    ) -> bool:
        """
        Optimizer callback that can also return tangent-space Jacobians.

        Args:
            parameters: Ambient parameters of each block
            residuals: Output array of size residual_dim
            jacobians: Optional per-block output arrays (residual_dim x ambient size)
            minimal_jacobians: Optional per-block output arrays (residual_dim x minimal size)

        Returns:
            True on success
        """
        if len(parameters) != self.num_parameter_blocks:
            raise ValueError(
                f"{type(self).__name__} expects {self.num_parameter_blocks} parameter blocks, "
                f"got {len(parameters)}"
            )
        parameters = [np.asarray(p, dtype=float).flatten() for p in parameters]

        def requested(outputs, i):
            return outputs is not None and outputs[i] is not None

        need = [requested(jacobians, i) or requested(minimal_jacobians, i)
                for i in range(self.num_parameter_blocks)]

        error, minimal = self.error_and_minimal_jacobians(parameters, need)
        residuals[:] = self._sqrt_information @ error

        for i, manifold in enumerate(self.manifolds):
            if not need[i]:
                continue
            J_minimal = self._sqrt_information @ minimal[i]
            if requested(jacobians, i):
                jacobians[i][:] = J_minimal @ manifold.lift_jacobian(parameters[i])
            if requested(minimal_jacobians, i):
                minimal_jacobians[i][:] = J_minimal

        return True

    def compute(
        self,
        parameters: Sequence[np.ndarray],
        with_jacobians: bool = True
    ) -> ResidualEvaluation:
        """Evaluate into freshly allocated arrays."""
        residual = np.zeros(self.residual_dim)
        jacobians = None
        minimal_jacobians = None
        if with_jacobians:
            jacobians = [np.zeros((self.residual_dim, m.ambient_size)) for m in self.manifolds]
            minimal_jacobians = [np.zeros((self.residual_dim, m.minimal_size)) for m in self.manifolds]

        self.evaluate_with_minimal_jacobians(parameters, residual, jacobians, minimal_jacobians)

        return ResidualEvaluation(
            residual=residual,
            jacobians=jacobians or [None] * self.num_parameter_blocks,
            minimal_jacobians=minimal_jacobians or [None] * self.num_parameter_blocks,
            squared_error=float(residual @ residual)
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization, including 'type'."""

    @classmethod
    @abstractmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ManifoldResidual':
        """Create from dictionary."""


RESIDUAL_TYPES: Dict[str, Type[ManifoldResidual]] = {}


def register_residual(cls: Type[ManifoldResidual]) -> Type[ManifoldResidual]:
    """Class decorator adding a residual type to the persistence registry."""
    RESIDUAL_TYPES[cls.type_name] = cls
    return cls


def residual_from_dict(data: Dict[str, Any]) -> ManifoldResidual:
    """Rebuild a residual from its dictionary form."""
    type_name = data.get("type")
    if type_name not in RESIDUAL_TYPES:
        raise ValueError(f"Unknown residual type: {type_name!r}")
    return RESIDUAL_TYPES[type_name].from_dict(data)

"""
Relative pose error between two poses T_WA and T_WB.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from vibackend.common.data_structures import Transformation
from vibackend.estimation.manifolds import POSE_MANIFOLD
from vibackend.estimation.residuals import (
    ManifoldResidual, information_from_variances, register_residual
)
from vibackend.utils.math_utils import (
    quaternion_inverse, quaternion_multiply, quaternion_oplus, quaternion_plus, skew
)


@register_residual
class RelativePoseError(ManifoldResidual):
    """
    Constraint on the relative transformation T_AB = T_WA^-1 * T_WB.

    The 6D error stacks the translation difference and twice the vector part
    of q_AB(measured) * q_AB(estimated)^-1.
    """

    residual_dim = 6
    manifolds = (POSE_MANIFOLD, POSE_MANIFOLD)
    type_name = "relative_pose"

    def __init__(self, information: np.ndarray, T_AB: Transformation):
        """
        Args:
            information: 6x6 information matrix of [translation, rotation] error
            T_AB: Measured relative transformation
        """
        self.T_AB = T_AB
        super().__init__(information)

    @classmethod
    def from_variances(
        cls,
        translation_variance: float,
        rotation_variance: float,
        T_AB: Transformation
    ) -> 'RelativePoseError':
        """Create with isotropic translation and rotation variances."""
        return cls(information_from_variances(translation_variance, rotation_variance), T_AB)

    def error_and_minimal_jacobians(
        self,
        parameters: Sequence[np.ndarray],
        need_jacobians: Sequence[bool]
    ) -> Tuple[np.ndarray, List[Optional[np.ndarray]]]:
        T_WA = Transformation.from_parameters(parameters[0])
        T_WB = Transformation.from_parameters(parameters[1])
        T_AW = T_WA.inverse()
        T_AB_hat = T_AW * T_WB

        error = np.zeros(6)
        error[:3] = self.T_AB.r - T_AB_hat.r
        error[3:] = 2.0 * quaternion_multiply(self.T_AB.q, quaternion_inverse(T_AB_hat.q))[:3]

        jacobians: List[Optional[np.ndarray]] = [None, None]
        if not any(need_jacobians):
            return error, jacobians

        C_AW = T_AW.C
        q_BW = quaternion_inverse(T_WB.q)
        rotation_block = (quaternion_plus(quaternion_multiply(self.T_AB.q, q_BW))
                          @ quaternion_oplus(T_WA.q))[:3, :3]

        if need_jacobians[0]:
            J0 = np.eye(6)
            J0[:3, :3] = C_AW
            J0[:3, 3:] = -C_AW @ skew(T_WB.r - T_WA.r)
            J0[3:, 3:] = rotation_block
            jacobians[0] = J0

        if need_jacobians[1]:
            J1 = np.eye(6)
            J1[:3, :3] = -C_AW
            J1[3:, 3:] = -rotation_block
            jacobians[1] = J1

        return error, jacobians

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "T_AB": self.T_AB.to_dict(),
            "information": self.information.tolist()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelativePoseError':
        return cls(np.array(data["information"]), Transformation.from_dict(data["T_AB"]))

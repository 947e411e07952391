"""
Absolute pose prior on a single pose T_WS.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from vibackend.common.data_structures import Transformation
from vibackend.estimation.manifolds import POSE_MANIFOLD
from vibackend.estimation.residuals import (
    ManifoldResidual, information_from_variances, register_residual
)
from vibackend.utils.math_utils import quaternion_inverse, quaternion_multiply, quaternion_plus


@register_residual
class PoseError(ManifoldResidual):
    """Prior pulling a pose towards a measured T_WS."""

    residual_dim = 6
    manifolds = (POSE_MANIFOLD,)
    type_name = "pose"

    def __init__(self, information: np.ndarray, measurement: Transformation):
        self.measurement = measurement
        super().__init__(information)

    @classmethod
    def from_variances(
        cls,
        translation_variance: float,
        rotation_variance: float,
        measurement: Transformation
    ) -> 'PoseError':
        return cls(information_from_variances(translation_variance, rotation_variance), measurement)

    def error_and_minimal_jacobians(
        self,
        parameters: Sequence[np.ndarray],
        need_jacobians: Sequence[bool]
    ) -> Tuple[np.ndarray, List[Optional[np.ndarray]]]:
        T_WS = Transformation.from_parameters(parameters[0])
        dq = quaternion_multiply(self.measurement.q, quaternion_inverse(T_WS.q))

        error = np.zeros(6)
        error[:3] = self.measurement.r - T_WS.r
        error[3:] = 2.0 * dq[:3]

        if not need_jacobians[0]:
            return error, [None]

        J = -np.eye(6)
        J[3:, 3:] = -quaternion_plus(dq)[:3, :3]
        return error, [J]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "measurement": self.measurement.to_dict(),
            "information": self.information.tolist()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoseError':
        return cls(np.array(data["information"]), Transformation.from_dict(data["measurement"]))

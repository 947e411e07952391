"""
Manifold residuals, camera model, estimation graph and session container.
"""

from .residuals import ManifoldResidual, ResidualEvaluation, residual_from_dict
from .relative_pose_error import RelativePoseError
from .pose_error import PoseError
from .reprojection_error import ReprojectionError
from .graph import ViGraph
from .session import Session

__all__ = [
    'ManifoldResidual',
    'ResidualEvaluation',
    'residual_from_dict',
    'RelativePoseError',
    'PoseError',
    'ReprojectionError',
    'ViGraph',
    'Session'
]

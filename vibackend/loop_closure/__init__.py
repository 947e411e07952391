"""
2D-3D correspondences for loop-closure absolute pose estimation.
"""

from .correspondences import Correspondence, LoopClosureCorrespondences

__all__ = [
    'Correspondence',
    'LoopClosureCorrespondences'
]

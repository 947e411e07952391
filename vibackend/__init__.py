"""
Estimation core of a visual-inertial SLAM back end.
"""

__version__ = "0.1.0"

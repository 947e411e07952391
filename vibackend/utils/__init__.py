"""
Utility modules for the estimation core.
"""

from .math_utils import *

"""
Shared data structures, configuration and I/O.
"""

from .errors import ConfigurationError, NumericalError

__all__ = [
    'ConfigurationError',
    'NumericalError'
]

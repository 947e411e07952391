"""
Exception types raised by the estimation core.
"""


class ConfigurationError(ValueError):
    """Raised for unusable sensor configurations (e.g. a rig mixing distortion models)."""
    pass


class NumericalError(ArithmeticError):
    """Raised when a matrix required for whitening is not symmetric positive definite."""
    pass

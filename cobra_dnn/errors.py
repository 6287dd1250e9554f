"""Exception types raised by the engine."""


class ConfigurationError(ValueError):
    """Invalid layer, network or optimizer construction"""


class ShapeMismatch(ValueError):
    """A tensor doesn't have the shape a primitive expects"""


class OptimizerDefect(RuntimeError):
    """The optimizer reached a state it doesn't know how to handle"""


class TensorLifetimeError(RuntimeError):
    """Double free, free of a view, or use of a released buffer"""

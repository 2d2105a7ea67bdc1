# clear_convnet/errors.py

"""
Exception types raised by the engine.

All of them signal a broken contract or corrupt data, never a transient
condition, so nothing in the package retries after catching one.
"""


class NetConstructionError(ValueError):
    """Raised when a layer cannot be added to a Net (bad topology or hyperparameters)."""


class NetUsageError(RuntimeError):
    """Raised when a Net, layer, volume or trainer is called out of contract."""


class ModelFormatError(ValueError):
    """Raised when serialized model data is malformed, truncated or oversized."""

"""
Exceptions raised by the CIVD classifier.
"""


class ConfigurationError(ValueError):
    """Training data or options the classifier cannot handle."""


class SchemaMismatch(ValueError):
    """An instance whose header differs from the one fixed at build time."""


class NotBuiltError(RuntimeError):
    """update / predict called before build."""

"""
Domain errors raised by the production line.
"""


class ProdlineError(Exception):
    """Base class for all production line errors."""


class InvalidItemError(ProdlineError, ValueError):
    """Raised when a producer submits an item that cannot be queued."""


class PipelineConfigError(ProdlineError):
    """Raised when the stage pipeline is misconfigured."""

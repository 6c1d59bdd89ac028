"""
Error taxonomy for the correlation engine.

Insufficient-data conditions are not errors; jobs report them as
skipped outcomes with a reason string.
"""


class CorrelationError(Exception):
    """Base class for correlation engine failures."""
    pass


class InvalidInputError(CorrelationError, ValueError):
    """Raised for a missing or malformed request before the store is touched."""
    pass


class InstrumentNotFoundError(CorrelationError):
    """Raised when a ticker is absent from the instrument directory."""
    pass


class UpstreamError(CorrelationError):
    """Raised when the store or price source cannot be read or written."""
    pass

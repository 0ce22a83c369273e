"""
Exception hierarchy for NetLens

Whole-operation failures are raised as these exceptions and turned into
terminal ``Error`` events by the session; per-iteration failures are caught
inside the probe loops and recorded as events instead.
"""

from typing import Optional


class NetLensError(Exception):
    """Base exception for all NetLens errors"""
    pass


class InputValidationError(NetLensError, ValueError):
    """Malformed target, ports, timeout or URL. Raised before any network activity."""
    pass


class FormatError(InputValidationError):
    """A port specification token could not be parsed"""

    def __init__(self, token: str, reason: str = "Invalid port"):
        self.token = token
        super().__init__(f"{reason}: '{token}'")


class EmptyInputError(InputValidationError):
    """Empty or whitespace-only input where a value is required"""
    pass


class ReverseNameError(InputValidationError):
    """Could not build the reverse-lookup (ARPA) name for an address"""
    pass


class ResolutionError(NetLensError):
    """A host name cannot be resolved"""

    def __init__(self, host: str, detail: Optional[str] = None):
        self.host = host
        self.detail = detail
        message = f"Could not resolve host '{host}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ProbeTimeoutError(NetLensError):
    """A single operation exceeded its time bound"""
    pass


class TransportError(NetLensError):
    """Refused, unreachable or other transport-level failure"""
    pass


class ProtocolError(TransportError):
    """The peer answered with a non-success response code"""

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        super().__init__(message or f"Query failed: {code}")


class ProbeCancelled(NetLensError):
    """The session was cancelled by the user"""
    pass


class UnexpectedError(NetLensError):
    """Catch-all wrapper for errors that fit no other category"""

    def __init__(self, original: BaseException, context: str = "An error occurred"):
        self.original = original
        super().__init__(f"{context}: {original}")

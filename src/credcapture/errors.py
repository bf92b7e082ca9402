"""
Errors raised across the capture subsystem's boundary.

Only these reach the host. Malformed traffic on the callback port is handled
inside callback.py and never surfaces.
"""


class CaptureError(Exception):
    """Base class for all credential-capture errors."""


class SetupError(CaptureError):
    """A session could not be started (listener bind or browser surface failure)."""


class StateError(CaptureError):
    """An operation was requested in a state that does not allow it.

    Attributes:
        unmet: The preconditions that were not satisfied, e.g. ["an active capture session"].
    """

    def __init__(self, operation: str, unmet: list[str]):
        self.operation = operation
        self.unmet = list(unmet)
        super().__init__(f"Cannot {operation}: requires {' and '.join(self.unmet)}")


class ValidationError(CaptureError, ValueError):
    """Input rejected before any state change (e.g. a URL outside the target site)."""


class FetchError(CaptureError):
    """An outbound native fetch failed."""

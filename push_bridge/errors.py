"""
Error taxonomy for the bridge.

None of these are fatal to the process: each component catches the errors it
can produce and turns them into a reconnect, a dropped frame, a dropped
notification, or a registry cleanup.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class InvalidRequest(BridgeError):
    """A subscribe/unsubscribe request was malformed. Nothing was mutated."""


class TransportError(BridgeError):
    """A relay or the push provider could not be reached (or timed out)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PermanentEndpointFailure(BridgeError):
    """The push provider reports that the endpoint no longer exists."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolAnomaly(BridgeError):
    """A relay sent a frame that could not be understood."""

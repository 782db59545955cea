"""
Exception classes for the Nordigen authorization subsystem.

This module defines the exception hierarchy for every failure the core
can report. Core components raise these instead of terminating the
process; the CLI decides messages and exit codes.
"""

from typing import Optional


class NordigenError(Exception):
    """Base exception for all Nordigen client errors."""

    pass


class ConfigurationError(NordigenError):
    """Configuration error (missing or invalid configuration)."""

    pass


class StateError(NordigenError):
    """Persisted state is missing or unusable."""

    pass


class StateNotFoundError(StateError):
    """No persisted record exists at the given location (go authorize)."""

    pass


class CorruptStateError(StateError):
    """
    A persisted record exists but cannot be decoded.

    Never recovered from implicitly: valid state must not be silently
    overwritten by a fresh authorization.
    """

    pass


class TokenStorageError(NordigenError):
    """Storage operation failed (file I/O error)."""

    pass


class APIError(NordigenError):
    """Base exception for provider API call failures."""

    pass


class NetworkError(APIError):
    """The request never produced an HTTP response."""

    pass


class ProviderError(APIError):
    """
    The provider answered with a non-success status or an unusable body.

    Attributes:
        status: HTTP status code returned by the provider
        body: Raw response body text
    """

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class AuthorizationError(NordigenError):
    """Application authorization (token issuance) failed."""

    pass


class TokenExpiredError(NordigenError):
    """Refresh token is past its validity window (re-authorize from scratch)."""

    pass


class CallbackError(NordigenError):
    """Base exception for the local callback listener."""

    pass


class ProtocolError(CallbackError):
    """The callback request was malformed or missing the expected parameter."""

    pass


class BindError(CallbackError):
    """Could not bind the local callback address (port already in use?)."""

    pass


class CallbackTimeoutError(CallbackError):
    """No callback connection arrived before the deadline."""

    pass


class CallbackCancelledError(CallbackError):
    """Waiting for the callback was cancelled by the caller."""

    pass


class HandshakeError(NordigenError):
    """Bank consent handshake failed (listener failure or reference mismatch)."""

    pass

"""
Nordigen authorization module.

This module provides the application token lifecycle and the bank
consent handshake for the Nordigen open-banking API.

The bank consent handshake ends with the bank redirecting the user's
browser to a local callback URL; a single-use listener captures the
requisition reference carried by that redirect.

Public API:
    NordigenConfig: Application credentials
    CallbackConfig: Local callback endpoint settings
    Credentials: Persisted token pair
    CredentialStore: File-based credential persistence
    BankConsent: Completed bank consent
    BankConsentStore: File-based bank consent persistence
    NordigenAuthClient: Token and requisition endpoints
    CallbackListener: Single-shot local callback listener
    AuthorizationFlow: High-level authorization interface

Exceptions:
    NordigenError: Base exception
    StateError, StateNotFoundError, CorruptStateError: Persisted state problems
    APIError, NetworkError, ProviderError: Provider call failures
    AuthorizationError, TokenExpiredError: Token lifecycle failures
    CallbackError, ProtocolError, BindError: Callback listener failures
    HandshakeError: Bank consent handshake failed
"""

from .auth_client import AccessToken, NordigenAuthClient, Requisition
from .auth_server import CallbackListener, parse_callback_request
from .config import CallbackConfig, NordigenConfig
from .consent_storage import BankConsent, BankConsentStore
from .coordinator import (
    AuthorizationFlow,
    EnsureResult,
    PendingHandshake,
    RefreshResult,
    TokenState,
)
from .exceptions import (
    APIError,
    AuthorizationError,
    BindError,
    CallbackCancelledError,
    CallbackError,
    CallbackTimeoutError,
    ConfigurationError,
    CorruptStateError,
    HandshakeError,
    NetworkError,
    NordigenError,
    ProtocolError,
    ProviderError,
    StateError,
    StateNotFoundError,
    TokenExpiredError,
    TokenStorageError,
)
from .token_storage import Credentials, CredentialStore, TokenPair

__all__ = [
    # Configuration
    "NordigenConfig",
    "CallbackConfig",
    # Storage
    "TokenPair",
    "Credentials",
    "CredentialStore",
    "BankConsent",
    "BankConsentStore",
    # API client
    "NordigenAuthClient",
    "AccessToken",
    "Requisition",
    # Callback listener
    "CallbackListener",
    "parse_callback_request",
    # Coordinator
    "AuthorizationFlow",
    "EnsureResult",
    "RefreshResult",
    "PendingHandshake",
    "TokenState",
    # Exceptions
    "NordigenError",
    "ConfigurationError",
    "StateError",
    "StateNotFoundError",
    "CorruptStateError",
    "TokenStorageError",
    "APIError",
    "NetworkError",
    "ProviderError",
    "AuthorizationError",
    "TokenExpiredError",
    "CallbackError",
    "ProtocolError",
    "BindError",
    "CallbackTimeoutError",
    "CallbackCancelledError",
    "HandshakeError",
]

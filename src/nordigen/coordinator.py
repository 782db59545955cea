"""
Authorization flow coordinator.

This module provides the main interface the CLI uses for authorization.
It coordinates the API client, credential storage and the callback
listener into the application token lifecycle (ensure, refresh) and the
bank consent handshake.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .auth_client import NordigenAuthClient
from .auth_server import CallbackListener
from .config import CallbackConfig
from .consent_storage import BankConsent, BankConsentStore
from .exceptions import (
    APIError,
    AuthorizationError,
    BindError,
    CallbackError,
    HandshakeError,
    StateNotFoundError,
    TokenExpiredError,
)
from .token_storage import Credentials, CredentialStore, utcnow

logger = logging.getLogger(__name__)


class TokenState(enum.Enum):
    """What ``ensure_application_token`` found (or did)."""

    VALID = "valid"
    ACCESS_EXPIRED = "access_expired"
    ISSUED = "issued"


@dataclass
class EnsureResult:
    state: TokenState
    credentials: Credentials


@dataclass
class RefreshResult:
    refreshed: bool
    credentials: Credentials


@dataclass(frozen=True)
class PendingHandshake:
    """
    A bank consent in progress, between requisition creation and callback.

    Attributes:
        bank_id: Provider institution id
        requisition_id: Requisition created for the consent
        consent_link: URL the user follows to authenticate with the bank
        expected_ref: Reference the callback must echo back
    """

    bank_id: str
    requisition_id: str
    consent_link: str
    expected_ref: str


def _log_consent_link(link: str) -> None:
    logger.info(f"Follow this link to authenticate with the bank: {link}")


class AuthorizationFlow:
    """
    High-level coordinator for authorization operations.

    No operation retries or re-authorizes implicitly; every failure is
    raised to the caller as a NordigenError subclass.

    Example:
        flow = AuthorizationFlow(NordigenAuthClient(), CredentialStore("state.json"))
        result = flow.ensure_application_token(secret_id, secret_key)
        if result.state is TokenState.ACCESS_EXPIRED:
            flow.refresh_application_token()
    """

    def __init__(
        self,
        client: NordigenAuthClient,
        credential_store: CredentialStore,
        callback_config: Optional[CallbackConfig] = None,
        listener_factory: Callable[[str, int], CallbackListener] = CallbackListener,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            client: Provider API client
            credential_store: Where application credentials are persisted
            callback_config: Local callback endpoint settings
            listener_factory: Builds the callback listener from (host, port)
            clock: Returns the current timezone-aware time
        """
        self.client = client
        self.credential_store = credential_store
        self.callback_config = callback_config or CallbackConfig()
        self.listener_factory = listener_factory
        self.clock = clock

    # Application token lifecycle

    def ensure_application_token(self, secret_id: str, secret_key: str) -> EnsureResult:
        """
        Make sure usable application credentials exist.

        An existing record is returned untouched while its refresh token is
        valid, even if the access token has expired (refreshing is a
        separate explicit operation). A new pair is issued only when no
        record exists or the refresh token has expired.

        Raises:
            CorruptStateError: If the stored record cannot be decoded
            AuthorizationError: If issuing a new token pair failed
            TokenStorageError: If the new record could not be written
        """
        try:
            credentials = self.credential_store.load()
        except StateNotFoundError:
            logger.info("No stored credentials, obtaining new authorization")
        else:
            now = self.clock()
            if not credentials.is_refresh_expired(now):
                if credentials.is_access_expired(now):
                    logger.info("Access token expired, refresh required")
                    return EnsureResult(TokenState.ACCESS_EXPIRED, credentials)
                logger.info("Authorization still valid")
                return EnsureResult(TokenState.VALID, credentials)
            logger.warning("Refresh token has expired, obtaining new authorization")

        try:
            token_pair = self.client.issue_token(secret_id, secret_key)
        except APIError as e:
            raise AuthorizationError(f"Unable to obtain token: {e}") from e

        credentials = self.credential_store.save(token_pair, self.clock())
        logger.info(f"Obtained authorization token; expires on {credentials.access_expires_at}")
        return EnsureResult(TokenState.ISSUED, credentials)

    def refresh_application_token(self) -> RefreshResult:
        """
        Refresh an expired access token.

        A still-valid access token is left alone (no request, no write).
        The refresh token is kept, and so is its expiry instant: its
        lifetime is re-based onto the new issuance time.

        Raises:
            StateNotFoundError: If no credentials are stored
            CorruptStateError: If the stored record cannot be decoded
            TokenExpiredError: If the refresh token has expired
            NetworkError: If the refresh request could not be sent
            ProviderError: If the provider rejected the refresh
            TokenStorageError: If the new record could not be written
        """
        current = self.credential_store.load()
        now = self.clock()

        if not current.is_access_expired(now):
            logger.info("Token is still valid and does not need to be refreshed")
            return RefreshResult(refreshed=False, credentials=current)

        if current.is_refresh_expired(now):
            raise TokenExpiredError("Refresh token has expired. Please authorize again.")

        access = self.client.refresh_token(current.refresh_token)

        issued = self.clock().replace(microsecond=0)
        remaining = current.refresh_expires_at - issued
        refreshed = Credentials(
            access_token=access.access,
            access_expires=access.access_expires,
            refresh_token=current.refresh_token,
            refresh_expires=max(0, int(remaining // timedelta(seconds=1))),
            issued_at=issued.isoformat(),
        )
        self.credential_store.save_credentials(refreshed)
        logger.info(f"Successfully refreshed; new token expires on {refreshed.access_expires_at}")
        return RefreshResult(refreshed=True, credentials=refreshed)

    def get_status(self, now: Optional[datetime] = None) -> dict:
        """
        Get current authorization status for diagnostics.

        Returns:
            Dictionary with:
            - authorized: Whether credentials are stored
            - access_expired / refresh_expired: bool (if authorized)
            - access_expires_at / refresh_expires_at: ISO timestamps
            - access_expires_in_seconds / refresh_expires_in_seconds: >= 0

        Raises:
            CorruptStateError: If the stored record cannot be decoded
        """
        try:
            credentials = self.credential_store.load()
        except StateNotFoundError:
            return {"authorized": False, "message": "No credentials stored"}

        now = now or self.clock()
        access_left = (credentials.access_expires_at - now).total_seconds()
        refresh_left = (credentials.refresh_expires_at - now).total_seconds()
        return {
            "authorized": True,
            "access_expired": credentials.is_access_expired(now),
            "refresh_expired": credentials.is_refresh_expired(now),
            "access_expires_at": credentials.access_expires_at.isoformat(),
            "refresh_expires_at": credentials.refresh_expires_at.isoformat(),
            "access_expires_in_seconds": max(0, access_left),
            "refresh_expires_in_seconds": max(0, refresh_left),
        }

    # Bank consent handshake

    def start_bank_authorization(self, access_token: str, bank_id: str) -> PendingHandshake:
        """
        Create a requisition for the bank and capture the handshake state.

        Raises:
            NetworkError: If the request could not be sent
            ProviderError: If the provider rejected the request
        """
        requisition = self.client.start_bank_consent(
            access_token, bank_id, self.callback_config.callback_url
        )
        return PendingHandshake(
            bank_id=bank_id,
            requisition_id=requisition.requisition_id,
            consent_link=requisition.link,
            expected_ref=requisition.reference,
        )

    def await_callback(
        self,
        pending: PendingHandshake,
        listener: CallbackListener,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Wait for the bank redirect and check it belongs to this handshake.

        Returns:
            The verified reference

        Raises:
            HandshakeError: If the listener failed or the reference does not match
        """
        try:
            ref = listener.wait(timeout=timeout, cancel_event=cancel_event)
        except CallbackError as e:
            raise HandshakeError(f"Error obtaining bank requisition: {e}") from e

        if ref != pending.expected_ref:
            logger.error(f"Callback reference does not match requisition {pending.requisition_id}")
            raise HandshakeError(
                "Callback reference does not match the one issued for this requisition"
            )
        return ref

    def complete_bank_authorization(
        self,
        pending: PendingHandshake,
        access_token: str,
        ref: str,
        consent_store: BankConsentStore,
    ) -> BankConsent:
        """
        Record a verified handshake as a bank consent.

        The requisition is looked up once so the stored consent carries the
        provider's view of it.

        Raises:
            NetworkError: If the lookup could not be sent
            ProviderError: If the provider rejected the lookup
            TokenStorageError: If the consent could not be written
        """
        requisition = self.client.poll_requisition(access_token, pending.requisition_id)
        logger.info(f"Requisition {pending.requisition_id} status: {requisition.status}")
        consent = BankConsent(
            bank_id=pending.bank_id,
            requisition_id=pending.requisition_id,
            requisition_ref=ref,
            raw_provider_payload=requisition.raw,
        )
        return consent_store.save(consent)

    def authorize_bank(
        self,
        access_token: str,
        bank_id: str,
        consent_store: BankConsentStore,
        present_link: Callable[[str], None] = _log_consent_link,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BankConsent:
        """
        Run the complete bank consent handshake.

        This orchestrates:
        1. Creates a requisition (pending handshake)
        2. Binds the local callback listener
        3. Hands the consent link to ``present_link``
        4. Waits for the redirect and verifies its reference
        5. Saves the bank consent

        Nothing is persisted unless the reference matches.

        Args:
            access_token: Valid access token
            bank_id: Provider institution id
            consent_store: Where the bank consent is persisted
            present_link: Shows the consent link to the user
            timeout: Seconds to wait for the redirect (defaults to the
                     callback config; 0 waits forever)
            cancel_event: Set from another thread to abandon the wait

        Raises:
            HandshakeError: If the listener failed or the reference mismatched
            NetworkError: If a provider request could not be sent
            ProviderError: If the provider rejected a request
            TokenStorageError: If the consent could not be written
        """
        pending = self.start_bank_authorization(access_token, bank_id)

        if timeout is None:
            timeout = self.callback_config.timeout
        timeout = timeout or None

        listener = self.listener_factory(self.callback_config.host, self.callback_config.port)
        try:
            try:
                listener.bind()
            except BindError as e:
                raise HandshakeError(f"Unable to start callback listener: {e}") from e

            present_link(pending.consent_link)
            ref = self.await_callback(pending, listener, timeout, cancel_event)
        finally:
            listener.close()

        consent = self.complete_bank_authorization(pending, access_token, ref, consent_store)
        logger.info(f"Successfully authorized with bank {bank_id}")
        return consent

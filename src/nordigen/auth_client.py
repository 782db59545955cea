"""
Nordigen API client for authorization endpoints.

This module talks to the provider's token endpoints (issue, refresh) and
requisition endpoints (create, poll). Every method performs exactly one
HTTP request; retry policy belongs to the caller.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from .config import DEFAULT_BASE_URL
from .exceptions import NetworkError, ProviderError
from .token_storage import TokenPair

logger = logging.getLogger(__name__)


@dataclass
class AccessToken:
    """Access token returned by the refresh endpoint."""

    access: str
    access_expires: int


@dataclass
class Requisition:
    """
    Provider representation of a single bank-consent session.

    Attributes:
        requisition_id: Requisition id
        link: Consent link the user follows to authenticate with the bank
        reference: Correlator the bank echoes back as ``ref`` on redirect
        status: Provider status code (e.g. "CR" created, "LN" linked)
        raw: Full response payload
    """

    requisition_id: str
    link: str
    reference: str
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class NordigenAuthClient:
    """
    HTTP client for the Nordigen token and requisition endpoints.

    Failures are reported as NetworkError (no HTTP response) or
    ProviderError (non-success status or unusable body).
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: int = 30):
        """
        Args:
            base_url: API base URL including the version prefix
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.strip('/')}/"

    @staticmethod
    def _headers(access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "accept": "application/json",
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _handle_response(self, response: requests.Response, action: str) -> Dict[str, Any]:
        if not 200 <= response.status_code < 300:
            logger.error(f"{action} failed: {response.status_code} - {response.text}")
            raise ProviderError(
                f"{action} failed with status {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{action}: response is not valid JSON: {e}",
                status=response.status_code,
                body=response.text,
            ) from e

        if not isinstance(data, dict):
            raise ProviderError(
                f"{action}: unexpected response payload",
                status=response.status_code,
                body=response.text,
            )
        return data

    def _post(self, endpoint: str, payload: dict, action: str,
              access_token: Optional[str] = None) -> Dict[str, Any]:
        try:
            response = requests.post(
                self._url(endpoint),
                headers=self._headers(access_token),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Network error during {action.lower()}: {e}")
            raise NetworkError(f"{action}: {e}") from e
        return self._handle_response(response, action)

    def _get(self, endpoint: str, action: str, access_token: str) -> Dict[str, Any]:
        try:
            response = requests.get(
                self._url(endpoint),
                headers=self._headers(access_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Network error during {action.lower()}: {e}")
            raise NetworkError(f"{action}: {e}") from e
        return self._handle_response(response, action)

    def issue_token(self, secret_id: str, secret_key: str) -> TokenPair:
        """
        Obtain a new access/refresh token pair.

        Args:
            secret_id: Nordigen secret id
            secret_key: Nordigen secret key

        Returns:
            TokenPair with both tokens and their lifetimes

        Raises:
            NetworkError: If the request could not be sent
            ProviderError: If the provider rejected the request
        """
        logger.info("Requesting new access token")
        data = self._post(
            "token/new",
            {"secret_id": secret_id, "secret_key": secret_key},
            "Token issuance",
        )
        try:
            return TokenPair(
                access=str(data["access"]),
                access_expires=int(data["access_expires"]),
                refresh=str(data["refresh"]),
                refresh_expires=int(data["refresh_expires"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Invalid response from token endpoint: {e}", status=200, body=str(data)
            ) from e

    def refresh_token(self, refresh: str) -> AccessToken:
        """
        Obtain a new access token from a refresh token.

        The provider does not rotate the refresh token; the caller keeps
        the original one.

        Raises:
            NetworkError: If the request could not be sent
            ProviderError: If the provider rejected the request
        """
        logger.info("Refreshing access token")
        data = self._post("token/refresh", {"refresh": refresh}, "Token refresh")
        try:
            return AccessToken(
                access=str(data["access"]),
                access_expires=int(data["access_expires"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Invalid response from token refresh endpoint: {e}",
                status=200,
                body=str(data),
            ) from e

    def start_bank_consent(
        self, access_token: str, bank_id: str, redirect_url: str
    ) -> Requisition:
        """
        Create a requisition for a bank and obtain its consent link.

        A random reference is sent along; the provider appends it as
        ``?ref=`` to ``redirect_url`` once the user finishes at the bank.

        Args:
            access_token: Valid access token
            bank_id: Provider institution id
            redirect_url: Where the bank should send the user afterwards

        Returns:
            Requisition with id, consent link and expected reference

        Raises:
            NetworkError: If the request could not be sent
            ProviderError: If the provider rejected the request
        """
        reference = uuid.uuid4().hex
        logger.info(f"Creating requisition for bank {bank_id}")
        data = self._post(
            "requisitions",
            {
                "redirect": redirect_url,
                "institution_id": bank_id,
                "reference": reference,
            },
            "Requisition creation",
            access_token=access_token,
        )
        try:
            requisition = Requisition(
                requisition_id=str(data["id"]),
                link=str(data["link"]),
                reference=str(data.get("reference") or reference),
                status=data.get("status"),
                raw=data,
            )
        except KeyError as e:
            raise ProviderError(
                f"Invalid response from requisitions endpoint: missing {e}",
                status=200,
                body=str(data),
            ) from e

        logger.debug(f"Created requisition {requisition.requisition_id}")
        return requisition

    def poll_requisition(self, access_token: str, requisition_id: str) -> Requisition:
        """
        Fetch the current state of a requisition (single request).

        Raises:
            NetworkError: If the request could not be sent
            ProviderError: If the provider rejected the request
        """
        data = self._get(
            f"requisitions/{requisition_id}", "Requisition lookup", access_token
        )
        return Requisition(
            requisition_id=str(data.get("id", requisition_id)),
            link=str(data.get("link", "")),
            reference=str(data.get("reference", "")),
            status=data.get("status"),
            raw=data,
        )

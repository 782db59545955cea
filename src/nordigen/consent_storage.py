"""
Bank consent storage for the Nordigen client.

A bank consent records which requisition a completed handshake produced
for a bank. It carries no token: it is only usable together with valid
application credentials.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Union

from .exceptions import CorruptStateError
from .token_storage import parse_timestamp, read_json, utcnow, write_json_atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BankConsent:
    """
    Completed bank consent.

    Attributes:
        bank_id: Provider institution id
        requisition_id: Requisition created for this consent
        requisition_ref: Reference echoed back by the bank redirect
        raw_provider_payload: Requisition as last returned by the provider
        created_at: ISO timestamp of when the consent was recorded
    """

    bank_id: str
    requisition_id: str
    requisition_ref: str
    raw_provider_payload: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BankConsent":
        """
        Raises:
            ValueError: If the record does not have the BankConsent shape
        """
        if not isinstance(data, dict):
            raise ValueError("bank consent record must be a JSON object")
        expected = {f.name for f in fields(cls)}
        missing = expected - data.keys()
        unknown = data.keys() - expected
        if missing:
            raise ValueError(f"missing fields: {', '.join(sorted(missing))}")
        if unknown:
            raise ValueError(f"unknown fields: {', '.join(sorted(unknown))}")
        for name in ("bank_id", "requisition_id", "requisition_ref", "created_at"):
            if not isinstance(data[name], str):
                raise ValueError(f"{name} must be a string")
        if not isinstance(data["raw_provider_payload"], dict):
            raise ValueError("raw_provider_payload must be an object")
        parse_timestamp(data["created_at"])
        return cls(**data)


class BankConsentStore:
    """File-based bank consent storage (plaintext JSON)."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> BankConsent:
        """
        Load a bank consent from file.

        Raises:
            StateNotFoundError: If no consent file exists
            CorruptStateError: If the file exists but cannot be decoded
        """
        data = read_json(self.path, what="bank state")
        try:
            return BankConsent.from_dict(data)
        except ValueError as e:
            raise CorruptStateError(
                f"Unable to parse bank state file at {self.path}: {e}"
            ) from e

    def save(self, consent: BankConsent) -> BankConsent:
        """
        Persist a bank consent, superseding any previous one at this path.

        Raises:
            TokenStorageError: If the write fails
        """
        write_json_atomic(self.path, consent.to_dict())
        logger.info(f"Bank consent for {consent.bank_id} saved to {self.path}")
        return consent

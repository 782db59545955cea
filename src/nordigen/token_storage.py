"""
Credential storage for the Nordigen client.

This module provides file-based persistence of the access/refresh token
pair with expiry tracking. Records are stored as pretty-printed JSON and
written atomically (temp file + rename) so an interrupted write never
leaves a partial record behind.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import CorruptStateError, StateNotFoundError, TokenStorageError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO timestamp, treating naive values as UTC.

    Raises:
        ValueError: If value is not an ISO-8601 timestamp
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def write_json_atomic(path: Path, data: dict) -> None:
    """
    Write data as JSON to path, replacing any previous file atomically.

    The record is written to a temp file next to the destination, synced,
    then renamed over it. Permissions are restricted to the user (600).

    Raises:
        TokenStorageError: If the write fails
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        raise TokenStorageError(f"Unable to write {path}: {e}") from e

    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except (IOError, OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write {path}: {e}")
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise TokenStorageError(f"Unable to write {path}: {e}") from e

    try:
        path.chmod(0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions on {path}: {e}")


def read_json(path: Path, what: str = "state") -> Any:
    """
    Read a JSON document from path.

    Raises:
        StateNotFoundError: If no file exists at path
        CorruptStateError: If the file cannot be read or is not valid JSON
    """
    if not path.exists():
        logger.debug(f"No {what} file found at {path}")
        raise StateNotFoundError(f"{what.capitalize()} file at {path} does not exist")

    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise CorruptStateError(f"Unable to parse {what} file at {path}: {e}") from e
    except (IOError, OSError, UnicodeDecodeError) as e:
        raise CorruptStateError(f"Error reading {what} file at {path}: {e}") from e


@dataclass
class TokenPair:
    """
    Freshly issued token pair as returned by the token endpoint.

    Attributes:
        access: Access token
        access_expires: Access token lifetime in seconds
        refresh: Refresh token
        refresh_expires: Refresh token lifetime in seconds
    """

    access: str
    access_expires: int
    refresh: str
    refresh_expires: int


@dataclass
class Credentials:
    """
    Persisted application credentials.

    Both lifetimes count from ``issued_at``, the instant the record was
    written to disk.

    Attributes:
        access_token: Short-lived token used to authorize API calls
        access_expires: Access token lifetime in seconds
        refresh_token: Long-lived token used to obtain new access tokens
        refresh_expires: Refresh token lifetime in seconds
        issued_at: ISO timestamp of when the record was persisted
    """

    access_token: str
    access_expires: int
    refresh_token: str
    refresh_expires: int
    issued_at: str

    @property
    def issued(self) -> datetime:
        return parse_timestamp(self.issued_at)

    @property
    def access_expires_at(self) -> datetime:
        """Datetime when the access token expires (timezone-aware UTC)."""
        return self.issued + timedelta(seconds=self.access_expires)

    @property
    def refresh_expires_at(self) -> datetime:
        """Datetime when the refresh token expires (timezone-aware UTC)."""
        return self.issued + timedelta(seconds=self.refresh_expires)

    def is_access_expired(self, now: Optional[datetime] = None) -> bool:
        """
        Check if the access token is expired.

        Expiry is inclusive: the token is expired the instant ``now``
        reaches ``access_expires_at``.
        """
        return (now or utcnow()) >= self.access_expires_at

    def is_refresh_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the refresh token is expired (inclusive boundary)."""
        return (now or utcnow()) >= self.refresh_expires_at

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Credentials":
        """
        Create Credentials from a dictionary, validating the shape.

        Raises:
            ValueError: If keys are missing or unknown, or values have wrong types
        """
        if not isinstance(data, dict):
            raise ValueError("credentials record must be a JSON object")

        expected = {f.name for f in fields(cls)}
        missing = expected - data.keys()
        unknown = data.keys() - expected
        if missing:
            raise ValueError(f"missing fields: {', '.join(sorted(missing))}")
        if unknown:
            raise ValueError(f"unknown fields: {', '.join(sorted(unknown))}")

        for name in ("access_token", "refresh_token", "issued_at"):
            if not isinstance(data[name], str):
                raise ValueError(f"{name} must be a string")
        for name in ("access_expires", "refresh_expires"):
            value = data[name]
            # bool is an int subclass
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")

        parse_timestamp(data["issued_at"])
        return cls(**data)


class CredentialStore:
    """
    File-based credential storage (plaintext JSON).

    ``load`` distinguishes a missing record (go authorize) from a corrupt
    one (abort, do not re-authorize over it).
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize credential storage.

        Args:
            path: Path to the credentials file
        """
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Credentials:
        """
        Load credentials from file.

        Returns:
            Credentials read from disk

        Raises:
            StateNotFoundError: If no credentials file exists
            CorruptStateError: If the file exists but cannot be decoded
        """
        data = read_json(self.path)
        try:
            credentials = Credentials.from_dict(data)
        except (TypeError, ValueError) as e:
            raise CorruptStateError(
                f"Invalid state file at {self.path}: {e}"
            ) from e

        logger.debug(f"Credentials loaded from {self.path}")
        return credentials

    def save(self, token_pair: TokenPair, timestamp: datetime) -> Credentials:
        """
        Persist a freshly issued token pair.

        ``timestamp`` becomes the issuance instant of both tokens; it is
        truncated to whole seconds.

        Raises:
            TokenStorageError: If the write fails
        """
        credentials = Credentials(
            access_token=token_pair.access,
            access_expires=token_pair.access_expires,
            refresh_token=token_pair.refresh,
            refresh_expires=token_pair.refresh_expires,
            issued_at=timestamp.astimezone(timezone.utc).replace(microsecond=0).isoformat(),
        )
        return self.save_credentials(credentials)

    def save_credentials(self, credentials: Credentials) -> Credentials:
        """
        Persist an already built credentials record.

        Raises:
            TokenStorageError: If the write fails
        """
        write_json_atomic(self.path, credentials.to_dict())
        logger.info(f"Credentials saved to {self.path}")
        return credentials

"""
Configuration for the Nordigen client.

This module provides configuration management for authorizing against
the Nordigen API. Credentials can be loaded from a YAML config file or
from environment variables, or provided programmatically.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ob.nordigen.com/api/v2"


@dataclass
class NordigenConfig:
    """
    Application credentials for the Nordigen API.

    Attributes:
        secret_id: User secret id from the Nordigen dashboard
        secret_key: User secret key from the Nordigen dashboard
        base_url: API base URL (version prefix included)
        request_timeout: Timeout in seconds for each API request
    """

    # Required - from Nordigen user secrets
    secret_id: str
    secret_key: str

    base_url: str = DEFAULT_BASE_URL
    request_timeout: int = 30

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.secret_id:
            raise ConfigurationError("secret_id cannot be empty")

        if not self.secret_key:
            raise ConfigurationError("secret_key cannot be empty")

        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError("base_url must start with http:// or https://")

        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")

    def __repr__(self) -> str:
        return (
            f"NordigenConfig(secret_id={self.secret_id!r}, secret_key='***', "
            f"base_url={self.base_url!r})"
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "NordigenConfig":
        """
        Load configuration from a YAML file.

        Expected keys:
            secret_id: Nordigen secret id
            secret_key: Nordigen secret key
            base_url: Optional API base URL override

        Args:
            path: Path to the config file

        Returns:
            NordigenConfig instance

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file at {path} does not exist")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (IOError, OSError) as e:
            raise ConfigurationError(f"Error reading config file at {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Unable to parse config file at {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file at {path} must contain a mapping")

        logger.debug(f"Loaded configuration from {path}")
        return cls(
            secret_id=str(data.get("secret_id") or ""),
            secret_key=str(data.get("secret_key") or ""),
            base_url=data.get("base_url", DEFAULT_BASE_URL),
        )

    @classmethod
    def from_env(cls) -> "NordigenConfig":
        """
        Load configuration from environment variables.

        Required environment variables:
            NORDIGEN_SECRET_ID: Nordigen secret id
            NORDIGEN_SECRET_KEY: Nordigen secret key

        Optional environment variables:
            NORDIGEN_BASE_URL: API base URL (default: https://ob.nordigen.com/api/v2)

        Raises:
            ConfigurationError: If required environment variables are missing
        """
        secret_id = os.environ.get("NORDIGEN_SECRET_ID")
        secret_key = os.environ.get("NORDIGEN_SECRET_KEY")

        if not secret_id or not secret_key:
            raise ConfigurationError(
                "Missing Nordigen credentials. Set environment variables:\n"
                "  NORDIGEN_SECRET_ID=your_secret_id\n"
                "  NORDIGEN_SECRET_KEY=your_secret_key"
            )

        return cls(
            secret_id=secret_id,
            secret_key=secret_key,
            base_url=os.environ.get("NORDIGEN_BASE_URL", DEFAULT_BASE_URL),
        )


@dataclass
class CallbackConfig:
    """
    Local callback endpoint settings for the bank consent handshake.

    Attributes:
        host: Loopback address the listener binds to
        port: Port the listener binds to (0 picks a free port)
        path: URL path the bank redirects to
        timeout: Seconds to wait for the redirect (0 waits forever)
    """

    host: str = "127.0.0.1"
    port: int = 1337
    path: str = "/"
    timeout: int = 300

    def __post_init__(self) -> None:
        if not isinstance(self.port, int) or not (0 <= self.port <= 65535):
            raise ConfigurationError(
                f"port must be between 0 and 65535, got {self.port}"
            )

        if self.timeout < 0:
            raise ConfigurationError("timeout cannot be negative")

        if not self.path.startswith("/"):
            raise ConfigurationError("path must start with /")

    @property
    def callback_url(self) -> str:
        """
        Redirect URL handed to the provider (e.g., http://127.0.0.1:1337/).
        """
        return f"http://{self.host}:{self.port}{self.path}"

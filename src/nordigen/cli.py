"""
Click CLI for the Nordigen client.

This module is the single boundary that turns core failures into user
messages and exit codes. Core components only raise NordigenError
subclasses; every command here maps them to exit code 1.
"""

import dataclasses
import logging
import sys
from functools import wraps
from pathlib import Path
from typing import Optional

import click

from .auth_client import NordigenAuthClient
from .config import DEFAULT_BASE_URL, CallbackConfig, NordigenConfig
from .consent_storage import BankConsentStore
from .coordinator import AuthorizationFlow, TokenState
from .exceptions import (
    CorruptStateError,
    NordigenError,
    StateNotFoundError,
    TokenExpiredError,
)
from .token_storage import CredentialStore

logger = logging.getLogger(__name__)


def print_error(message: str) -> None:
    """Print error message to stderr."""
    click.secho(f"Error: {message}", fg="red", err=True)


def print_success(message: str) -> None:
    click.secho(message, fg="green")


def format_time_remaining(seconds: float) -> str:
    """
    Format seconds into human-readable time remaining.

    Returns:
        Formatted string (e.g., "2d 3h", "2h 15m", "45m", "expired")
    """
    if seconds <= 0:
        return "expired"

    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)

    if days > 0:
        return f"{days}d {hours}h"
    elif hours > 0:
        return f"{hours}h {minutes}m"
    elif minutes > 0:
        return f"{minutes}m"
    else:
        return f"{int(seconds)}s"


def handle_errors(func):
    """Report NordigenError as a message and exit code 1."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StateNotFoundError as e:
            print_error(f"State file not found: {e}")
        except CorruptStateError as e:
            print_error(f"Invalid state file found: {e}")
        except NordigenError as e:
            print_error(str(e))
        sys.exit(1)

    return wrapper


def build_flow(state: Path, base_url: str = DEFAULT_BASE_URL,
               callback_config: Optional[CallbackConfig] = None) -> AuthorizationFlow:
    return AuthorizationFlow(
        client=NordigenAuthClient(base_url=base_url),
        credential_store=CredentialStore(state),
        callback_config=callback_config,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--base-url",
    default=DEFAULT_BASE_URL,
    envvar="NORDIGEN_BASE_URL",
    show_default=True,
    help="Nordigen API base URL",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, base_url: str) -> None:
    """
    Nordigen client - authorize with Nordigen and link bank accounts.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["base_url"] = base_url


@cli.command()
@click.option(
    "--config", "-c", "config_path",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file with secret_id and secret_key",
)
@click.option(
    "--state", "-s",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="State file",
)
@click.pass_context
@handle_errors
def authorize(ctx: click.Context, config_path: Path, state: Path) -> None:
    """Authorize application."""
    config = NordigenConfig.from_file(config_path)
    if ctx.obj["base_url"] != DEFAULT_BASE_URL:
        config = dataclasses.replace(config, base_url=ctx.obj["base_url"])

    flow = build_flow(state, config.base_url)
    result = flow.ensure_application_token(config.secret_id, config.secret_key)

    if result.state is TokenState.VALID:
        click.echo("Authorization still valid")
    elif result.state is TokenState.ACCESS_EXPIRED:
        click.echo("Access token expired. Please refresh!")
    else:
        print_success(
            f"Obtained authorization token; expires on "
            f"{result.credentials.access_expires_at}"
        )


@cli.command()
@click.option(
    "--state", "-s",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="State file",
)
@click.pass_context
@handle_errors
def refresh(ctx: click.Context, state: Path) -> None:
    """Refresh authorization."""
    flow = build_flow(state, ctx.obj["base_url"])
    result = flow.refresh_application_token()

    if not result.refreshed:
        click.echo("Token is still valid and does not need to be refreshed.")
    else:
        print_success(
            f"Successfully refreshed; new token expires on "
            f"{result.credentials.access_expires_at}"
        )


@cli.command()
@click.option(
    "--state", "-s",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="State file",
)
@click.pass_context
@handle_errors
def status(ctx: click.Context, state: Path) -> None:
    """Show authorization status."""
    flow = build_flow(state, ctx.obj["base_url"])
    info = flow.get_status()

    if not info["authorized"]:
        click.echo("Not authorized. Run 'authorize' first.")
        sys.exit(1)

    click.echo(
        f"  access token: expires {info['access_expires_at']} "
        f"({format_time_remaining(info['access_expires_in_seconds'])})"
    )
    click.echo(
        f" refresh token: expires {info['refresh_expires_at']} "
        f"({format_time_remaining(info['refresh_expires_in_seconds'])})"
    )


@cli.group()
@click.option(
    "--state", "-s",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    metavar="FILE",
    help="State file",
)
@click.pass_context
def bank(ctx: click.Context, state: Path) -> None:
    """Bank related commands."""
    ctx.obj["state"] = state


def _valid_access_token(flow: AuthorizationFlow) -> str:
    credentials = flow.credential_store.load()
    if credentials.is_access_expired(flow.clock()):
        raise TokenExpiredError("Token has expired. Maybe refresh?")
    return credentials.access_token


@bank.command("authorize")
@click.argument("bank_id")
@click.option(
    "--auth", "-a",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    metavar="FILE",
    help="Bank authorization file",
)
@click.option("--host", default="127.0.0.1", show_default=True, help="Callback listen address")
@click.option("--port", default=1337, show_default=True, type=int, help="Callback listen port")
@click.option(
    "--timeout",
    default=300,
    show_default=True,
    type=click.IntRange(min=0),
    help="Seconds to wait for the bank redirect (0 waits forever)",
)
@click.pass_context
@handle_errors
def bank_authorize(
    ctx: click.Context, bank_id: str, auth: Path, host: str, port: int, timeout: int
) -> None:
    """Authorize a bank."""
    callback_config = CallbackConfig(host=host, port=port, timeout=timeout)
    flow = build_flow(ctx.obj["state"], ctx.obj["base_url"], callback_config)
    access_token = _valid_access_token(flow)

    def present_link(link: str) -> None:
        click.echo("Please follow the link below to authenticate with the selected bank.")
        click.echo(f"  {link}")

    flow.authorize_bank(access_token, bank_id, BankConsentStore(auth), present_link=present_link)
    print_success("Successfully authorized with bank!")


@bank.command("check")
@click.option(
    "--auth", "-a",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    metavar="FILE",
    help="Bank authorization file",
)
@click.pass_context
@handle_errors
def bank_check(ctx: click.Context, auth: Path) -> None:
    """Show the provider status of a saved bank authorization."""
    flow = build_flow(ctx.obj["state"], ctx.obj["base_url"])
    access_token = _valid_access_token(flow)
    consent = BankConsentStore(auth).load()

    requisition = flow.client.poll_requisition(access_token, consent.requisition_id)
    click.echo(f"        bank: {consent.bank_id}")
    click.echo(f" requisition: {requisition.requisition_id}")
    click.echo(f"      status: {requisition.status or 'unknown'}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()

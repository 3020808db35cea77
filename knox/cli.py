"""
Knox CLI — ``knox`` command group.

Every command except ``init`` unlocks an existing bunker. Mutating commands
prompt for their input first and then run inside ``CredentialStore.transaction``
so concurrent writers (another shell, the running daemon) are never
clobbered.
"""
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import click

from .config import KnoxConfig, get_env_passphrase
from .crypto import PassphraseCipher
from .daemon import SessionReconciler
from .exceptions import (
    BunkerExistsError,
    BunkerFileLost,
    BunkerNotFoundError,
    InvalidDateError,
    InvalidRelayURLError,
    InvalidUseCountError,
    KnoxError,
    PassphraseRequiredError,
)
from .export import FORMATS, export_keys
from .keys import generate_secret_key, npub_encode, nsec_decode
from .signer import load_session_factory
from .state import as_utc, utcnow
from .store import CredentialStore
from .version import __version__

logger = logging.getLogger("knox.cli")

_STATUS_STYLES = {
    "new": dict(dim=True),
    "warning": dict(fg="yellow"),
    "ok": dict(fg="green"),
}


class KnoxGroup(click.Group):
    """Turns domain errors into a single ``Error: <message>`` line, exit 1."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except KnoxError as err:
            raise click.ClickException(str(err)) from err


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def parse_relay(relay: str) -> str:
    """Accept only secure websocket relay URLs."""
    try:
        parts = urlsplit(relay)
    except ValueError:
        raise InvalidRelayURLError(relay) from None
    if parts.scheme.lower() != "wss" or not parts.netloc:
        raise InvalidRelayURLError(relay)
    return parts.geturl()


def parse_uses(value: str) -> int:
    try:
        uses = int(value)
    except (TypeError, ValueError):
        raise InvalidUseCountError(str(value)) from None
    if uses < 1:
        raise InvalidUseCountError(str(value))
    return uses


def parse_expires(value: str, now: Optional[datetime] = None) -> datetime:
    """Parse an ISO-8601 date or datetime; naive values are UTC."""
    try:
        expires_at = as_utc(datetime.fromisoformat(value))
    except ValueError:
        raise InvalidDateError(value) from None
    if expires_at <= (now or utcnow()):
        raise InvalidDateError(value)
    return expires_at


# ---------------------------------------------------------------------------
# Unlocking
# ---------------------------------------------------------------------------

def prompt_passphrase(message: str, confirm: bool = False) -> PassphraseCipher:
    passphrase = get_env_passphrase()
    if passphrase is None:
        passphrase = click.prompt(
            message,
            hide_input=True,
            confirmation_prompt=confirm,
            default="",
            show_default=False,
            err=True,
        )
    if not passphrase:
        raise PassphraseRequiredError("Passphrase is required")
    return PassphraseCipher(passphrase)


def open_store(config: KnoxConfig) -> CredentialStore:
    if not Path(config.file).exists():
        raise BunkerNotFoundError(
            'Bunker not found. Run "knox init" to create one, '
            'or pass "-f" to specify its location.'
        )
    cipher = prompt_passphrase("Enter unlock passphrase")
    return CredentialStore.open(
        config.file,
        cipher,
        log_n=config.log_n,
        key_security=config.key_security,
        uri_scheme=config.uri_scheme,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group(cls=KnoxGroup, context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__, prog_name="knox")
@click.option(
    "-f", "--file", "path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to the bunker file (default: $KNOX_FILE or knox.bunker).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, path: Optional[str], verbose: bool) -> None:
    """Nostr bunker with encrypted storage."""
    config = KnoxConfig.from_env()
    if path:
        config = config.model_copy(update={"file": path})
    setup_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = config


@cli.command()
@click.pass_obj
def init(config: KnoxConfig) -> None:
    """Initialize a new bunker."""
    if Path(config.file).exists():
        raise BunkerExistsError("Bunker file already exists")
    with prompt_passphrase("Enter a new passphrase", confirm=True) as cipher:
        CredentialStore.create(
            config.file, cipher, log_n=config.log_n, key_security=config.key_security,
        ).close()
    click.echo(f"Initialized bunker {config.file}")


@cli.command()
@click.argument("name")
@click.pass_obj
def add(config: KnoxConfig, name: str) -> None:
    """Add a new key to the bunker."""
    with open_store(config) as store:
        text = click.prompt(
            "Enter secret key (leave blank to generate)",
            hide_input=True,
            default="",
            show_default=False,
            err=True,
        )
        sec = nsec_decode(text) if text else generate_secret_key()
        with store.transaction():
            key = store.add_key(name, sec)
            pubkey = key.pubkey
    click.echo(f"{name} {npub_encode(pubkey)}")


@cli.command()
@click.argument("name")
@click.pass_obj
def remove(config: KnoxConfig, name: str) -> None:
    """Remove a key and its authorizations from the bunker."""
    with open_store(config) as store:
        with store.transaction():
            store.remove_key(name)
    click.echo(f"Removed {name}")


@cli.command()
@click.argument("name")
@click.argument("relays", metavar="RELAY...", nargs=-1, required=True)
@click.option("-n", "--uses", default="1", show_default=True, help="Maximum number of uses.")
@click.option("--unlimited", is_flag=True, help="Do not limit the number of uses.")
@click.option("--expires", default=None, help="Expiration date (ISO 8601).")
@click.pass_obj
def uri(
    config: KnoxConfig,
    name: str,
    relays: tuple[str, ...],
    uses: str,
    unlimited: bool,
    expires: Optional[str],
) -> None:
    """Generate a bunker URI for a key."""
    expires_at = parse_expires(expires) if expires else None
    max_uses = None if unlimited else parse_uses(uses)
    relay_urls = [parse_relay(relay) for relay in relays]
    with open_store(config) as store:
        with store.transaction():
            result = store.generate_uri(
                name, relay_urls, max_uses=max_uses, expires_at=expires_at,
            )
    click.echo(result)


@cli.command()
@click.argument("secret")
@click.pass_obj
def revoke(config: KnoxConfig, secret: str) -> None:
    """Revoke a bunker URI by its secret."""
    with open_store(config) as store:
        with store.transaction():
            store.revoke(secret)
    click.echo("Revoked")


@cli.command()
@click.pass_obj
def status(config: KnoxConfig) -> None:
    """Show the status of the bunker."""
    with open_store(config) as store:
        state = store.state
        for key in state.keys:
            tags = [
                click.style(tag.label, **_STATUS_STYLES[tag.level])
                for tag in state.key_status(key.name)
            ]
            click.echo(
                click.style(key.name, bold=True) + " "
                + click.style("(", dim=True)
                + click.style(", ", dim=True).join(tags)
                + click.style(")", dim=True)
            )


@cli.command()
@click.option("--signer", default=None, help="Signer transport entry point to use.")
@click.pass_obj
def start(config: KnoxConfig, signer: Optional[str]) -> None:
    """Start the bunker daemon."""
    factory = load_session_factory(signer)
    with open_store(config) as store:
        if not store.authorizations:
            click.echo('No authorizations found. Run "knox uri" to generate one.', err=True)
            return
        click.echo("Starting bunker daemon...", err=True)
        click.echo("Press Ctrl+C to stop.", err=True)
        reconciler = SessionReconciler(store, factory)
        try:
            asyncio.run(reconciler.run())
        except BunkerFileLost:
            raise click.ClickException("Bunker file removed or renamed.") from None
        except KeyboardInterrupt:
            logger.info("Bunker daemon stopped")


@cli.command()
@click.option(
    "--format", "fmt",
    type=click.Choice(FORMATS),
    default="csv",
    show_default=True,
    help="Output format.",
)
@click.option("--keys", "keys_only", is_flag=True, help="Output keys only.")
@click.option("--insecure", is_flag=True, help="Output keys without encryption (not recommended).")
@click.pass_obj
def export(config: KnoxConfig, fmt: str, keys_only: bool, insecure: bool) -> None:
    """Export keys from the bunker."""
    with open_store(config) as store:
        for line in export_keys(
            store.keys,
            store.cipher,
            fmt=fmt,
            keys_only=keys_only,
            insecure=insecure,
            log_n=config.log_n,
        ):
            click.echo(line)


def main() -> None:
    cli(prog_name="knox")

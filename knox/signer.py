"""
Knox Signer — the contract between the daemon and a NIP-46 transport.

The transport (relay connections, NIP-46 JSON-RPC, event signing) lives
outside this package. A transport registers a ``SignerSession`` subclass
under the ``knox.signers`` entry-point group::

    [project.entry-points."knox.signers"]
    relay = "my_transport:RelaySession"

and the daemon constructs one session per authorization.
"""
import abc
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any, Optional

from .exceptions import SignerBackendError
from .secret import SecretBuffer

logger = logging.getLogger("knox.signer")

ENTRY_POINT_GROUP = "knox.signers"


@dataclass
class ConnectRequest:
    """A NIP-46 ``connect`` request as seen by the bunker.

    ``params`` follows NIP-46: ``[remote_signer_pubkey, secret?, perms?]``.
    """
    id: str
    app_pubkey: str
    params: Sequence[str] = field(default_factory=list)

    @property
    def secret(self) -> Optional[str]:
        return self.params[1] if len(self.params) > 1 else None


@dataclass
class ConnectResponse:
    id: str
    result: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


ConnectHandler = Callable[..., Awaitable[ConnectResponse]]
ObserverHook = Callable[..., None]


class SignerSession(abc.ABC):
    """One live remote-signing endpoint for one authorization.

    Subclasses own the transport. The base class holds the authorized
    application pubkeys and the two signing identities, and disposes those
    secrets on ``close()``.
    """

    def __init__(
        self,
        *,
        relays: Sequence[str],
        bunker_secret: SecretBuffer,
        user_secret: SecretBuffer,
        authorized_pubkeys: Iterable[str] = (),
        on_connect: Optional[ConnectHandler] = None,
        on_request: Optional[ObserverHook] = None,
        on_response: Optional[ObserverHook] = None,
        on_error: Optional[ObserverHook] = None,
    ):
        self.relays = list(relays)
        self.bunker_secret = bunker_secret
        self.user_secret = user_secret
        self._authorized: set[str] = set(authorized_pubkeys)
        self.on_connect = on_connect
        self.on_request = on_request
        self.on_response = on_response
        self.on_error = on_error
        self._closed = False

    @property
    def authorized_pubkeys(self) -> set[str]:
        return self._authorized

    @authorized_pubkeys.setter
    def authorized_pubkeys(self, pubkeys: Iterable[str]) -> None:
        self._authorized = set(pubkeys)

    def authorize(self, pubkey: str) -> None:
        """Allow an application pubkey to use this session."""
        self._authorized.add(pubkey)

    def is_authorized(self, pubkey: str) -> bool:
        return pubkey in self._authorized

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> Any:
        """Begin serving; transports may return an awaitable or task."""
        return None

    @abc.abstractmethod
    def _shutdown(self) -> None:
        """Release transport resources."""

    def close(self) -> None:
        """Stop the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._shutdown()
        finally:
            self.bunker_secret.dispose()
            self.user_secret.dispose()


SessionFactory = Callable[..., SignerSession]


def load_session_factory(name: Optional[str] = None) -> SessionFactory:
    """Return the signer session class registered under ``knox.signers``.

    Args:
        name: Entry point name; the only registered one is used when None.

    Raises:
        SignerBackendError: Nothing registered, ambiguous, or unknown name.
    """
    available = {ep.name: ep for ep in entry_points(group=ENTRY_POINT_GROUP)}
    if not available:
        raise SignerBackendError(
            "No signer transport installed. Install a package providing "
            f'the "{ENTRY_POINT_GROUP}" entry point.'
        )
    if name is None:
        if len(available) > 1:
            raise SignerBackendError(
                f"Several signer transports installed ({', '.join(sorted(available))}); "
                "choose one with --signer."
            )
        name = next(iter(available))
    if name not in available:
        raise SignerBackendError(f'Unknown signer transport "{name}"')
    logger.debug("Using signer transport %s", name)
    return available[name].load()

"""Knox — Nostr remote-signing bunker with encrypted key storage.

Security Note (Threat Model):
    Private keys are encrypted at rest with a passphrase-derived key
    (scrypt + XChaCha20-Poly1305). While a bunker is open, keys live in
    process memory XOR-scrambled inside ``SecretBuffer`` objects; this only
    narrows the exposure window, a memory dump of a running daemon can still
    recover them.
"""
from .version import __version__
from .crypto import PassphraseCipher
from .secret import SecretBuffer
from .state import KnoxAuthorization, KnoxKey, KnoxState
from .store import CredentialStore
from .daemon import DaemonState, SessionReconciler
from .signer import ConnectRequest, ConnectResponse, SignerSession
from .config import KnoxConfig
from .exceptions import KnoxError

__all__ = [
    "__version__",
    "PassphraseCipher",
    "SecretBuffer",
    "KnoxKey",
    "KnoxAuthorization",
    "KnoxState",
    "CredentialStore",
    "SessionReconciler",
    "DaemonState",
    "SignerSession",
    "ConnectRequest",
    "ConnectResponse",
    "KnoxConfig",
    "KnoxError",
]

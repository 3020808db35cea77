"""
CredentialStore — transactional access to one encrypted bunker file.

Provides the public API used by the CLI and the daemon:
- ``create(path, cipher)`` — write a new, empty bunker (``init``)
- ``open(path, cipher)`` — decrypt and sanitize the bunker into a handle
- ``save()`` — re-encrypt and rewrite the file under an exclusive lock
- ``transaction()`` — lock, reload, mutate, rewrite without releasing
- ``add_key`` / ``remove_key`` / ``generate_uri`` / ``revoke`` / ``authorize``

Mutations only touch the in-memory snapshot; nothing reaches the disk until
``save()`` (or the end of a ``transaction()`` block).

Security Note:
    Never log key material or full capability secrets. Key names and
    shortened secrets are fine.
"""
import os
import uuid
import logging
from contextlib import contextmanager
from collections.abc import Iterator, Sequence
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import orjson

from .crypto import DEFAULT_LOG_N, KEY_SECURITY_UNKNOWN, PassphraseCipher
from .exceptions import (
    AuthorizationExpiredError,
    AuthorizationNotFoundError,
    BunkerExistsError,
    BunkerNotFoundError,
    DeserializationError,
    DuplicateKeyError,
    InvalidUseCountError,
    KeyNotFoundError,
    KnoxError,
    UsageLimitExceededError,
)
from .keys import generate_secret_key, is_hex_id, validate_secret_key
from .lock import locked_file, rewrite
from .secret import SecretBuffer
from .state import (
    STATE_VERSION,
    KnoxAuthorization,
    KnoxKey,
    KnoxState,
    as_utc,
    utcnow,
)

logger = logging.getLogger("knox.store")

PathLike = Union[str, os.PathLike]


def short_secret(secret: str) -> str:
    """Shorten a capability secret for log output."""
    return f"{secret[:8]}…" if len(secret) > 8 else secret


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_state(state: KnoxState) -> bytes:
    """Serialize a state to indented UTF-8 JSON; secrets become ``nsec1...``."""
    return orjson.dumps(
        state.model_dump(exclude_none=True),
        option=orjson.OPT_INDENT_2,
    )


def decode_state(plaintext: bytes, now: Optional[datetime] = None) -> KnoxState:
    """Parse decrypted JSON into a sanitized state.

    Raises:
        DeserializationError: Invalid UTF-8/JSON or an unrecoverable shape.
    """
    try:
        data = orjson.loads(plaintext)
    except orjson.JSONDecodeError as err:
        raise DeserializationError(f"Bunker document is not valid JSON: {err}") from err
    return KnoxState.from_document(data, now=now)


def read_state(path: PathLike, cipher: PassphraseCipher) -> KnoxState:
    """Read, decrypt and sanitize the bunker file under a shared lock.

    Raises:
        BunkerNotFoundError: The file does not exist.
        FormatError / AuthenticationError: The envelope cannot be decrypted.
        DeserializationError: The decrypted document is unrecoverable.
    """
    try:
        with locked_file(path, "rb") as fh:
            envelope = fh.read()
    except FileNotFoundError:
        raise BunkerNotFoundError(
            'Bunker not found. Run "knox init" to create one, '
            'or pass "-f" to specify its location.'
        ) from None
    return decode_state(cipher.decrypt(envelope))


class CredentialStore:
    """Handle over one decrypted snapshot of a bunker file.

    The snapshot is a ``KnoxState`` value that is replaced, never patched.
    Reloading (``reload()``/``transaction()``) and ``close()`` dispose the
    secrets of the previous snapshot, so do not keep references to
    ``store.state`` across those calls.
    """

    def __init__(
        self,
        path: PathLike,
        cipher: PassphraseCipher,
        state: Optional[KnoxState] = None,
        log_n: int = DEFAULT_LOG_N,
        key_security: int = KEY_SECURITY_UNKNOWN,
        uri_scheme: str = "bunker",
    ):
        self.path = Path(path)
        self._cipher = cipher
        self._state = state if state is not None else KnoxState()
        self._log_n = log_n
        self._key_security = key_security
        self._uri_scheme = uri_scheme

    def __repr__(self) -> str:
        return (
            f"<CredentialStore {self.path} keys={len(self._state.keys)} "
            f"authorizations={len(self._state.authorizations)}>"
        )

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        path: PathLike,
        cipher: PassphraseCipher,
        **kwargs,
    ) -> "CredentialStore":
        """Create a new bunker file holding an empty state.

        Raises:
            BunkerExistsError: The file already exists.
        """
        store = cls(path, cipher, KnoxState(version=STATE_VERSION), **kwargs)
        envelope = store._encrypt()
        try:
            with locked_file(path, "xb", exclusive=True) as fh:
                rewrite(fh, envelope)
        except FileExistsError:
            raise BunkerExistsError("Bunker file already exists") from None
        logger.info("Created bunker %s", store.path)
        return store

    @classmethod
    def open(
        cls,
        path: PathLike,
        cipher: PassphraseCipher,
        **kwargs,
    ) -> "CredentialStore":
        """Decrypt the bunker file into a new handle."""
        state = read_state(path, cipher)
        logger.debug(
            "Opened bunker %s: %d key(s), %d authorization(s)",
            path, len(state.keys), len(state.authorizations),
        )
        return cls(path, cipher, state, **kwargs)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _encrypt(self) -> bytes:
        return self._cipher.encrypt(
            encode_state(self._state), self._log_n, self._key_security,
        )

    def _replace(self, state: KnoxState) -> None:
        previous, self._state = self._state, state
        previous.dispose()

    def load(self) -> KnoxState:
        """Re-read the file, replacing the in-memory snapshot."""
        self._replace(read_state(self.path, self._cipher))
        return self._state

    reload = load

    def save(self) -> None:
        """Encrypt the snapshot and atomically rewrite the bunker file.

        Encryption happens before the lock is taken; the exclusive lock is
        then held across truncate, write, flush and fsync.
        """
        envelope = self._encrypt()
        try:
            with locked_file(self.path, "r+b", exclusive=True) as fh:
                rewrite(fh, envelope)
        except FileNotFoundError:
            raise BunkerNotFoundError(f"Bunker file {self.path} disappeared") from None
        logger.debug("Saved bunker %s", self.path)

    @contextmanager
    def transaction(self) -> Iterator["CredentialStore"]:
        """Lock the file, reload it, yield, then rewrite it.

        The exclusive lock is held from the read to the end of the rewrite,
        so changes made by other processes are never clobbered. If the block
        raises, the file is left untouched.
        """
        try:
            with locked_file(self.path, "r+b", exclusive=True) as fh:
                self._replace(decode_state(self._cipher.decrypt(fh.read())))
                yield self
                rewrite(fh, self._encrypt())
        except FileNotFoundError:
            raise BunkerNotFoundError(f"Bunker file {self.path} disappeared") from None

    def close(self) -> None:
        self._state.dispose()

    def __enter__(self) -> "CredentialStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> KnoxState:
        return self._state

    @property
    def cipher(self) -> PassphraseCipher:
        return self._cipher

    @property
    def keys(self) -> list[KnoxKey]:
        return list(self._state.keys)

    @property
    def authorizations(self) -> list[KnoxAuthorization]:
        return list(self._state.authorizations)

    def get_key(self, name: str) -> Optional[KnoxKey]:
        return self._state.get_key(name)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_key(self, name: str, sec: Union[bytearray, bytes]) -> KnoxKey:
        """Add a named secret key.

        ``sec`` is scrambled in place when it is a ``bytearray``.

        Raises:
            DuplicateKeyError: A key with this name exists.
            InvalidSecretKeyError: ``sec`` is not a valid secp256k1 key.
        """
        if self._state.get_key(name) is not None:
            raise DuplicateKeyError(name)
        validate_secret_key(sec)
        key = KnoxKey(name=name, sec=SecretBuffer(sec), created_at=utcnow())
        self._state = self._state.model_copy(
            update={"keys": [*self._state.keys, key]}
        )
        logger.info("Added key %r", name)
        return key

    def remove_key(self, name: str) -> None:
        """Remove a key together with every authorization referencing it.

        Raises:
            KeyNotFoundError: No key with this name.
        """
        key = self._state.get_key(name)
        if key is None:
            raise KeyNotFoundError(name)
        dropped = self._state.authorizations_for(name)
        self._state = self._state.model_copy(update={
            "keys": [k for k in self._state.keys if k.name != name],
            "authorizations": [
                a for a in self._state.authorizations if a.key != name
            ],
        })
        key.sec.dispose()
        for authorization in dropped:
            authorization.bunker_sec.dispose()
        logger.info("Removed key %r and %d authorization(s)", name, len(dropped))

    def generate_uri(
        self,
        key_name: str,
        relays: Sequence[str],
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> str:
        """Mint a new authorization for a key and return its bunker URI.

        The URI is only redeemable by other processes after ``save()``.

        Raises:
            KeyNotFoundError: No key with this name.
            InvalidUseCountError: ``max_uses`` is not a positive integer.
        """
        if self._state.get_key(key_name) is None:
            raise KeyNotFoundError(key_name)
        if max_uses is not None and (
            isinstance(max_uses, bool) or not isinstance(max_uses, int) or max_uses < 1
        ):
            raise InvalidUseCountError(str(max_uses))
        authorization = KnoxAuthorization(
            key=key_name,
            secret=str(uuid.uuid4()),
            relays=list(relays),
            pubkeys=[],
            max_uses=max_uses,
            bunker_sec=SecretBuffer(generate_secret_key()),
            created_at=utcnow(),
            expires_at=as_utc(expires_at) if expires_at is not None else None,
        )
        self._state = self._state.model_copy(
            update={"authorizations": [*self._state.authorizations, authorization]}
        )
        logger.info(
            "Generated URI for key %r (secret=%s, max_uses=%s, expires_at=%s)",
            key_name, short_secret(authorization.secret), max_uses, expires_at,
        )
        return authorization.uri(self._uri_scheme)

    def revoke(self, secret: str) -> None:
        """Delete an authorization by its capability secret.

        Raises:
            AuthorizationNotFoundError: No authorization has this secret.
        """
        authorization = self._state.get_authorization(secret)
        if authorization is None:
            raise AuthorizationNotFoundError()
        self._state = self._state.model_copy(update={
            "authorizations": [
                a for a in self._state.authorizations if a.secret != secret
            ],
        })
        authorization.bunker_sec.dispose()
        logger.info("Revoked authorization %s", short_secret(secret))

    def authorize(self, pubkey: str, secret: str) -> None:
        """Record that application ``pubkey`` redeemed capability ``secret``.

        Checks run in this order: lookup, pubkey format, existing membership
        (a repeat is a no-op), usage limit, expiry.

        Raises:
            AuthorizationNotFoundError: No authorization has this secret.
            KnoxError: ``pubkey`` is not a 64-character hex id.
            UsageLimitExceededError: ``max_uses`` pubkeys already redeemed it.
            AuthorizationExpiredError: ``expires_at`` is in the past.
        """
        authorization = self._state.get_authorization(secret)
        if authorization is None:
            raise AuthorizationNotFoundError()
        if not is_hex_id(pubkey):
            raise KnoxError("Invalid pubkey.")
        if pubkey in authorization.pubkeys:
            return
        if (
            authorization.max_uses is not None
            and len(authorization.pubkeys) >= authorization.max_uses
        ):
            raise UsageLimitExceededError()
        if authorization.is_expired():
            raise AuthorizationExpiredError()
        updated = authorization.model_copy(
            update={"pubkeys": [*authorization.pubkeys, pubkey]}
        )
        self._state = self._state.model_copy(update={
            "authorizations": [
                updated if a.secret == secret else a
                for a in self._state.authorizations
            ],
        })
        logger.info(
            "Authorized %s for key %r (secret=%s)",
            pubkey, authorization.key, short_secret(secret),
        )

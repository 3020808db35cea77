"""
Knox Exceptions — Error taxonomy for the bunker.

Every ``KnoxError`` is a domain failure that is surfaced to the caller
unchanged and maps to a single ``error: <message>`` line in the CLI.
OS-level failures (permissions, locking) are never wrapped.
"""


class KnoxError(Exception):
    """Base class for all domain-level bunker errors."""


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------

class BunkerExistsError(KnoxError):
    """Raised when initializing a bunker over an existing file."""


class BunkerNotFoundError(KnoxError):
    """Raised when the bunker file does not exist."""


class PassphraseRequiredError(KnoxError):
    """Raised when an empty passphrase is supplied."""


# ---------------------------------------------------------------------------
# Decryption / decoding
# ---------------------------------------------------------------------------

class DecryptionError(KnoxError):
    """The bunker file could not be decrypted."""


class FormatError(DecryptionError):
    """Unsupported or truncated envelope."""


class AuthenticationError(DecryptionError):
    """AEAD tag mismatch.

    Deliberately does not say whether the passphrase was wrong or the
    ciphertext was modified.
    """

    def __init__(self, message: str = "wrong passphrase or corrupted file"):
        super().__init__(message)


class DeserializationError(KnoxError):
    """The decrypted document does not have the shape of a bunker state."""


# ---------------------------------------------------------------------------
# Keys and authorizations
# ---------------------------------------------------------------------------

class DuplicateKeyError(KnoxError):
    def __init__(self, name: str):
        super().__init__(f'Key "{name}" already exists.')
        self.name = name


class KeyNotFoundError(KnoxError):
    def __init__(self, name: str):
        super().__init__(f'Key "{name}" not found.')
        self.name = name


class InvalidSecretKeyError(KnoxError):
    """Raised when key material is not a valid 32-byte secp256k1 key."""


class AuthorizationNotFoundError(KnoxError):
    def __init__(self, message: str = "Authorization not found."):
        super().__init__(message)


class UsageLimitExceededError(KnoxError):
    def __init__(self, message: str = "Maximum uses exceeded."):
        super().__init__(message)


class AuthorizationExpiredError(KnoxError):
    def __init__(self, message: str = "Authorization expired."):
        super().__init__(message)


# ---------------------------------------------------------------------------
# CLI input validation
# ---------------------------------------------------------------------------

class InvalidRelayURLError(KnoxError):
    def __init__(self, relay: str):
        super().__init__(f'Invalid relay URL "{relay}"')
        self.relay = relay


class InvalidDateError(KnoxError):
    def __init__(self, value: str):
        super().__init__(f'Invalid expiration date "{value}"')
        self.value = value


class InvalidUseCountError(KnoxError):
    def __init__(self, value: str):
        super().__init__(f'Invalid number of uses "{value}"')
        self.value = value


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------

class SignerBackendError(KnoxError):
    """No usable signer session transport is installed."""


class BunkerFileLost(Exception):
    """The watched bunker file was removed or renamed.

    Not a ``KnoxError``: the daemon cannot recover from it and the
    process is expected to terminate.
    """

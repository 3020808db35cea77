"""
Knox Crypto Core — Passphrase envelope for the bunker file and key export.

Implements the NIP-49 encryption scheme without the bech32 layer for whole
documents, and with it (``ncryptsec``) for single keys:

    scrypt(NFKC(passphrase), salt, N=2**log_n, r=8, p=1) → 32-byte key
    XChaCha20-Poly1305(key, nonce, aad=key_security_byte)

Envelope format:
    [version 1B = 0x02][log_n 1B][salt 16B][nonce 24B][aad 1B][ciphertext + tag 16B]

Security Note:
    Never log plaintext, passphrases or derived keys.
    Salt and nonce are fresh random values on every call.
"""
import os
import logging
import unicodedata

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from .exceptions import AuthenticationError, FormatError, PassphraseRequiredError
from .keys import NCRYPTSEC_PREFIX, SECRET_KEY_SIZE, decode_bech32, encode_bech32

logger = logging.getLogger("knox.crypto")

VERSION = 0x02
SALT_SIZE = 16
NONCE_SIZE = 24  # XChaCha20 extended nonce
TAG_SIZE = 16
KEY_LENGTH = 32

DEFAULT_LOG_N = 16
MAX_LOG_N = 22

# NIP-49 key security byte
KEY_INSECURE = 0x00  # key has been handled insecurely
KEY_SECURE = 0x01  # key has never been handled insecurely
KEY_SECURITY_UNKNOWN = 0x02
KEY_SECURITY_BYTES = (KEY_INSECURE, KEY_SECURE, KEY_SECURITY_UNKNOWN)

_HEADER_SIZE = 2 + SALT_SIZE + NONCE_SIZE + 1


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def normalize_passphrase(passphrase: str) -> bytes:
    return unicodedata.normalize("NFKC", passphrase).encode("utf-8")


def derive_key(passphrase: bytes, salt: bytes, log_n: int) -> bytes:
    """Derive a 32-byte symmetric key with scrypt.

    Args:
        passphrase: NFKC-normalized UTF-8 passphrase.
        salt: 16 random bytes.
        log_n: Work factor exponent, ``N = 2 ** log_n``.

    Returns:
        32-byte derived key.
    """
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=2 ** log_n, r=8, p=1)
    return kdf.derive(passphrase)


class PassphraseCipher:
    """Password-based authenticated encryption for bunker data."""

    def __init__(self, passphrase: str):
        if not passphrase:
            raise PassphraseRequiredError("Passphrase is required")
        self._passphrase = normalize_passphrase(passphrase)

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def encrypt(
        self,
        plaintext: bytes,
        log_n: int = DEFAULT_LOG_N,
        key_security: int = KEY_SECURITY_UNKNOWN,
    ) -> bytes:
        """Encrypt bytes into a version 2 envelope.

        Args:
            plaintext: Data to encrypt.
            log_n: scrypt work factor exponent (1..22).
            key_security: NIP-49 key security byte, used as AEAD associated
                data.

        Returns:
            Envelope bytes.
        """
        if key_security not in KEY_SECURITY_BYTES:
            raise ValueError(f"Invalid key security byte: {key_security}")
        if not 1 <= log_n <= MAX_LOG_N:
            raise ValueError(f"log_n must be between 1 and {MAX_LOG_N}, got {log_n}")
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        aad = bytes([key_security])
        key = derive_key(self._passphrase, salt, log_n)
        ct = crypto_aead_xchacha20poly1305_ietf_encrypt(bytes(plaintext), aad, nonce, key)
        return bytes([VERSION, log_n]) + salt + nonce + aad + ct

    def decrypt(self, envelope: bytes) -> bytes:
        """Decrypt a version 2 envelope.

        Raises:
            FormatError: Unsupported version byte or truncated envelope.
            AuthenticationError: The tag does not verify (wrong passphrase,
                modified ciphertext or modified associated data).
        """
        if not envelope or envelope[0] != VERSION:
            version = envelope[0] if envelope else None
            raise FormatError(f"Invalid version {version}, expected {VERSION}")
        if len(envelope) < _HEADER_SIZE + TAG_SIZE:
            raise FormatError(
                f"Envelope too short: {len(envelope)} bytes "
                f"(minimum {_HEADER_SIZE + TAG_SIZE})"
            )
        log_n = envelope[1]
        if not 1 <= log_n <= MAX_LOG_N:
            raise FormatError(f"Unsupported work factor {log_n}")
        salt = envelope[2:2 + SALT_SIZE]
        nonce = envelope[2 + SALT_SIZE:2 + SALT_SIZE + NONCE_SIZE]
        aad = envelope[_HEADER_SIZE - 1:_HEADER_SIZE]
        ct = envelope[_HEADER_SIZE:]
        key = derive_key(self._passphrase, salt, log_n)
        try:
            return crypto_aead_xchacha20poly1305_ietf_decrypt(ct, aad, nonce, key)
        except CryptoError:
            raise AuthenticationError() from None

    # ------------------------------------------------------------------
    # ncryptsec
    # ------------------------------------------------------------------

    def encrypt_key(
        self,
        sec: bytes,
        log_n: int = DEFAULT_LOG_N,
        key_security: int = KEY_SECURITY_UNKNOWN,
    ) -> str:
        """Encrypt a secret key into an ``ncryptsec1...`` string."""
        if len(sec) != SECRET_KEY_SIZE:
            raise ValueError(f"Secret key must be {SECRET_KEY_SIZE} bytes")
        return encode_bech32(NCRYPTSEC_PREFIX, self.encrypt(sec, log_n, key_security))

    def decrypt_key(self, ncryptsec: str) -> bytearray:
        """Decrypt an ``ncryptsec1...`` string into raw secret key bytes.

        Raises:
            FormatError: Not an ncryptsec string, or a bad envelope.
            AuthenticationError: Wrong passphrase.
        """
        try:
            hrp, envelope = decode_bech32(ncryptsec.strip())
        except ValueError as err:
            raise FormatError(f"Invalid ncryptsec: {err}") from err
        if hrp != NCRYPTSEC_PREFIX:
            raise FormatError(f"Expected {NCRYPTSEC_PREFIX} prefix, got {hrp}")
        sec = bytearray(self.decrypt(envelope))
        if len(sec) != SECRET_KEY_SIZE:
            raise FormatError("Decrypted key has the wrong length")
        return sec

    def close(self) -> None:
        self._passphrase = b""

    def __enter__(self) -> "PassphraseCipher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return "<PassphraseCipher>"

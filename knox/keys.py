"""
Knox Keys — secp256k1 key handling and NIP-19 bech32 text encodings.

Nostr identities are secp256k1 keys; the public key is the 32-byte
x-coordinate (BIP-340 "x-only") rendered as lowercase hex.

Security Note:
    Never log the output of ``nsec_encode`` or the input of ``nsec_decode``.
"""
import re
import logging

import bech32
from cryptography.hazmat.primitives.asymmetric import ec

from .exceptions import InvalidSecretKeyError

logger = logging.getLogger("knox.keys")

SECRET_KEY_SIZE = 32

NSEC_PREFIX = "nsec"
NPUB_PREFIX = "npub"
NCRYPTSEC_PREFIX = "ncryptsec"

_HEX_ID = re.compile(r"^[0-9a-f]{64}$")

# secp256k1 group order
_CURVE_ORDER = int(
    "fffffffffffffffffffffffffffffffebaaedce6af48a03bbfd25e8cd0364141", 16
)


def is_hex_id(value: str) -> bool:
    """True for a 64-character lowercase hex string (pubkeys, event ids)."""
    return isinstance(value, str) and bool(_HEX_ID.match(value))


# ---------------------------------------------------------------------------
# secp256k1
# ---------------------------------------------------------------------------

def _private_key(sec: bytes) -> ec.EllipticCurvePrivateKey:
    if len(sec) != SECRET_KEY_SIZE:
        raise InvalidSecretKeyError(
            f"Secret key must be {SECRET_KEY_SIZE} bytes, got {len(sec)}"
        )
    scalar = int.from_bytes(sec, "big")
    if not 0 < scalar < _CURVE_ORDER:
        raise InvalidSecretKeyError("Secret key is out of range")
    return ec.derive_private_key(scalar, ec.SECP256K1())


def generate_secret_key() -> bytearray:
    """Generate a fresh secp256k1 private key.

    Returns:
        32-byte big-endian scalar as a mutable buffer, so callers can hand
        it straight to ``SecretBuffer`` for in-place scrambling.
    """
    key = ec.generate_private_key(ec.SECP256K1())
    return bytearray(
        key.private_numbers().private_value.to_bytes(SECRET_KEY_SIZE, "big")
    )


def get_public_key(sec: bytes) -> str:
    """Return the x-only public key (hex) for a 32-byte secret key.

    Raises:
        InvalidSecretKeyError: If ``sec`` is not a valid secp256k1 scalar.
    """
    numbers = _private_key(sec).public_key().public_numbers()
    return numbers.x.to_bytes(SECRET_KEY_SIZE, "big").hex()


def validate_secret_key(sec: bytes) -> None:
    """Raise ``InvalidSecretKeyError`` unless ``sec`` is a usable secp256k1 key."""
    _private_key(sec)


# ---------------------------------------------------------------------------
# bech32
# ---------------------------------------------------------------------------

def encode_bech32(hrp: str, data: bytes) -> str:
    return bech32.bech32_encode(hrp, bech32.convertbits(data, 8, 5))


def decode_bech32(text: str) -> tuple[str, bytes]:
    """Decode a bech32 string of any length.

    NIP-19/NIP-49 strings such as ``ncryptsec`` exceed the 90 character
    limit of BIP-173, so the length check of ``bech32.bech32_decode`` is
    not applied here; checksum and character set are still verified.

    Raises:
        ValueError: On mixed case, bad characters or a bad checksum.
    """
    if text.lower() != text and text.upper() != text:
        raise ValueError("bech32 string uses mixed case")
    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text):
        raise ValueError("bech32 separator missing or misplaced")
    hrp = text[:pos]
    try:
        data = [bech32.CHARSET.index(char) for char in text[pos + 1:]]
    except ValueError:
        raise ValueError("invalid bech32 character") from None
    if not bech32.bech32_verify_checksum(hrp, data):
        raise ValueError("invalid bech32 checksum")
    decoded = bech32.convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        raise ValueError("invalid bech32 padding")
    return hrp, bytes(decoded)


def nsec_encode(sec: bytes) -> str:
    return encode_bech32(NSEC_PREFIX, sec)


def nsec_decode(text: str) -> bytearray:
    """Decode an ``nsec1...`` string into raw secret key bytes.

    Raises:
        InvalidSecretKeyError: If the text is not a valid nsec.
    """
    try:
        hrp, data = decode_bech32(text.strip())
    except ValueError as err:
        raise InvalidSecretKeyError("Invalid secret key") from err
    if hrp != NSEC_PREFIX or len(data) != SECRET_KEY_SIZE:
        raise InvalidSecretKeyError("Invalid secret key")
    return bytearray(data)


def npub_encode(pubkey: str) -> str:
    return encode_bech32(NPUB_PREFIX, bytes.fromhex(pubkey))

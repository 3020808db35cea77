"""
SecretBuffer — scrambled in-memory holder for raw secret bytes.

The bytes are XORed with a random salt of equal length the moment they are
wrapped; the buffer handed in is overwritten in place, so the plaintext is
only materialized again inside ``unscramble()``.

Security Note:
    This is a mitigation, not a guarantee. CPython may have copied the
    plaintext elsewhere (immutable ``bytes``, decoded strings, interpreter
    caches) and nothing here can erase those copies. Keep every
    ``unscramble()`` block as short as possible.
"""
import hmac
import secrets
from contextlib import contextmanager
from collections.abc import Iterator
from typing import Any, Union

from pydantic_core import core_schema

from .exceptions import InvalidSecretKeyError
from .keys import nsec_decode, nsec_encode, NSEC_PREFIX


def _randomize(buffer: bytearray) -> None:
    """Overwrite a buffer in place with random bytes."""
    buffer[:] = secrets.token_bytes(len(buffer))


class SecretBuffer:
    """Secret bytes kept XOR-scrambled while at rest in memory.

    Usage::

        sec = SecretBuffer(bytearray(raw))   # ``raw`` is now scrambled
        with sec.unscramble() as plain:
            sign(plain)                      # ``plain`` is randomized on exit
        sec.dispose()
    """

    __slots__ = ("_data", "_salt", "_disposed")

    def __init__(self, data: Union[bytearray, bytes, memoryview]):
        if isinstance(data, SecretBuffer):
            raise TypeError("SecretBuffer cannot wrap another SecretBuffer")
        if not isinstance(data, bytearray):
            # immutable input cannot be scrambled in place
            data = bytearray(data)
        if not data:
            raise ValueError("SecretBuffer requires at least one byte")
        salt = bytearray(secrets.token_bytes(len(data)))
        for i, s in enumerate(salt):
            data[i] ^= s
        self._data = data
        self._salt = salt
        self._disposed = False

    @classmethod
    def from_nsec(cls, text: str) -> "SecretBuffer":
        return cls(nsec_decode(text))

    def to_nsec(self) -> str:
        with self.unscramble() as plain:
            return nsec_encode(plain)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check(self) -> None:
        if self._disposed:
            raise ValueError("SecretBuffer has been disposed")

    @contextmanager
    def unscramble(self) -> Iterator[bytearray]:
        """Yield a fresh buffer holding the plaintext.

        The yielded buffer is overwritten with random bytes when the block
        exits, including on error.
        """
        self._check()
        plain = bytearray(len(self._data))
        for i, (d, s) in enumerate(zip(self._data, self._salt)):
            plain[i] = d ^ s
        try:
            yield plain
        finally:
            _randomize(plain)

    def copy(self) -> "SecretBuffer":
        """Return an independent SecretBuffer holding the same secret."""
        self._check()
        plain = bytearray(len(self._data))
        for i, (d, s) in enumerate(zip(self._data, self._salt)):
            plain[i] = d ^ s
        return SecretBuffer(plain)

    def reveal(self) -> bytes:
        """Return an immutable copy of the plaintext.

        For collaborators that insist on ``bytes``; the copy cannot be
        erased, the caller owns its lifetime.
        """
        with self.unscramble() as plain:
            return bytes(plain)

    def dispose(self) -> None:
        """Overwrite salt and scrambled data with random bytes."""
        if self._disposed:
            return
        _randomize(self._salt)
        _randomize(self._data)
        self._disposed = True

    close = dispose

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else f"{len(self._data)} bytes"
        return f"<SecretBuffer [{state}]>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretBuffer):
            return NotImplemented
        if self is other:
            return True
        with self.unscramble() as a, other.unscramble() as b:
            return hmac.compare_digest(a, b)

    __hash__ = None  # type: ignore[assignment]

    # ------------------------------------------------------------------
    # Pydantic integration
    # ------------------------------------------------------------------

    @classmethod
    def _validate(cls, value: Any, info: Any = None) -> "SecretBuffer":
        if isinstance(value, SecretBuffer):
            return value
        if isinstance(value, (bytes, bytearray, memoryview)):
            buffer = cls(value)
        elif isinstance(value, str) and value.startswith(NSEC_PREFIX + "1"):
            try:
                buffer = cls.from_nsec(value)
            except InvalidSecretKeyError as err:
                raise ValueError(str(err)) from err
        else:
            raise ValueError("expected an nsec string or secret key bytes")
        # callers pass context={"secrets": [...]} to collect what was built
        context = getattr(info, "context", None)
        if isinstance(context, dict) and isinstance(context.get("secrets"), list):
            context["secrets"].append(buffer)
        return buffer

    @classmethod
    def __get_pydantic_core_schema__(cls, source: Any, handler: Any):
        return core_schema.with_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda value: value.to_nsec(),
                return_schema=core_schema.str_schema(),
            ),
        )

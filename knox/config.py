"""
Knox Configuration — Validated settings loaded from the environment.

Recognized variables:
    KNOX_FILE          path to the bunker file (default ``knox.bunker``)
    KNOX_LOG_N         scrypt work factor exponent for new writes (default 16)
    KNOX_KEY_SECURITY  NIP-49 key security byte, 0..2 (default 2)
    KNOX_URI_SCHEME    scheme of generated URIs (default ``bunker``)
    KNOX_LOG_LEVEL     logging level name (default ``INFO``)
    KNOX_PASSPHRASE    unlock passphrase, skips the interactive prompt

Security Note:
    The passphrase is never part of ``KnoxConfig`` and is never logged.
"""
import os
import re
import logging

from pydantic import BaseModel, Field, field_validator

from .crypto import DEFAULT_LOG_N, KEY_SECURITY_UNKNOWN, MAX_LOG_N

logger = logging.getLogger("knox.config")

DEFAULT_BUNKER_FILE = "knox.bunker"
PASSPHRASE_ENV = "KNOX_PASSPHRASE"

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*$")


def get_env_passphrase() -> str | None:
    """Return the passphrase from ``KNOX_PASSPHRASE``, if set and non-empty."""
    return os.environ.get(PASSPHRASE_ENV) or None


class KnoxConfig(BaseModel):
    """Validated bunker configuration."""

    file: str = Field(default=DEFAULT_BUNKER_FILE, min_length=1)
    log_n: int = Field(default=DEFAULT_LOG_N, ge=1, le=MAX_LOG_N)
    key_security: int = Field(default=KEY_SECURITY_UNKNOWN, ge=0, le=2)
    uri_scheme: str = Field(default="bunker")
    log_level: str = Field(default="INFO")

    @field_validator("uri_scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        """Validate the URI scheme is a syntactically valid scheme."""
        v = v.lower()
        if not _SCHEME_PATTERN.match(v):
            raise ValueError(f"Invalid URI scheme: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return v

    @classmethod
    def from_env(cls) -> "KnoxConfig":
        """Create KnoxConfig from ``KNOX_*`` environment variables.

        Returns:
            Populated KnoxConfig instance.
        """
        values = {}
        for field, env in (
            ("file", "KNOX_FILE"),
            ("log_n", "KNOX_LOG_N"),
            ("key_security", "KNOX_KEY_SECURITY"),
            ("uri_scheme", "KNOX_URI_SCHEME"),
            ("log_level", "KNOX_LOG_LEVEL"),
        ):
            raw = os.environ.get(env)
            if raw:
                values[field] = raw
        config = cls(**values)
        logger.debug(
            "Loaded config: file=%s log_n=%d scheme=%s",
            config.file, config.log_n, config.uri_scheme,
        )
        return config

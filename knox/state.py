"""
Knox State — the document persisted inside the bunker envelope.

``KnoxState`` is an immutable value: mutations build a new state and the
store swaps it in wholesale. ``KnoxState.from_document`` is the single entry
point from decoded JSON and enforces the load-time invariants:

- key names are unique (first occurrence wins);
- every authorization references an existing key;
- expired authorizations are discarded;
- relays and pubkeys are de-duplicated;
- malformed individual records are dropped, not raised.
"""
import logging
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional
from urllib.parse import urlencode, urlsplit

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    ValidationError,
    field_validator,
)

from .exceptions import DeserializationError
from .keys import get_public_key, is_hex_id
from .secret import SecretBuffer

logger = logging.getLogger("knox.state")

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _dispose_all(buffers: list[SecretBuffer]) -> None:
    for buffer in buffers:
        buffer.dispose()


class KnoxKey(BaseModel):
    """A named user secret key."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    sec: SecretBuffer
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def pubkey(self) -> str:
        with self.sec.unscramble() as plain:
            return get_public_key(plain)


class KnoxAuthorization(BaseModel):
    """A redeemable capability granting remote signing with one key."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    relays: list[str]
    pubkeys: list[str] = Field(default_factory=list)
    max_uses: Optional[PositiveInt] = None
    bunker_sec: SecretBuffer
    created_at: datetime
    expires_at: Optional[datetime] = None

    @field_validator("relays")
    @classmethod
    def validate_relays(cls, v: list[str]) -> list[str]:
        for relay in v:
            parts = urlsplit(relay)
            if not parts.scheme or not parts.netloc:
                raise ValueError(f"Invalid relay URL: {relay}")
        return _dedupe(v)

    @field_validator("pubkeys")
    @classmethod
    def validate_pubkeys(cls, v: list[str]) -> list[str]:
        for pubkey in v:
            if not is_hex_id(pubkey):
                raise ValueError("pubkeys must be 64-character hex strings")
        return _dedupe(v)

    @field_validator("created_at", "expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    @property
    def remaining_uses(self) -> Optional[int]:
        """Unused slots, or None when unlimited."""
        if self.max_uses is None:
            return None
        return max(0, self.max_uses - len(self.pubkeys))

    @property
    def bunker_pubkey(self) -> str:
        with self.bunker_sec.unscramble() as plain:
            return get_public_key(plain)

    def uri(self, scheme: str = "bunker") -> str:
        """Build ``<scheme>://<bunker pubkey>?relay=...&secret=...``."""
        query = [("relay", relay) for relay in self.relays]
        query.append(("secret", self.secret))
        return f"{scheme}://{self.bunker_pubkey}?{urlencode(query)}"


class KeyStatus(NamedTuple):
    """One tag of the ``status`` summary for a key."""
    label: str
    level: str  # "new", "warning" or "ok"


class KnoxState(BaseModel):
    """Every key and authorization held by the bunker."""

    model_config = ConfigDict(frozen=True)

    keys: list[KnoxKey] = Field(default_factory=list)
    authorizations: list[KnoxAuthorization] = Field(default_factory=list)
    version: PositiveInt = STATE_VERSION

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_key(self, name: str) -> Optional[KnoxKey]:
        for key in self.keys:
            if key.name == name:
                return key
        return None

    def get_authorization(self, secret: str) -> Optional[KnoxAuthorization]:
        for authorization in self.authorizations:
            if authorization.secret == secret:
                return authorization
        return None

    def authorizations_for(self, key_name: str) -> list[KnoxAuthorization]:
        return [auth for auth in self.authorizations if auth.key == key_name]

    def key_status(self, name: str) -> list[KeyStatus]:
        """Summarize how a key's authorizations are being used."""
        authorizations = self.authorizations_for(name)
        if not authorizations:
            return [KeyStatus("new", "new")]

        unused_uris = 0
        unused_slots = 0
        for authorization in authorizations:
            if authorization.max_uses is None:
                return [KeyStatus("unlimited", "warning")]
            if not authorization.pubkeys:
                unused_uris += 1
            unused_slots += authorization.remaining_uses

        tags = []
        if unused_uris:
            tags.append(KeyStatus(f"{unused_uris} unused URIs", "warning"))
        if unused_slots and unused_slots != unused_uris:
            tags.append(KeyStatus(f"{unused_slots} unused slots", "warning"))
        return tags or [KeyStatus("connected", "ok")]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def secrets(self) -> list[SecretBuffer]:
        return [key.sec for key in self.keys] + [
            auth.bunker_sec for auth in self.authorizations
        ]

    def dispose(self) -> None:
        """Randomize every secret buffer reachable from this state."""
        for buffer in self.secrets():
            buffer.dispose()

    @classmethod
    def from_document(
        cls,
        data: Any,
        now: Optional[datetime] = None,
    ) -> "KnoxState":
        """Build a sanitized state from a decoded JSON document.

        Raises:
            DeserializationError: If the outer shape is unrecoverable.
        """
        if not isinstance(data, dict):
            raise DeserializationError("Bunker document is not an object")
        version = data.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise DeserializationError("Bunker document has no valid version")
        raw_keys = data.get("keys", [])
        raw_authorizations = data.get("authorizations", [])
        if not isinstance(raw_keys, list) or not isinstance(raw_authorizations, list):
            raise DeserializationError(
                "Bunker document keys and authorizations must be lists"
            )
        now = now or utcnow()

        keys: dict[str, KnoxKey] = {}
        for index, raw in enumerate(raw_keys):
            built: list[SecretBuffer] = []
            try:
                key = KnoxKey.model_validate(raw, context={"secrets": built})
            except ValidationError as err:
                logger.debug("Dropping malformed key #%d: %d error(s)", index, err.error_count())
                _dispose_all(built)
                continue
            if key.name in keys:
                logger.debug("Dropping duplicate key %r", key.name)
                key.sec.dispose()
                continue
            keys[key.name] = key

        authorizations: list[KnoxAuthorization] = []
        seen: set[str] = set()
        for index, raw in enumerate(raw_authorizations):
            built = []
            try:
                authorization = KnoxAuthorization.model_validate(
                    raw, context={"secrets": built},
                )
            except ValidationError as err:
                logger.debug(
                    "Dropping malformed authorization #%d: %d error(s)",
                    index, err.error_count(),
                )
                _dispose_all(built)
                continue
            if authorization.key not in keys:
                reason = "references unknown key"
            elif authorization.is_expired(now):
                reason = "is expired"
            elif authorization.secret in seen:
                reason = "has a duplicate secret"
            else:
                seen.add(authorization.secret)
                authorizations.append(authorization)
                continue
            logger.debug("Dropping authorization #%d: %s", index, reason)
            authorization.bunker_sec.dispose()

        return cls(
            keys=list(keys.values()),
            authorizations=authorizations,
            version=version,
        )

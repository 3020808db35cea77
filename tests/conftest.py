"""Shared fixtures for the Knox test suite."""
import os
from datetime import datetime, timedelta, timezone

import pytest

from knox.crypto import PassphraseCipher
from knox.keys import generate_secret_key, nsec_encode
from knox.secret import SecretBuffer
from knox.signer import SignerSession
from knox.state import KnoxAuthorization, KnoxKey
from knox.store import CredentialStore

PASSPHRASE = "correct horse battery staple"
# Low scrypt work factor keeps the suite fast.
FAST_LOG_N = 4


def random_pubkey() -> str:
    """Any 64-character hex id is a valid application pubkey for the store."""
    return os.urandom(32).hex()


def new_nsec() -> str:
    return nsec_encode(generate_secret_key())


def make_key(name: str = "alex") -> KnoxKey:
    return KnoxKey(
        name=name,
        sec=SecretBuffer(generate_secret_key()),
        created_at=datetime.now(timezone.utc),
    )


def make_authorization(
    secret: str,
    key: str = "alex",
    pubkeys=(),
    max_uses=None,
    expires_at=None,
    relays=("wss://relay.example",),
) -> KnoxAuthorization:
    return KnoxAuthorization(
        key=key,
        secret=secret,
        relays=list(relays),
        pubkeys=list(pubkeys),
        max_uses=max_uses,
        bunker_sec=SecretBuffer(generate_secret_key()),
        created_at=datetime.now(timezone.utc),
        expires_at=expires_at,
    )


def past(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**(kwargs or {"days": 1}))


def future(**kwargs) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**(kwargs or {"days": 1}))


class FakeSession(SignerSession):
    """In-memory signer session recording its lifecycle."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = False
        self.shutdowns = 0

    def start(self):
        self.started = True

    def _shutdown(self):
        self.shutdowns += 1


@pytest.fixture
def cipher():
    """PassphraseCipher with the test passphrase."""
    return PassphraseCipher(PASSPHRASE)


@pytest.fixture
def bunker_path(tmp_path):
    return tmp_path / "knox.bunker"


@pytest.fixture
def store(bunker_path, cipher):
    """A freshly initialized, empty bunker on disk."""
    store = CredentialStore.create(bunker_path, cipher, log_n=FAST_LOG_N)
    yield store
    store.close()


@pytest.fixture
def store_with_key(store):
    """Bunker holding one saved key named ``alex``."""
    store.add_key("alex", generate_secret_key())
    store.save()
    return store

"""
Tests for the ``knox`` command line and its configuration.

Commands run through click's CliRunner with the passphrase supplied in
``KNOX_PASSPHRASE`` and a low scrypt work factor.
"""
from urllib.parse import parse_qs, urlsplit

import orjson
import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from knox import cli as cli_module
from knox.cli import cli, parse_expires, parse_relay, parse_uses
from knox.config import KnoxConfig
from knox.crypto import PassphraseCipher
from knox.exceptions import (
    BunkerFileLost,
    InvalidDateError,
    InvalidRelayURLError,
    InvalidUseCountError,
)
from knox.keys import get_public_key, npub_encode, nsec_decode
from knox.store import CredentialStore

from .conftest import FAST_LOG_N, PASSPHRASE, FakeSession, new_nsec


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("KNOX_PASSPHRASE", PASSPHRASE)
    monkeypatch.setenv("KNOX_LOG_N", str(FAST_LOG_N))
    for name in ("KNOX_FILE", "KNOX_KEY_SECURITY", "KNOX_URI_SCHEME", "KNOX_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def knox(env, bunker_path):
    """Run a knox command against the test bunker."""
    runner = CliRunner()

    def run(*args, input=None):
        return runner.invoke(cli, ["-f", str(bunker_path), *args], input=input)

    return run


@pytest.fixture
def initialized(knox):
    assert knox("init").exit_code == 0
    assert knox("add", "alex", input="\n").exit_code == 0
    return knox


def last_line(result) -> str:
    return result.output.strip().splitlines()[-1]


def open_bunker(path):
    return CredentialStore.open(path, PassphraseCipher(PASSPHRASE))


# --- Test init ---

class TestInit:
    """Tests for knox init."""

    def test_init(self, knox, bunker_path):
        """Test init creates an empty encrypted bunker."""
        result = knox("init")
        assert result.exit_code == 0, result.output
        assert "Initialized bunker" in result.output
        data = bunker_path.read_bytes()
        assert data[0] == 0x02
        assert data[1] == FAST_LOG_N

    def test_init_twice(self, knox, bunker_path):
        """Test init refuses to overwrite a bunker."""
        knox("init")
        before = bunker_path.read_bytes()
        result = knox("init")
        assert result.exit_code == 1
        assert "Error: Bunker file already exists" in result.output
        assert bunker_path.read_bytes() == before

    def test_file_from_environment(self, env, tmp_path):
        """Test KNOX_FILE selects the bunker when -f is absent."""
        path = tmp_path / "from-env.bunker"
        env.setenv("KNOX_FILE", str(path))
        result = CliRunner().invoke(cli, ["init"])
        assert result.exit_code == 0, result.output
        assert path.exists()

    def test_prompted_passphrase(self, env, knox, bunker_path):
        """Test the passphrase is prompted with confirmation when not in the environment."""
        env.delenv("KNOX_PASSPHRASE")
        result = knox("init", input="s3cret\ns3cret\n")
        assert result.exit_code == 0, result.output
        assert knox("status", input="wrong\n").exit_code == 1
        assert knox("status", input="s3cret\n").exit_code == 0

    def test_empty_passphrase(self, env, knox, bunker_path):
        env.delenv("KNOX_PASSPHRASE")
        result = knox("init", input="\n\n")
        assert result.exit_code == 1
        assert "Passphrase is required" in result.output
        assert not bunker_path.exists()

    def test_missing_bunker(self, knox):
        """Test commands on a missing bunker point at knox init."""
        result = knox("status")
        assert result.exit_code == 1
        assert 'Run "knox init"' in result.output

    def test_wrong_passphrase(self, env, knox):
        knox("init")
        env.setenv("KNOX_PASSPHRASE", "something else")
        result = knox("status")
        assert result.exit_code == 1
        assert "wrong passphrase or corrupted file" in result.output


# --- Test keys ---

class TestKeys:
    """Tests for knox add/remove/status."""

    def test_add_generated(self, knox, bunker_path):
        """Test a blank answer generates a key."""
        knox("init")
        result = knox("add", "alex", input="\n")
        assert result.exit_code == 0, result.output
        name, npub = last_line(result).split()
        assert name == "alex"
        assert npub.startswith("npub1")
        with open_bunker(bunker_path) as store:
            assert npub_encode(store.get_key("alex").pubkey) == npub

    def test_add_existing_nsec(self, knox):
        """Test an imported nsec keeps its public key."""
        knox("init")
        nsec = new_nsec()
        result = knox("add", "alex", input=nsec + "\n")
        assert result.exit_code == 0, result.output
        assert last_line(result) == f"alex {npub_encode(get_public_key(nsec_decode(nsec)))}"

    def test_add_invalid_nsec(self, knox):
        knox("init")
        result = knox("add", "alex", input="nsec1nope\n")
        assert result.exit_code == 1

    def test_add_duplicate(self, initialized):
        result = initialized("add", "alex", input="\n")
        assert result.exit_code == 1
        assert 'Error: Key "alex" already exists.' in result.output

    def test_status_new(self, initialized):
        """Test a fresh key is reported as new."""
        result = initialized("status")
        assert result.exit_code == 0, result.output
        assert "alex (new)" in result.output

    def test_status_after_uri(self, initialized):
        initialized("uri", "alex", "wss://relay.example")
        assert "alex (1 unused URIs)" in initialized("status").output

    def test_remove(self, initialized, bunker_path):
        """Test remove drops the key and its URIs."""
        initialized("uri", "alex", "wss://relay.example")
        result = initialized("remove", "alex")
        assert result.exit_code == 0, result.output
        with open_bunker(bunker_path) as store:
            assert store.keys == []
            assert store.authorizations == []

    def test_remove_unknown(self, initialized):
        result = initialized("remove", "bob")
        assert result.exit_code == 1
        assert 'Key "bob" not found.' in result.output


# --- Test URIs ---

class TestUri:
    """Tests for knox uri/revoke."""

    def test_default_single_use(self, initialized, bunker_path):
        """Test a URI is single-use unless told otherwise."""
        result = initialized("uri", "alex", "wss://relay.example")
        assert result.exit_code == 0, result.output
        uri = last_line(result)
        assert uri.startswith("bunker://")
        secret = parse_qs(urlsplit(uri).query)["secret"][0]
        with open_bunker(bunker_path) as store:
            authorization = store.state.get_authorization(secret)
            assert authorization.max_uses == 1
            assert authorization.relays == ["wss://relay.example"]

    @pytest.mark.parametrize("args, expected", [
        (["-n", "3"], 3),
        (["--uses", "5"], 5),
        (["--unlimited"], None),
    ])
    def test_uses(self, initialized, bunker_path, args, expected):
        result = initialized("uri", "alex", "wss://relay.example", *args)
        assert result.exit_code == 0, result.output
        with open_bunker(bunker_path) as store:
            assert store.authorizations[0].max_uses == expected

    def test_expires(self, initialized, bunker_path):
        result = initialized("uri", "alex", "wss://relay.example", "--expires", "2999-01-01")
        assert result.exit_code == 0, result.output
        with open_bunker(bunker_path) as store:
            assert store.authorizations[0].expires_at.year == 2999

    def test_several_relays(self, initialized):
        result = initialized("uri", "alex", "wss://one.example", "wss://two.example")
        query = parse_qs(urlsplit(last_line(result)).query)
        assert query["relay"] == ["wss://one.example", "wss://two.example"]

    @pytest.mark.parametrize("args, message", [
        (["https://relay.example"], 'Invalid relay URL "https://relay.example"'),
        (["wss://relay.example", "-n", "0"], 'Invalid number of uses "0"'),
        (["wss://relay.example", "-n", "many"], 'Invalid number of uses "many"'),
        (["wss://relay.example", "--expires", "soon"], 'Invalid expiration date "soon"'),
        (["wss://relay.example", "--expires", "2000-01-01"], 'Invalid expiration date "2000-01-01"'),
    ])
    def test_invalid_input(self, initialized, bunker_path, args, message):
        """Test malformed arguments are rejected before the bunker changes."""
        before = bunker_path.read_bytes()
        result = initialized("uri", "alex", *args)
        assert result.exit_code == 1
        assert message in result.output
        assert bunker_path.read_bytes() == before

    def test_unknown_key(self, initialized):
        result = initialized("uri", "bob", "wss://relay.example")
        assert result.exit_code == 1
        assert 'Key "bob" not found.' in result.output

    def test_relay_required(self, initialized):
        assert initialized("uri", "alex").exit_code == 2

    def test_revoke(self, initialized, bunker_path):
        """Test revoke deletes the authorization once."""
        uri = last_line(initialized("uri", "alex", "wss://relay.example"))
        secret = parse_qs(urlsplit(uri).query)["secret"][0]
        result = initialized("revoke", secret)
        assert result.exit_code == 0, result.output
        assert "Revoked" in result.output
        again = initialized("revoke", secret)
        assert again.exit_code == 1
        assert "Authorization not found." in again.output


# --- Test export ---

class TestExport:
    """Tests for knox export."""

    def test_csv_encrypted(self, initialized):
        """Test the default export wraps keys as ncryptsec."""
        result = initialized("export")
        assert result.exit_code == 0, result.output
        name, sec, created_at = last_line(result).split(",")
        assert name == "alex"
        assert sec.startswith("ncryptsec1")
        assert created_at

    def test_jsonl(self, initialized):
        result = initialized("export", "--format", "jsonl")
        record = orjson.loads(last_line(result))
        assert record["name"] == "alex"
        assert record["sec"].startswith("ncryptsec1")

    def test_keys_insecure(self, initialized, bunker_path):
        """Test --keys --insecure prints bare nsec keys."""
        result = initialized("export", "--keys", "--insecure")
        assert result.exit_code == 0, result.output
        nsec = last_line(result)
        with open_bunker(bunker_path) as store:
            assert nsec == store.get_key("alex").sec.to_nsec()

    def test_ncryptsec_decrypts(self, initialized, bunker_path):
        """Test exported ncryptsec unlocks with the bunker passphrase."""
        ncryptsec = last_line(initialized("export", "--keys"))
        with open_bunker(bunker_path) as store:
            key = store.get_key("alex")
            assert bytes(store.cipher.decrypt_key(ncryptsec)) == key.sec.reveal()

    def test_unknown_format(self, initialized):
        assert initialized("export", "--format", "xml").exit_code == 2


# --- Test start ---

class TestStart:
    """Tests for knox start."""

    def test_no_transport(self, initialized, monkeypatch):
        """Test start fails cleanly without a signer transport."""
        monkeypatch.setattr("knox.signer.entry_points", lambda group: [])
        result = initialized("start")
        assert result.exit_code == 1
        assert "No signer transport installed" in result.output

    def test_no_authorizations(self, initialized, monkeypatch):
        monkeypatch.setattr(cli_module, "load_session_factory", lambda name=None: FakeSession)
        result = initialized("start")
        assert result.exit_code == 0
        assert "No authorizations found" in result.output

    def test_file_lost(self, initialized, monkeypatch):
        """Test losing the bunker file ends the daemon with an error."""
        ran = []

        class LostReconciler:
            def __init__(self, store, factory):
                ran.append(factory)

            async def run(self):
                raise BunkerFileLost("gone")

        monkeypatch.setattr(cli_module, "load_session_factory", lambda name=None: FakeSession)
        monkeypatch.setattr(cli_module, "SessionReconciler", LostReconciler)
        initialized("uri", "alex", "wss://relay.example")
        result = initialized("start")
        assert ran == [FakeSession]
        assert result.exit_code == 1
        assert "Bunker file removed or renamed." in result.output


# --- Test parsing and configuration ---

class TestParsers:
    """Tests for command argument parsers."""

    def test_relay(self):
        assert parse_relay("wss://relay.example/path") == "wss://relay.example/path"
        for relay in ("ws://relay.example", "wss://", "relay.example"):
            with pytest.raises(InvalidRelayURLError):
                parse_relay(relay)

    def test_uses(self):
        assert parse_uses("2") == 2
        with pytest.raises(InvalidUseCountError):
            parse_uses("-1")

    def test_expires_naive_is_utc(self):
        assert parse_expires("2999-01-01T10:00:00").utcoffset().total_seconds() == 0

    def test_expires_past(self):
        with pytest.raises(InvalidDateError):
            parse_expires("1999-12-31")


class TestConfig:
    """Tests for KnoxConfig.from_env."""

    def test_defaults(self, env):
        env.delenv("KNOX_LOG_N")
        config = KnoxConfig.from_env()
        assert config.file == "knox.bunker"
        assert config.log_n == 16
        assert config.key_security == 2
        assert config.uri_scheme == "bunker"
        assert config.log_level == "INFO"

    def test_overrides(self, env):
        env.setenv("KNOX_URI_SCHEME", "NostrConnect")
        env.setenv("KNOX_LOG_LEVEL", "debug")
        env.setenv("KNOX_KEY_SECURITY", "1")
        config = KnoxConfig.from_env()
        assert config.log_n == FAST_LOG_N
        assert config.uri_scheme == "nostrconnect"
        assert config.log_level == "DEBUG"
        assert config.key_security == 1

    @pytest.mark.parametrize("name, value", [
        ("KNOX_LOG_N", "30"),
        ("KNOX_KEY_SECURITY", "7"),
        ("KNOX_URI_SCHEME", "not a scheme"),
        ("KNOX_LOG_LEVEL", "LOUD"),
    ])
    def test_invalid(self, env, name, value):
        env.setenv(name, value)
        with pytest.raises(ValidationError):
            KnoxConfig.from_env()

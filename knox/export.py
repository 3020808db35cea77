"""
Key export — renders the bunker's keys for backup or migration.

By default each key is password-wrapped as ``ncryptsec1...`` with the
bunker passphrase; ``insecure`` emits the raw ``nsec1...`` instead.
"""
import csv
import io
import logging
from collections.abc import Iterator

import orjson

from .crypto import PassphraseCipher
from .state import KnoxKey

logger = logging.getLogger("knox.export")

FORMATS = ("csv", "jsonl")


def export_secret(key: KnoxKey, cipher: PassphraseCipher, insecure: bool = False, log_n: int = 16) -> str:
    if insecure:
        return key.sec.to_nsec()
    with key.sec.unscramble() as plain:
        return cipher.encrypt_key(plain, log_n=log_n)


def export_keys(
    keys: list[KnoxKey],
    cipher: PassphraseCipher,
    fmt: str = "csv",
    keys_only: bool = False,
    insecure: bool = False,
    log_n: int = 16,
) -> Iterator[str]:
    """Yield one output line per key.

    Raises:
        ValueError: Unsupported format.
    """
    if fmt not in FORMATS:
        raise ValueError(f'Invalid format "{fmt}". Supported formats: {", ".join(FORMATS)}')
    if insecure:
        logger.warning("Exporting %d key(s) without encryption", len(keys))
    for key in keys:
        sec = export_secret(key, cipher, insecure=insecure, log_n=log_n)
        if keys_only:
            yield sec
            continue
        created_at = key.created_at.isoformat()
        if fmt == "jsonl":
            yield orjson.dumps(
                {"name": key.name, "sec": sec, "created_at": created_at}
            ).decode("utf-8")
        else:
            buffer = io.StringIO()
            csv.writer(buffer, lineterminator="").writerow([key.name, sec, created_at])
            yield buffer.getvalue()

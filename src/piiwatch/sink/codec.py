"""Batch encoding: JSON Lines, GZIP, then AES-GCM envelope encryption.

A stored object is laid out as::

    ┌───────┬─────┬───────────┬──────┬─────────────┬────────────┬────────────┐
    │ PIIW  │ ver │ key nonce │ klen │ wrapped key │ data nonce │ ciphertext │
    │ 4 B   │ 1 B │ 12 B      │ 2 B  │ klen B      │ 12 B       │ ...        │
    └───────┴─────┴───────────┴──────┴─────────────┴────────────┴────────────┘

Each object gets a fresh 256-bit data key. The data key encrypts the
compressed batch and is itself encrypted ("wrapped") under the master key
named by the key reference. Both layers bind the object key as associated
data, so an object renamed in storage fails to decrypt.

The master key is resolved from its reference on every encode/decode and is
never stored on the codec.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import os
import struct
from collections.abc import Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from piiwatch.core.errors import ErrorCategory, InvalidConfigError, PiiWatchError
from piiwatch.core.models import LogRecord
from piiwatch.core.secrets import SecretsResolver
from piiwatch.core.timestamps import from_iso8601

MAGIC = b"PIIW"
FORMAT_VERSION = 1
NONCE_SIZE = 12
DATA_KEY_SIZE = 32

_HEADER = struct.Struct(">4sB12sH")


class CorruptObjectError(PiiWatchError):
    """A stored object could not be authenticated or parsed."""

    default_category = ErrorCategory.DATA_SHAPE
    default_retryable = False


# ── Plaintext layer ──────────────────────────────────────────────────────


def encode_records(records: Iterable[LogRecord]) -> bytes:
    """Serialize records as GZIP-compressed JSON Lines, preserving order."""
    lines = [
        json.dumps(
            {
                "timestamp": record.timestamp.isoformat(),
                "source": record.source,
                "payload": base64.b64encode(record.payload).decode("ascii"),
            },
            separators=(",", ":"),
        )
        for record in records
    ]
    # mtime=0 keeps the output a pure function of the records
    return gzip.compress("\n".join(lines).encode("utf-8"), mtime=0)


def decode_records(data: bytes) -> list[LogRecord]:
    """Inverse of :func:`encode_records`."""
    try:
        text = gzip.decompress(data).decode("utf-8")
    except (OSError, EOFError, UnicodeDecodeError) as exc:
        raise CorruptObjectError(f"Batch payload is not valid gzip JSON Lines: {exc}", cause=exc) from exc
    records = []
    for line in text.splitlines():
        if not line:
            continue
        try:
            item = json.loads(line)
            records.append(
                LogRecord(
                    timestamp=from_iso8601(item["timestamp"]),
                    source=item["source"],
                    payload=base64.b64decode(item["payload"]),
                )
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise CorruptObjectError(f"Batch payload has a malformed record: {exc}", cause=exc) from exc
    return records


# ── Envelope encryption ──────────────────────────────────────────────────


class EnvelopeCipher:
    """AES-GCM envelope encryption under a master key reference.

    Args:
        key_ref: Reference to a base64-encoded 128/192/256-bit master key
            (e.g. ``secret:env:PIIWATCH_MASTER_KEY``)
        resolver: Resolves the reference at use time
    """

    def __init__(self, key_ref: str, resolver: SecretsResolver | None = None):
        self.key_ref = key_ref
        self._resolver = resolver or SecretsResolver()

    def _master(self) -> AESGCM:
        encoded = self._resolver.resolve_secret_value(self.key_ref)
        try:
            key = base64.b64decode(encoded.get_secret(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidConfigError("encryption_key_ref", self.key_ref, "Master key is not valid base64") from exc
        if len(key) not in (16, 24, 32):
            raise InvalidConfigError(
                "encryption_key_ref", self.key_ref, f"Master key must be 16, 24 or 32 bytes, got {len(key)}"
            )
        return AESGCM(key)

    def check(self) -> None:
        """Resolve and validate the master key without using it."""
        self._master()

    def encrypt(self, plaintext: bytes, associated_data: bytes) -> bytes:
        master = self._master()
        data_key = AESGCM.generate_key(bit_length=DATA_KEY_SIZE * 8)
        key_nonce = os.urandom(NONCE_SIZE)
        data_nonce = os.urandom(NONCE_SIZE)
        wrapped = master.encrypt(key_nonce, data_key, associated_data)
        ciphertext = AESGCM(data_key).encrypt(data_nonce, plaintext, associated_data)
        return _HEADER.pack(MAGIC, FORMAT_VERSION, key_nonce, len(wrapped)) + wrapped + data_nonce + ciphertext

    def decrypt(self, blob: bytes, associated_data: bytes) -> bytes:
        if len(blob) < _HEADER.size:
            raise CorruptObjectError("Object too short for envelope header")
        magic, version, key_nonce, wrapped_len = _HEADER.unpack_from(blob)
        if magic != MAGIC or version != FORMAT_VERSION:
            raise CorruptObjectError(f"Unknown object format (magic={magic!r}, version={version})")
        offset = _HEADER.size
        wrapped = blob[offset : offset + wrapped_len]
        offset += wrapped_len
        data_nonce = blob[offset : offset + NONCE_SIZE]
        ciphertext = blob[offset + NONCE_SIZE :]
        if len(wrapped) != wrapped_len or len(data_nonce) != NONCE_SIZE:
            raise CorruptObjectError("Object truncated")
        try:
            data_key = self._master().decrypt(key_nonce, wrapped, associated_data)
            return AESGCM(data_key).decrypt(data_nonce, ciphertext, associated_data)
        except InvalidTag as exc:
            raise CorruptObjectError("Object failed authentication (wrong key or tampered)", cause=exc) from exc


class BatchCodec:
    """Turns a batch of records into a stored object body and back."""

    def __init__(self, cipher: EnvelopeCipher):
        self.cipher = cipher

    def compress(self, records: Iterable[LogRecord]) -> bytes:
        return encode_records(records)

    def seal(self, compressed: bytes, object_key: str) -> bytes:
        return self.cipher.encrypt(compressed, object_key.encode("utf-8"))

    def encode(self, records: Iterable[LogRecord], object_key: str) -> bytes:
        return self.seal(self.compress(records), object_key)

    def decode(self, blob: bytes, object_key: str) -> list[LogRecord]:
        return decode_records(self.cipher.decrypt(blob, object_key.encode("utf-8")))


def generate_master_key() -> str:
    """A fresh base64-encoded 256-bit master key."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


__all__ = [
    "CorruptObjectError",
    "encode_records",
    "decode_records",
    "EnvelopeCipher",
    "BatchCodec",
    "generate_master_key",
]

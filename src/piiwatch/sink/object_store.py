"""Cold storage for flushed batches.

Objects are immutable: a key is written once and never rewritten with
different content. Writing identical bytes to an existing key succeeds
without change, which is what makes a retried flush idempotent.

ARCHITECTURE
────────────
::

    ObjectStore (Protocol)
      ├── .put(key, data, created_at) ─ atomic, write-once
      ├── .get(key) / .head(key)
      ├── .list()                     ─ visible objects, oldest first
      ├── .delete(key) / .set_tier(key, tier)
      └── .apply_retention(now)        ─ expire / tier per RetentionPolicy

    LocalObjectStore     ─ one directory per bucket, data file + JSON sidecar
    InMemoryObjectStore  ─ dict-backed, for tests and local runs

An object is visible once its sidecar exists; the sidecar is renamed into
place after the data file, so a crash mid-write never exposes a partial
object.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from piiwatch.core.errors import ErrorCategory, PiiWatchError, StorageWriteError
from piiwatch.core.logging import get_logger
from piiwatch.core.models import RetentionPolicy, StorageObject, StorageTier
from piiwatch.core.timestamps import utc_now

logger = get_logger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_META_SUFFIX = ".meta.json"


class ObjectConflictError(PiiWatchError):
    """A put tried to replace an existing object with different content."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class ObjectNotFoundError(PiiWatchError, KeyError):
    """No visible object under the requested key."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


@dataclass
class RetentionReport:
    """Outcome of one retention pass."""

    expired: list[str] = field(default_factory=list)
    transitioned: dict[str, StorageTier] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        return len(self.expired) + len(self.transitioned)


def validate_key(key: str) -> str:
    if not _KEY_RE.match(key) or key.endswith(_META_SUFFIX):
        raise ValueError(f"Invalid object key: {key!r}")
    return key


@runtime_checkable
class ObjectStore(Protocol):
    """Storage location the sink writes to and the scanner reads from."""

    bucket: str
    retention: RetentionPolicy

    def put(self, key: str, data: bytes, *, record_count: int = 0, created_at: datetime | None = None) -> StorageObject:
        ...

    def get(self, key: str) -> bytes:
        ...

    def head(self, key: str) -> StorageObject | None:
        ...

    def list(self) -> list[StorageObject]:
        ...

    def delete(self, key: str) -> None:
        ...

    def set_tier(self, key: str, tier: StorageTier) -> StorageObject:
        ...

    def apply_retention(self, now: datetime | None = None) -> RetentionReport:
        ...


class _RetentionMixin:
    """``apply_retention`` on top of ``list``/``delete``/``set_tier``."""

    bucket: str
    retention: RetentionPolicy

    def apply_retention(self, now: datetime | None = None) -> RetentionReport:
        """Expire or re-tier every object according to the retention policy."""
        now = now or utc_now()
        report = RetentionReport()
        for obj in self.list():  # type: ignore[attr-defined]
            target = self.retention.tier_for(obj.created_at, now)
            if target is None:
                self.delete(obj.key)  # type: ignore[attr-defined]
                report.expired.append(obj.key)
            elif target != obj.tier:
                self.set_tier(obj.key, target)  # type: ignore[attr-defined]
                report.transitioned[obj.key] = target
        if report.changed:
            logger.info(
                "retention_applied",
                bucket=self.bucket,
                expired=len(report.expired),
                transitioned=len(report.transitioned),
            )
        return report


class InMemoryObjectStore(_RetentionMixin):
    """Dict-backed object store."""

    def __init__(self, bucket: str, retention: RetentionPolicy | None = None):
        self.bucket = bucket
        self.retention = retention or RetentionPolicy.logs()
        self._objects: dict[str, tuple[StorageObject, bytes]] = {}
        self._lock = threading.Lock()
        self.put_calls = 0

    def put(self, key: str, data: bytes, *, record_count: int = 0, created_at: datetime | None = None) -> StorageObject:
        validate_key(key)
        with self._lock:
            self.put_calls += 1
            existing = self._objects.get(key)
            if existing is not None:
                if existing[1] == data:
                    return existing[0]
                raise ObjectConflictError(f"Object {key} already exists with different content")
            obj = StorageObject(
                bucket=self.bucket,
                key=key,
                created_at=created_at or utc_now(),
                size=len(data),
                record_count=record_count,
            )
            self._objects[key] = (obj, bytes(data))
            return obj

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise ObjectNotFoundError(f"No object {key} in {self.bucket}")
            return self._objects[key][1]

    def head(self, key: str) -> StorageObject | None:
        with self._lock:
            entry = self._objects.get(key)
            return entry[0] if entry else None

    def list(self) -> list[StorageObject]:
        with self._lock:
            objects = [obj for obj, _ in self._objects.values()]
        return sorted(objects, key=lambda o: (o.created_at, o.key))

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def set_tier(self, key: str, tier: StorageTier) -> StorageObject:
        with self._lock:
            if key not in self._objects:
                raise ObjectNotFoundError(f"No object {key} in {self.bucket}")
            obj, data = self._objects[key]
            updated = StorageObject(
                bucket=obj.bucket,
                key=obj.key,
                created_at=obj.created_at,
                size=obj.size,
                record_count=obj.record_count,
                tier=tier,
            )
            self._objects[key] = (updated, data)
            return updated


class LocalObjectStore(_RetentionMixin):
    """Filesystem object store: ``<root>/<bucket>/<key>`` plus a metadata sidecar."""

    def __init__(self, root: str | Path, bucket: str, retention: RetentionPolicy | None = None):
        self.bucket = bucket
        self.retention = retention or RetentionPolicy.logs()
        self.directory = Path(root) / bucket
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _data_path(self, key: str) -> Path:
        return self.directory / validate_key(key)

    def _meta_path(self, key: str) -> Path:
        return self.directory / f"{validate_key(key)}{_META_SUFFIX}"

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def put(self, key: str, data: bytes, *, record_count: int = 0, created_at: datetime | None = None) -> StorageObject:
        with self._lock:
            existing = self.head(key)
            if existing is not None:
                if self._data_path(key).read_bytes() == data:
                    return existing
                raise ObjectConflictError(f"Object {key} already exists with different content")
            obj = StorageObject(
                bucket=self.bucket,
                key=key,
                created_at=created_at or utc_now(),
                size=len(data),
                record_count=record_count,
            )
            try:
                self._atomic_write(self._data_path(key), data)
                self._atomic_write(self._meta_path(key), json.dumps(obj.to_dict()).encode("utf-8"))
            except OSError as exc:
                raise StorageWriteError(f"Writing {key} failed: {exc}", cause=exc).with_context(
                    component="object_store", object_key=key
                ) from exc
            return obj

    def get(self, key: str) -> bytes:
        if self.head(key) is None:
            raise ObjectNotFoundError(f"No object {key} in {self.bucket}")
        return self._data_path(key).read_bytes()

    def head(self, key: str) -> StorageObject | None:
        meta = self._meta_path(key)
        if not meta.is_file():
            return None
        return StorageObject.from_dict(json.loads(meta.read_text("utf-8")))

    def list(self) -> list[StorageObject]:
        objects = [
            StorageObject.from_dict(json.loads(path.read_text("utf-8")))
            for path in self.directory.glob(f"*{_META_SUFFIX}")
        ]
        return sorted(objects, key=lambda o: (o.created_at, o.key))

    def delete(self, key: str) -> None:
        with self._lock:
            # Sidecar first: the object disappears before its data does.
            self._meta_path(key).unlink(missing_ok=True)
            self._data_path(key).unlink(missing_ok=True)

    def set_tier(self, key: str, tier: StorageTier) -> StorageObject:
        with self._lock:
            obj = self.head(key)
            if obj is None:
                raise ObjectNotFoundError(f"No object {key} in {self.bucket}")
            updated = StorageObject.from_dict({**obj.to_dict(), "tier": tier.value})
            self._atomic_write(self._meta_path(key), json.dumps(updated.to_dict()).encode("utf-8"))
            return updated


__all__ = [
    "ObjectConflictError",
    "ObjectNotFoundError",
    "RetentionReport",
    "ObjectStore",
    "InMemoryObjectStore",
    "LocalObjectStore",
    "validate_key",
]

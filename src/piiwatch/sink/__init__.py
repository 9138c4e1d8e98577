"""Batch delivery: buffer → compressed, encrypted storage objects.

WHY
───
Classification runs on a cadence over stored objects, while logs arrive
continuously. The sink turns the stream into size/time bounded objects
that are written atomically and never lost on a failed write.

ARCHITECTURE
────────────
::

    BatchDeliverySink(buffer, store, codec)
      ├── codec.BatchCodec       ─ JSON Lines → GZIP → AES-GCM envelope
      └── object_store.ObjectStore ─ write-once objects + retention
"""

from piiwatch.sink.codec import BatchCodec, EnvelopeCipher
from piiwatch.sink.delivery import BatchDeliverySink
from piiwatch.sink.object_store import InMemoryObjectStore, LocalObjectStore, ObjectStore

__all__ = [
    "BatchCodec",
    "EnvelopeCipher",
    "BatchDeliverySink",
    "ObjectStore",
    "InMemoryObjectStore",
    "LocalObjectStore",
]

"""
The store module provides a central, type-safe repository of the cluster
objects the package operator reads and writes.

- Uses NamedResource as the key for all objects.
- Stores values as dataclass instances from manifest.py for type safety.
- Uses resource versions for optimistic concurrency and a separate write path
  for status updates.

This abstract interface allows for various implementations (in-memory, backed
by a kubernetes API server, etc.).
"""

from .store import Store, StoreEvent, DeletionPropagation
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "DeletionPropagation",
    "InMemoryStore",
]

"""
The store module provides the collaborators the chart controller reconciles
against: a type-safe object store standing in for cluster state, read caches
over it, and an owner-scoped applier that writes desired object sets.

- Uses NamedResource as the key for all objects.
- Stores values as dataclass instances from manifest.py for type safety.
- Cluster backed implementations can replace the in-memory ones behind the
  same interfaces.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .cache import ObjectCache, StoreObjectCache
from .apply import Applier, StoreApplier, Patcher

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "ObjectCache",
    "StoreObjectCache",
    "Applier",
    "StoreApplier",
    "Patcher",
]

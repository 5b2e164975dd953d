"""
Persistence layer — the narrow interfaces the relay core depends on.

Seen-store backends (has_seen / mark_seen per item and scope):
  - In-memory (dict of sets, for development/testing)
  - File (JSON on disk, for small deployments)
  - Redis (one set per scope, for production)

Circuit-state stores (save / load per call category):
  - In-memory
  - File (JSON on disk)

Quick start:
  from database import create_seen_store
  store = create_seen_store("file", data_dir="./data")
  if not await store.has_seen("123", "topic-a"): ...
"""
from database.seen_store import (
    SeenStore, InMemorySeenStore, FileSeenStore, RedisSeenStore, create_seen_store,
)
from database.circuit_store import (
    CircuitStateStore, InMemoryCircuitStateStore, FileCircuitStateStore, create_circuit_store,
)

__all__ = [
    # Seen store
    "SeenStore", "InMemorySeenStore", "FileSeenStore", "RedisSeenStore", "create_seen_store",
    # Circuit state
    "CircuitStateStore", "InMemoryCircuitStateStore", "FileCircuitStateStore", "create_circuit_store",
]

from .base import KeyValueStore
from .memory_store import InMemoryStore

__all__ = ["InMemoryStore", "KeyValueStore"]

# src/velvet/history/repositories/base.py
from __future__ import annotations

from typing import Any, Protocol


class KeyValueStore(Protocol):
    """
    Interface for the persistence collaborator. Values are JSON-compatible
    structures; how they are serialized at rest is up to the implementation.
    """

    async def get(self, key: str, default: Any = None) -> Any:
        """
        Return the value stored under `key`, or `default` when absent.
        """
        ...

    async def set(self, key: str, value: Any) -> None:
        """
        Store `value` under `key`, replacing any previous value.
        """
        ...

    async def delete(self, key: str) -> bool:
        """
        Remove `key`. Returns True if a value was removed.
        """
        ...

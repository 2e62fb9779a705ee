"""
Registry
========

Explicitly owned id -> object map. One instance is injected into each
component that tracks live resources (sessions, worktrees) so that existence
checks have a single source of truth.
"""

from typing import Dict, Generic, Iterator, List, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Registry(Generic[T]):
    """Keyed store with a single writer per key."""

    def __init__(self, name: str = "registry"):
        self.name = name
        self._entries: Dict[str, T] = {}

    def register(self, key: str, value: T) -> None:
        """
        Add an entry.

        Raises:
            KeyError: If the key is already registered
        """
        if key in self._entries:
            raise KeyError(f"{self.name}: '{key}' is already registered")
        self._entries[key] = value
        logger.debug(f"{self.name}: registered {key}")

    def get(self, key: str) -> Optional[T]:
        return self._entries.get(key)

    def remove(self, key: str) -> Optional[T]:
        """Remove and return an entry; missing keys are ignored."""
        value = self._entries.pop(key, None)
        if value is not None:
            logger.debug(f"{self.name}: removed {key}")
        return value

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def values(self) -> List[T]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

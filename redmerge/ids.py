"""
Dual identifiers for document blocks.

Engines hand out opaque handles that change on every load. Producers refer to
blocks by stable sequence keys (b001, b002, ...) assigned in traversal order,
so two loads of the same document agree on keys even when handles differ.
"""

import re
import uuid
from typing import Dict, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class IdManager:
    def __init__(self, prefix: str = "b", width: int = 3):
        self.prefix = prefix
        self.width = width
        self._key_pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
        self._handle_to_key: Dict[str, str] = {}
        self._key_to_handle: Dict[str, str] = {}
        self._counter = 0

    def __len__(self) -> int:
        return len(self._handle_to_key)

    def __contains__(self, handle: str) -> bool:
        return handle in self._handle_to_key

    @property
    def count(self) -> int:
        return len(self._handle_to_key)

    def format_key(self, number: int) -> str:
        # Zero-padded to the minimum width; wider numbers are never truncated.
        return f"{self.prefix}{number:0{self.width}d}"

    def is_key(self, value: Optional[str]) -> bool:
        return bool(value) and self._key_pattern.match(value) is not None

    def _store(self, handle: str, key: str):
        self._handle_to_key[handle] = key
        self._key_to_handle[key] = handle

    def assign_new(self) -> Tuple[str, str]:
        """Creates a fresh (handle, key) pair."""
        handle = str(uuid.uuid4())
        return handle, self.register_existing(handle)

    def register_existing(self, handle: str) -> str:
        """Assigns the next key to an engine handle. Registering twice returns the same key."""
        existing = self._handle_to_key.get(handle)
        if existing is not None:
            return existing

        self._counter += 1
        key = self.format_key(self._counter)
        self._store(handle, key)
        return key

    def get_key(self, handle: str) -> Optional[str]:
        return self._handle_to_key.get(handle)

    def get_handle(self, key: str) -> Optional[str]:
        return self._key_to_handle.get(key)

    def resolve(self, id_or_key: Optional[str]) -> Optional[str]:
        """
        Returns the engine handle for a stable key or a raw handle.

        Not-found is an ordinary outcome (handles go stale across reloads), so
        this returns None instead of raising.
        """
        if not id_or_key:
            return None
        if self.is_key(id_or_key):
            return self._key_to_handle.get(id_or_key)
        if id_or_key in self._handle_to_key:
            return id_or_key
        return None

    def export_mapping(self) -> Dict[str, str]:
        """handle -> key table, in assignment order."""
        return dict(self._handle_to_key)

    def import_mapping(self, mapping: Dict[str, str]):
        """
        Loads a previously exported table. The counter moves to the highest
        imported key so newly assigned keys cannot collide with imported ones.
        """
        highest = self._counter
        for handle, key in mapping.items():
            match = self._key_pattern.match(key or "")
            if not match:
                raise ValueError(f"Malformed stable key in mapping: {key!r}")
            self._store(handle, key)
            highest = max(highest, int(match.group(1)))

        logger.debug("Imported id mapping", entries=len(mapping), counter=highest)
        self._counter = highest

    def clear(self):
        self._handle_to_key.clear()
        self._key_to_handle.clear()
        self._counter = 0

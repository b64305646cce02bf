"""
In-memory engine for tests and ephemeral sessions. Data is lost on exit.
"""

import itertools
from typing import Dict, List, Optional, Tuple

from whatsapp_manager.core.engine import Engine, is_under, parent_of


class MemoryEngine(Engine):
    def __init__(self):
        # key -> (value, modification sequence)
        self._data: Dict[str, Tuple[str, int]] = {}
        self._seq = itertools.count(1)

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: Optional[str]) -> bool:
        if value is None:
            self._data.pop(key, None)
            return True
        current = self._data.get(key)
        if current and current[0] == value:
            return True
        self._data[key] = (value, next(self._seq))
        return True

    async def list(self, prefix: str, offset: int = 0, limit: int = 50) -> List[str]:
        namespace = prefix.rstrip("/")
        items = [
            (seq, key)
            for key, (_, seq) in self._data.items()
            if parent_of(key) == namespace
        ]
        items.sort(key=lambda item: (-item[0], item[1]))
        return [key for _, key in items[offset : offset + limit]]

    async def delete_prefix(self, prefix: str) -> bool:
        for key in [k for k in self._data if is_under(k, prefix)]:
            del self._data[key]
        return True

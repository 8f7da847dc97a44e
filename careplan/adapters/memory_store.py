# careplan/adapters/memory_store.py
from __future__ import annotations

from typing import Dict, List, Optional


class MemoryStore:
    """Dict-backed KeyValueStore for tests and throwaway demo runs."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(k for k in self.data if k.startswith(prefix))

"""Memory backend that remembers nothing (MEMORY_BACKEND=none)."""

from __future__ import annotations

from agentgate.memory.interfaces import MemoryItem


class NoopMemoryStore:
    async def recall(self, query: str, limit: int = 5, *, scope: str = "") -> list[MemoryItem]:
        return []

    async def save(self, scope: str, role: str, content: str) -> str:
        return ""

    async def store(self, key: str, content: str, *, scope: str = "") -> str:
        return key

    async def forget(self, key: str, *, scope: str = "") -> bool:
        return False

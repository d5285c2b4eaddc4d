"""Protocol interfaces for swappable memory backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class MemoryItem:
    key: str
    content: str
    category: str = "conversation"
    scope: str = ""
    created_at: str = ""
    score: float = 0.0
    metadata: dict[str, object] = field(default_factory=dict)


class MemoryStore(Protocol):
    async def recall(self, query: str, limit: int = 5, *, scope: str = "") -> list[MemoryItem]: ...

    async def save(self, scope: str, role: str, content: str) -> str: ...

    async def store(self, key: str, content: str, *, scope: str = "") -> str: ...

    async def forget(self, key: str, *, scope: str = "") -> bool: ...

"""Conversation sessions: turns, cache-window pruning and compaction.

Sessions are immutable values. ``record_turn``, ``maybe_prune`` and
``compact`` return new sessions so a caller that hits an error part-way
through a cycle can keep the previous value untouched.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agentgate.orchestrator.tokens import estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "[summary of earlier conversation]"
_SUMMARY_LINE_CHARS = 160


@dataclass(frozen=True, slots=True)
class Turn:
    role: str
    content: str
    token_count: int
    pinned: bool = False
    summary: bool = False

    @classmethod
    def make(cls, role: str, content: str, *, pinned: bool = False) -> Turn:
        return cls(role=role, content=content, token_count=estimate_tokens(content), pinned=pinned)

    def to_message(self) -> dict[str, str]:
        role = "system" if self.summary else self.role
        return {"role": role, "content": self.content}


@dataclass(frozen=True, slots=True)
class CacheWindow:
    started_at: datetime
    ttl: timedelta

    def expired(self, now: datetime) -> bool:
        return now - self.started_at > self.ttl


@dataclass(frozen=True, slots=True)
class Session:
    key: str
    history: tuple[Turn, ...] = ()
    bootstrap_sections: tuple[Any, ...] = ()
    cache_window_started_at: datetime | None = None
    token_budget: int = 32000

    @property
    def history_tokens(self) -> int:
        return sum(turn.token_count for turn in self.history)

    def cache_window(self, ttl: timedelta, now: datetime) -> CacheWindow:
        return CacheWindow(started_at=self.cache_window_started_at or now, ttl=ttl)


def record_turn(session: Session, turn: Turn) -> Session:
    return replace(session, history=(*session.history, turn))


def touch_cache(session: Session, now: datetime) -> Session:
    return replace(session, cache_window_started_at=now)


def maybe_prune(
    session: Session,
    cache_window: CacheWindow,
    *,
    now: datetime,
    min_retained_turns: int,
) -> Session:
    """Drop stale history once the backend's prompt cache has expired.

    Keeps the last ``min_retained_turns`` turns plus every pinned turn and
    restarts the window. Returns ``session`` itself when the window is live.
    """
    if session.cache_window_started_at is None:
        return replace(session, cache_window_started_at=now)
    if not cache_window.expired(now):
        return session
    keep_from = max(0, len(session.history) - max(0, min_retained_turns))
    kept = tuple(
        turn
        for index, turn in enumerate(session.history)
        if index >= keep_from or turn.pinned
    )
    if len(kept) != len(session.history):
        logger.info(
            "Cache window expired for %s; pruned %d turns",
            session.key,
            len(session.history) - len(kept),
        )
    return replace(session, history=kept, cache_window_started_at=now)


Summarizer = Callable[[Sequence[Turn], int], str]


def summarize_turns(turns: Sequence[Turn], max_tokens: int) -> str:
    """Extractive summary: the opening of each turn, clipped to ``max_tokens``."""
    lines = [SUMMARY_HEADER]
    for turn in turns:
        text = " ".join(turn.content.split())
        if turn.summary and text.startswith(SUMMARY_HEADER):
            text = text[len(SUMMARY_HEADER) :].strip()
        if len(text) > _SUMMARY_LINE_CHARS:
            text = text[: _SUMMARY_LINE_CHARS - 3] + "..."
        lines.append(f"- {turn.role}: {text}")
    return "\n".join(lines)[: max(1, max_tokens) * 4]


def _runs(history: Sequence[Turn]) -> list[tuple[int, int]]:
    """Contiguous runs of non-pinned turns, oldest first. The last turn is excluded."""
    runs: list[tuple[int, int]] = []
    start: int | None = None
    for index, turn in enumerate(history[:-1]):
        if turn.pinned:
            if start is not None:
                runs.append((start, index))
                start = None
            continue
        if start is None:
            start = index
    if start is not None:
        runs.append((start, len(history) - 1))
    return runs


def compact(
    session: Session,
    *,
    fixed_tokens: int,
    budget: int,
    summary_max_tokens: int,
    summarizer: Summarizer = summarize_turns,
) -> Session | None:
    """Summarize the oldest non-pinned runs until the session fits ``budget``.

    Returns None when no run can be reduced any further.
    """
    history = list(session.history)
    while fixed_tokens + sum(turn.token_count for turn in history) > budget:
        compacted = False
        for start, end in _runs(history):
            run = history[start:end]
            run_tokens = sum(turn.token_count for turn in run)
            if run_tokens <= 1:
                continue
            others = sum(turn.token_count for turn in history) - run_tokens
            available = budget - fixed_tokens - others
            target = min(summary_max_tokens, run_tokens - 1)
            if available >= 1:
                target = min(target, available)
            target = max(1, target)
            text = summarizer(run, target)
            count = estimate_tokens(text)
            if count >= run_tokens:
                continue
            history[start:end] = [
                Turn(role="system", content=text, token_count=count, summary=True)
            ]
            compacted = True
            break
        if not compacted:
            return None
    if len(history) == len(session.history):
        return session
    logger.info(
        "Compacted session %s from %d to %d turns",
        session.key,
        len(session.history),
        len(history),
    )
    return replace(session, history=tuple(history))


@dataclass(slots=True)
class SessionStore:
    """In-process sessions keyed by identity, optionally persisted as JSON."""

    token_budget: int = 32000
    _sessions: dict[str, Session] = field(default_factory=dict)

    def get_or_create(self, key: str) -> Session:
        session = self._sessions.get(key)
        if session is None:
            session = Session(key=key, token_budget=self.token_budget)
            self._sessions[key] = session
        return session

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def put(self, session: Session) -> None:
        self._sessions[session.key] = session

    def reset(self, key: str) -> None:
        self._sessions.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._sessions)

    def save(self, path: Path) -> None:
        payload = {
            key: {
                "history": [
                    {
                        "role": turn.role,
                        "content": turn.content,
                        "token_count": turn.token_count,
                        "pinned": turn.pinned,
                        "summary": turn.summary,
                    }
                    for turn in session.history
                ],
                "cache_window_started_at": (
                    session.cache_window_started_at.isoformat()
                    if session.cache_window_started_at
                    else None
                ),
                "token_budget": session.token_budget,
            }
            for key, session in self._sessions.items()
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def load(self, path: Path) -> int:
        if not path.exists():
            return 0
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", path, exc)
            return 0
        if not isinstance(raw, dict):
            return 0
        loaded = 0
        for key, item in raw.items():
            if not isinstance(item, dict):
                continue
            try:
                self._sessions[key] = self._decode(key, item)
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Skipping malformed session %s in %s: %s", key, path, exc)
                continue
            loaded += 1
        return loaded

    def _decode(self, key: str, item: dict[str, Any]) -> Session:
        turns = tuple(
            Turn(
                role=str(entry.get("role", "user")),
                content=str(entry.get("content", "")),
                token_count=int(entry.get("token_count", 0)),
                pinned=bool(entry.get("pinned", False)),
                summary=bool(entry.get("summary", False)),
            )
            for entry in item.get("history", [])
            if isinstance(entry, dict)
        )
        started = item.get("cache_window_started_at")
        return Session(
            key=key,
            history=turns,
            cache_window_started_at=datetime.fromisoformat(started) if started else None,
            token_budget=int(item.get("token_budget", self.token_budget)),
        )

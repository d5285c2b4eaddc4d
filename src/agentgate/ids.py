"""Identifier helpers."""

import secrets
import time


def new_id(prefix: str) -> str:
    """Return ``<prefix>_<hex millis><hex random>``; ids sort by creation time."""
    return f"{prefix}_{int(time.time() * 1000):012x}{secrets.token_hex(6)}"

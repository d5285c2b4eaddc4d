"""Token estimation shared by session accounting and prompt assembly."""

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Deterministic estimate, ~4 chars/token for mixed English content."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)

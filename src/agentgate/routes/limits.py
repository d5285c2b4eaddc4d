"""Shared slowapi limiter for the HTTP surface."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from agentgate.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def webhook_limit() -> str:
    return f"{max(1, get_settings().rate_limit_webhooks_per_minute)}/minute"

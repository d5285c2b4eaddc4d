"""Channel adapter registry: maps channel_type strings to adapter instances."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentgate.channels.base import ChannelAdapter

logger = logging.getLogger(__name__)


class ChannelRegistry:
    def __init__(self) -> None:
        self._adapters: dict[str, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter) -> None:
        """Register a channel adapter instance, replacing any previous one."""
        if adapter.channel_type in self._adapters:
            logger.info("Replacing channel adapter for %s", adapter.channel_type)
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: str) -> ChannelAdapter | None:
        return self._adapters.get(channel_type)

    def all(self) -> dict[str, ChannelAdapter]:
        """Return a copy of the current adapter map."""
        return dict(self._adapters)

    def __contains__(self, channel_type: object) -> bool:
        return channel_type in self._adapters

"""Per-identity sliding-window action limiter with a daily cost cap."""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from agentgate.auth.service import Identity
from agentgate.config import Settings

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=1)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class ActionRecord:
    identity: Identity
    timestamp: datetime
    cost_cents: int


@dataclass(frozen=True, slots=True)
class Allowed:
    pass


@dataclass(frozen=True, slots=True)
class Throttled:
    retry_after: timedelta
    cap: str

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after.total_seconds()))


@dataclass(frozen=True, slots=True)
class LimiterConfig:
    max_actions_per_hour: int = 20
    max_cost_per_day_cents: int = 500
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Settings) -> LimiterConfig:
        return cls(
            max_actions_per_hour=settings.max_actions_per_hour,
            max_cost_per_day_cents=settings.max_cost_per_day_cents,
            timezone=settings.timezone,
        )


@dataclass(slots=True)
class _DailySpend:
    day: date
    cents: int = 0


class ActionLimiter:
    """Enforces the hourly action cap and the daily cost cap per identity.

    The hourly window holds records with ``timestamp > now - 1h``. Daily spend
    is tracked per local calendar day in the configured timezone, so records
    that fell out of the hourly window still count against the day.
    """

    def __init__(self, config: LimiterConfig, *, clock: Clock = utc_now) -> None:
        self._config = config
        self._clock = clock
        self._tz = ZoneInfo(config.timezone)
        self._records: dict[str, deque[ActionRecord]] = {}
        self._spend: dict[str, _DailySpend] = {}

    def _prune(self, key: str, now: datetime) -> deque[ActionRecord]:
        records = self._records.setdefault(key, deque())
        cutoff = now - WINDOW
        while records and records[0].timestamp <= cutoff:
            records.popleft()
        return records

    def _daily(self, key: str, now: datetime) -> _DailySpend:
        today = now.astimezone(self._tz).date()
        spend = self._spend.get(key)
        if spend is None or spend.day != today:
            spend = _DailySpend(day=today)
            self._spend[key] = spend
        return spend

    def _until_local_midnight(self, now: datetime) -> timedelta:
        local = now.astimezone(self._tz)
        midnight = datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=self._tz)
        return midnight.astimezone(UTC) - now.astimezone(UTC)

    def check_and_record(
        self, identity: Identity, estimated_cost_cents: int
    ) -> Allowed | Throttled:
        now = self._clock()
        key = identity.key
        records = self._prune(key, now)
        spend = self._daily(key, now)

        waits: list[tuple[timedelta, str]] = []
        if len(records) + 1 > self._config.max_actions_per_hour:
            if records:
                waits.append((records[0].timestamp + WINDOW - now, "hourly_actions"))
            else:
                waits.append((WINDOW, "hourly_actions"))
        if spend.cents + estimated_cost_cents > self._config.max_cost_per_day_cents:
            waits.append((self._until_local_midnight(now), "daily_cost"))

        if waits:
            # both caps exceeded: the caller cannot proceed before the later one clears
            retry_after, cap = max(waits, key=lambda item: item[0])
            if len(waits) > 1:
                cap = "hourly_actions+daily_cost"
            logger.info("Throttled %s on %s; retry after %s", key, cap, retry_after)
            return Throttled(retry_after=retry_after, cap=cap)

        records.append(
            ActionRecord(identity=identity, timestamp=now, cost_cents=estimated_cost_cents)
        )
        spend.cents += estimated_cost_cents
        return Allowed()

    def usage(self, identity: Identity) -> dict[str, int]:
        now = self._clock()
        records = self._prune(identity.key, now)
        spend = self._daily(identity.key, now)
        return {
            "actions_last_hour": len(records),
            "max_actions_per_hour": self._config.max_actions_per_hour,
            "cost_today_cents": spend.cents,
            "max_cost_per_day_cents": self._config.max_cost_per_day_cents,
        }

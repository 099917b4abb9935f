from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import random
from typing import TYPE_CHECKING, Callable

from chat_gateway.core.models import RateLimitSnapshot

if TYPE_CHECKING:
    from chat_gateway.alerts.service import AlertService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Window:
    plan: str
    sends: deque = field(default_factory=deque)
    pause_until: datetime | None = None
    warned: bool = False
    total_sent: int = 0


class RateLimiter:
    """Per-connection sliding log of send timestamps.

    A send is accepted only while fewer than ``capacity`` sends fall inside the trailing
    window, so any rolling window-length interval holds at most ``capacity`` sends.
    State is a dict keyed by connection id; asyncio gives each check-and-record step
    exclusive access without a global lock.
    """

    def __init__(
        self,
        plan_limits: dict[str, int],
        *,
        default_plan: str = "basic",
        window_seconds: int = 86400,
        warning_ratio: float = 0.8,
        jitter_seconds: float = 2.0,
        alerts: AlertService | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.plan_limits = {k.lower(): max(0, int(v)) for k, v in plan_limits.items()}
        self.default_plan = default_plan.lower()
        self.window = timedelta(seconds=max(1, window_seconds))
        self.warning_ratio = warning_ratio
        self.jitter_seconds = max(0.0, jitter_seconds)
        self.alerts = alerts
        self._clock = clock or _utcnow
        self._rng = rng or random.Random()
        self._windows: dict[str, _Window] = {}

    def assign_plan(self, connection_id: str, plan: str | None) -> None:
        name = (plan or self.default_plan).strip().lower()
        if name not in self.plan_limits:
            logger.warning("unknown rate-limit plan %r for %s, using %s", name, connection_id, self.default_plan)
            name = self.default_plan
        self._window(connection_id).plan = name

    def capacity(self, connection_id: str) -> int:
        return self.capacity_for(self._window(connection_id))

    def can_send(self, connection_id: str) -> bool:
        now = self._clock()
        window = self._window(connection_id)
        self._expire(window, now)
        if window.pause_until is not None and window.pause_until > now:
            return False
        return len(window.sends) < self.capacity(connection_id)

    async def acquire(self, connection_id: str) -> bool:
        """Check and record one send in a single step; False means the send must not go out."""
        if not self.can_send(connection_id):
            return False
        await self.record_send(connection_id)
        return True

    async def record_send(self, connection_id: str) -> RateLimitSnapshot:
        now = self._clock()
        window = self._window(connection_id)
        self._expire(window, now)
        window.sends.append(now)
        window.total_sent += 1
        capacity = self.capacity(connection_id)
        count = len(window.sends)
        if capacity and count >= capacity:
            window.pause_until = window.sends[0] + self.window
            logger.warning(
                "rate limit reached for %s (%d/%d), paused until %s",
                connection_id,
                count,
                capacity,
                window.pause_until.isoformat(),
            )
        crossed_warning = bool(capacity) and not window.warned and count >= capacity * self.warning_ratio
        snapshot = self.snapshot(connection_id)
        if crossed_warning:
            window.warned = True
            logger.warning("rate limit warning for %s: %d/%d sends in window", connection_id, count, capacity)
            if self.alerts is not None:
                try:
                    await self.alerts.send_rate_limit_alert(connection_id, count, capacity, window.plan)
                except Exception:  # noqa: BLE001
                    logger.exception("failed to dispatch rate-limit alert for %s", connection_id)
        return snapshot

    def pause(self, connection_id: str, until: datetime) -> None:
        self._window(connection_id).pause_until = until

    def resume(self, connection_id: str) -> None:
        window = self._windows.get(connection_id)
        if window is None:
            return
        window.pause_until = None
        window.warned = False

    def snapshot(self, connection_id: str) -> RateLimitSnapshot:
        now = self._clock()
        window = self._window(connection_id)
        self._expire(window, now)
        capacity = self.capacity(connection_id)
        count = len(window.sends)
        paused = window.pause_until is not None and window.pause_until > now
        return RateLimitSnapshot(
            connection_id=connection_id,
            plan=window.plan,
            capacity=capacity,
            window_seconds=int(self.window.total_seconds()),
            window_start=window.sends[0] if window.sends else None,
            count=count,
            remaining=max(0, capacity - count),
            pause_until=window.pause_until if paused else None,
            is_paused=paused,
            warning=window.warned,
            total_sent=window.total_sent,
        )

    def jitter(self, delay_seconds: float) -> float:
        return max(0.0, delay_seconds) + self._rng.uniform(0.0, self.jitter_seconds)

    def cleanup(self) -> int:
        """Drop windows that hold no sends and no pause; returns how many were removed."""
        now = self._clock()
        removed = 0
        for connection_id in list(self._windows):
            window = self._windows[connection_id]
            self._expire(window, now)
            if window.sends or window.pause_until is not None:
                continue
            if window.plan != self.default_plan:
                continue
            del self._windows[connection_id]
            removed += 1
        if removed:
            logger.debug("rate limiter cleanup removed %d idle windows", removed)
        return removed

    def _window(self, connection_id: str) -> _Window:
        window = self._windows.get(connection_id)
        if window is None:
            window = _Window(plan=self.default_plan)
            self._windows[connection_id] = window
        return window

    def _expire(self, window: _Window, now: datetime) -> None:
        cutoff = now - self.window
        while window.sends and window.sends[0] <= cutoff:
            window.sends.popleft()
        if window.pause_until is not None and window.pause_until <= now:
            window.pause_until = None
        if window.warned and len(window.sends) < self.capacity_for(window) * self.warning_ratio:
            window.warned = False

    def capacity_for(self, window: _Window) -> int:
        return self.plan_limits.get(window.plan, self.plan_limits.get(self.default_plan, 0))

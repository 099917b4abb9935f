from __future__ import annotations

import asyncio
from datetime import timedelta
import random

from chat_gateway.delivery.rate_limiter import RateLimiter


class FakeAlerts:
    def __init__(self) -> None:
        self.rate_alerts: list[tuple[str, int, int, str]] = []

    async def send_rate_limit_alert(self, connection_id, count, capacity, plan):
        self.rate_alerts.append((connection_id, count, capacity, plan))


def _limiter(clock, **kwargs) -> RateLimiter:
    kwargs.setdefault("window_seconds", 60)
    kwargs.setdefault("jitter_seconds", 0.0)
    return RateLimiter({"free": 3, "basic": 5}, default_plan="basic", clock=clock, **kwargs)


def test_cap_blocks_until_oldest_send_leaves_window(clock) -> None:
    async def _run() -> None:
        limiter = _limiter(clock)
        limiter.assign_plan("conn-1", "free")
        results = [await limiter.acquire("conn-1") for _ in range(5)]
        assert results == [True, True, True, False, False]

        snap = limiter.snapshot("conn-1")
        assert snap.count == 3
        assert snap.remaining == 0
        assert snap.is_paused is True
        assert snap.pause_until == clock.now + timedelta(seconds=60)

        clock.advance(59)
        assert limiter.can_send("conn-1") is False
        clock.advance(1)
        assert limiter.can_send("conn-1") is True
        assert await limiter.acquire("conn-1") is True

    asyncio.run(_run())


def test_rolling_window_never_exceeds_capacity_under_bursts(clock) -> None:
    rng = random.Random(11)

    async def _run() -> None:
        limiter = _limiter(clock)
        limiter.assign_plan("conn-1", "free")
        accepted = []
        for _ in range(400):
            clock.advance(rng.choice([0, 0, 0, 1, 5, 17, 40]))
            if await limiter.acquire("conn-1"):
                accepted.append(clock.now)

        window = timedelta(seconds=60)
        assert len(accepted) > 10
        for end in accepted:
            in_window = [t for t in accepted if end - window < t <= end]
            assert len(in_window) <= 3

    asyncio.run(_run())


def test_warning_alert_fires_once_per_crossing(clock) -> None:
    async def _run() -> None:
        alerts = FakeAlerts()
        limiter = _limiter(clock, warning_ratio=0.8, alerts=alerts)
        for _ in range(5):
            await limiter.acquire("conn-1")
        assert alerts.rate_alerts == [("conn-1", 4, 5, "basic")]
        assert limiter.snapshot("conn-1").warning is True

        clock.advance(61)
        assert limiter.snapshot("conn-1").warning is False
        for _ in range(4):
            await limiter.acquire("conn-1")
        assert len(alerts.rate_alerts) == 2

    asyncio.run(_run())


def test_resume_clears_pause_but_not_the_window(clock) -> None:
    async def _run() -> None:
        limiter = _limiter(clock)
        limiter.assign_plan("conn-1", "free")
        for _ in range(3):
            await limiter.acquire("conn-1")
        limiter.resume("conn-1")
        snap = limiter.snapshot("conn-1")
        assert snap.is_paused is False
        assert snap.count == 3
        assert limiter.can_send("conn-1") is False

    asyncio.run(_run())


def test_unknown_plan_falls_back_to_default(clock) -> None:
    limiter = _limiter(clock)
    limiter.assign_plan("conn-1", "Enterprise")
    assert limiter.snapshot("conn-1").plan == "basic"
    assert limiter.capacity("conn-1") == 5
    limiter.assign_plan("conn-2", " FREE ")
    assert limiter.capacity("conn-2") == 3


def test_jitter_stays_within_bounds(clock) -> None:
    limiter = RateLimiter({"basic": 5}, jitter_seconds=2.0, clock=clock, rng=random.Random(3))
    for _ in range(50):
        value = limiter.jitter(5.0)
        assert 5.0 <= value <= 7.0


def test_cleanup_drops_idle_windows(clock) -> None:
    async def _run() -> None:
        limiter = _limiter(clock)
        await limiter.acquire("conn-1")
        limiter.snapshot("conn-2")
        assert limiter.cleanup() == 1
        clock.advance(61)
        assert limiter.cleanup() == 1

    asyncio.run(_run())

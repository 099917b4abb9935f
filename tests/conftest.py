from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from chat_gateway.core.config import Settings


class FakeClock:
    """Manually advanced UTC clock shared by the services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "connection_db_path": str(tmp_path / "connections.db"),
            "job_db_path": str(tmp_path / "jobs.db"),
            "alert_db_path": str(tmp_path / "alerts.db"),
            "restore_connections_on_start": False,
            "health_probe_enabled": False,
            "message_base_delay_seconds": 0.0,
            "retry_delays_seconds": "0,0,0",
            "retry_jitter_seconds": 0.0,
            "alert_default_channels": "webhook",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make

import json
from pathlib import Path

import pytest

from chat_gateway import cli
from chat_gateway.core.config import get_settings


@pytest.fixture
def env_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CONNECTION_DB_PATH", str(tmp_path / "connections.db"))
    monkeypatch.setenv("JOB_DB_PATH", str(tmp_path / "jobs.db"))
    monkeypatch.setenv("ALERT_DB_PATH", str(tmp_path / "alerts.db"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_health_check_prints_snapshot(env_settings, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["health-check"])
    snapshot = json.loads(capsys.readouterr().out)
    assert code == 0
    assert snapshot["overall"] == "healthy"
    assert set(snapshot["checks"]) == {"storage", "queue", "connections", "system"}


def test_prune_alerts_reports_counts(env_settings, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["prune-alerts"]) == 0
    assert json.loads(capsys.readouterr().out) == {"records": 0, "log_rows": 0}

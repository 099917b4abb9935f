import pytest

from chat_gateway.connections.client import LoopbackAutomationClient, build_client_factory
from chat_gateway.core.config import Settings
from chat_gateway.core.errors import ConfigurationError


def test_settings_strip_string_values_for_bool_fields() -> None:
    settings = Settings(
        _env_file=None,
        health_probe_enabled=" false ",
        auth_enabled=" true ",
        stale_reconnect_enabled=" false ",
    )
    assert settings.health_probe_enabled is False
    assert settings.auth_enabled is True
    assert settings.stale_reconnect_enabled is False


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUE_CONCURRENCY", "8")
    monkeypatch.setenv("RATE_LIMIT_PLANS", "free:10, Premium:500, broken, bad:x")
    settings = Settings(_env_file=None)
    assert settings.queue_concurrency == 8
    assert settings.plan_daily_limits == {"free": 10, "premium": 500}


def test_derived_lists_fall_back_to_defaults() -> None:
    settings = Settings(_env_file=None, retry_delays_seconds="oops", alert_default_channels=" Slack, ,webhook ")
    assert settings.retry_delay_table == [5.0, 15.0, 30.0]
    assert settings.default_channel_list == ["slack", "webhook"]
    assert Settings(_env_file=None, retry_delays_seconds="1, 2.5").retry_delay_table == [1.0, 2.5]


def test_client_factory_resolution() -> None:
    assert build_client_factory("loopback") is LoopbackAutomationClient
    assert build_client_factory("chat_gateway.connections.client:LoopbackAutomationClient") is LoopbackAutomationClient
    with pytest.raises(ConfigurationError):
        build_client_factory("selenium")
    with pytest.raises(ConfigurationError):
        build_client_factory("chat_gateway.nowhere:Client")

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    app_name: str = Field(default="Chat Gateway")
    env: str = Field(default="dev")
    log_level: str = Field(default="INFO")
    expose_error_details: bool = Field(default=False)

    connection_db_path: str = Field(default="data/connections.db")
    job_db_path: str = Field(default="data/jobs.db")
    alert_db_path: str = Field(default="data/alerts.db")

    automation_client: str = Field(default="loopback")
    credential_ttl_seconds: int = Field(default=300, ge=1)
    heartbeat_stale_seconds: int = Field(default=300, ge=1)
    reconnect_max_delay_seconds: float = Field(default=300.0, gt=0)
    stale_reconnect_enabled: bool = Field(default=True)
    restore_connections_on_start: bool = Field(default=True)
    default_country_code: str = Field(default="972")

    queue_concurrency: int = Field(default=5, ge=1, le=64)
    queue_poll_seconds: float = Field(default=0.5, gt=0)
    message_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_delays_seconds: str = Field(default="5,15,30")
    retry_jitter_seconds: float = Field(default=2.0, ge=0)

    rate_limit_window_seconds: int = Field(default=86400, ge=1)
    rate_limit_plans: str = Field(
        default="free:100,basic:1000,premium:5000",
        description="Comma-separated plan:daily_cap pairs",
    )
    rate_limit_default_plan: str = Field(default="basic")
    rate_limit_warning_ratio: float = Field(default=0.8, gt=0, le=1)

    health_check_interval_seconds: int = Field(default=60, ge=5)
    health_history_size: int = Field(default=100, ge=1, le=10000)
    health_storage_threshold_ms: float = Field(default=1000.0, gt=0)
    health_queue_latency_threshold_ms: float = Field(default=60000.0, gt=0)
    health_connection_score_threshold: float = Field(default=0.7, ge=0, le=1)
    health_memory_threshold_percent: float = Field(default=90.0, gt=0, le=100)
    health_probe_enabled: bool = Field(default=True)

    alert_default_channels: str = Field(default="email,slack")
    alert_retention_days: int = Field(default=7, ge=1)
    alert_notify_timeout_seconds: int = Field(default=10)
    alert_smtp_host: str | None = Field(default=None)
    alert_smtp_port: int = Field(default=465)
    alert_smtp_username: str | None = Field(default=None)
    alert_smtp_password: str | None = Field(default=None)
    alert_smtp_use_tls: bool = Field(default=False)
    alert_smtp_use_ssl: bool = Field(default=True)
    alert_email_from: str | None = Field(default=None)
    alert_email_to: str | None = Field(default=None)
    alert_slack_webhook_url: str | None = Field(default=None)
    alert_slack_channel: str = Field(default="#alerts")
    alert_slack_username: str = Field(default="Chat Gateway Alerts")
    alert_discord_webhook_url: str | None = Field(default=None)
    alert_webhook_url: str | None = Field(default=None)
    alert_webhook_method: str = Field(default="POST")
    alert_webhook_headers_json: str = Field(default="")

    auth_enabled: bool = Field(default=False)
    auth_header_name: str = Field(default="X-API-Key")
    auth_api_keys: str = Field(
        default="",
        description="Comma-separated key:role pairs, e.g. key1:operator,key2:admin",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _strip_string_values(cls, data):
        if not isinstance(data, dict):
            return data
        normalized: dict[str, object] = {}
        for key, value in data.items():
            if isinstance(value, str):
                normalized[key] = value.strip()
            else:
                normalized[key] = value
        return normalized

    @property
    def plan_daily_limits(self) -> dict[str, int]:
        limits: dict[str, int] = {}
        for pair in _split_csv(self.rate_limit_plans):
            if ":" not in pair:
                continue
            name, raw_cap = pair.split(":", 1)
            try:
                limits[name.strip().lower()] = max(0, int(raw_cap.strip()))
            except ValueError:
                continue
        return limits

    @property
    def retry_delay_table(self) -> list[float]:
        delays: list[float] = []
        for item in _split_csv(self.retry_delays_seconds):
            try:
                delays.append(max(0.0, float(item)))
            except ValueError:
                continue
        return delays or [5.0, 15.0, 30.0]

    @property
    def default_channel_list(self) -> list[str]:
        return [item.lower() for item in _split_csv(self.alert_default_channels)]


@lru_cache
def get_settings() -> Settings:
    return Settings()

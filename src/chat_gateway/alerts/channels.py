from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage
import json
import smtplib
from typing import Any, Protocol
from urllib import request

from chat_gateway.alerts.templates import RenderedAlert
from chat_gateway.core.config import Settings
from chat_gateway.core.errors import ConfigurationError

SUPPORTED_CHANNELS = ("email", "slack", "discord", "webhook")


@dataclass
class ChannelSendResult:
    success: bool
    error_message: str = ""
    provider_status: str = ""


class NotificationDispatcher(Protocol):
    def send(self, *, channel: str, rendered: RenderedAlert) -> ChannelSendResult:
        ...

    def configured_channels(self) -> list[str]:
        ...


class RealAlertDispatcher:
    """Blocking senders; the alert service runs them in worker threads."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def configured_channels(self) -> list[str]:
        s = self.settings
        configured: list[str] = []
        if s.alert_smtp_host and s.alert_email_from and s.alert_email_to:
            configured.append("email")
        if s.alert_slack_webhook_url:
            configured.append("slack")
        if s.alert_discord_webhook_url:
            configured.append("discord")
        if s.alert_webhook_url:
            configured.append("webhook")
        return configured

    def send(self, *, channel: str, rendered: RenderedAlert) -> ChannelSendResult:
        channel_normalized = channel.strip().lower()
        if channel_normalized == "email":
            return self._send_email(rendered)
        if channel_normalized == "slack":
            if not self.settings.alert_slack_webhook_url:
                raise ConfigurationError("slack webhook url is not configured", channel="slack")
            body = dict(rendered.body)
            body.setdefault("channel", self.settings.alert_slack_channel)
            body.setdefault("username", self.settings.alert_slack_username)
            return self._post_json(self.settings.alert_slack_webhook_url, body)
        if channel_normalized == "discord":
            if not self.settings.alert_discord_webhook_url:
                raise ConfigurationError("discord webhook url is not configured", channel="discord")
            return self._post_json(self.settings.alert_discord_webhook_url, rendered.body)
        if channel_normalized == "webhook":
            if not self.settings.alert_webhook_url:
                raise ConfigurationError("alert webhook url is not configured", channel="webhook")
            return self._post_json(
                self.settings.alert_webhook_url,
                rendered.body,
                method=self.settings.alert_webhook_method.upper() or "POST",
                extra_headers=self._webhook_headers(),
            )
        raise ConfigurationError(f"unsupported alert channel: {channel}", channel=channel)

    def _send_email(self, rendered: RenderedAlert) -> ChannelSendResult:
        s = self.settings
        if not s.alert_smtp_host:
            raise ConfigurationError("smtp host is empty", channel="email")
        if not s.alert_email_from or not s.alert_email_to:
            raise ConfigurationError("alert_email_from / alert_email_to is empty", channel="email")

        email = EmailMessage()
        email["Subject"] = rendered.subject
        email["From"] = s.alert_email_from
        email["To"] = s.alert_email_to
        email.set_content(rendered.text)

        try:
            if s.alert_smtp_use_ssl:
                smtp = smtplib.SMTP_SSL(host=s.alert_smtp_host, port=s.alert_smtp_port, timeout=s.alert_notify_timeout_seconds)
            else:
                smtp = smtplib.SMTP(host=s.alert_smtp_host, port=s.alert_smtp_port, timeout=s.alert_notify_timeout_seconds)
            with smtp:
                smtp.ehlo()
                if s.alert_smtp_use_tls and not s.alert_smtp_use_ssl:
                    smtp.starttls()
                    smtp.ehlo()
                username = (s.alert_smtp_username or "").strip()
                if username:
                    smtp.login(username, s.alert_smtp_password or "")
                smtp.send_message(email)
            return ChannelSendResult(success=True, provider_status="250")
        except Exception as exc:  # noqa: BLE001
            return ChannelSendResult(success=False, error_message=str(exc))

    def _webhook_headers(self) -> dict[str, str]:
        raw = self.settings.alert_webhook_headers_json.strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"alert_webhook_headers_json is not valid JSON: {exc}", channel="webhook") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError("alert_webhook_headers_json must be a JSON object", channel="webhook")
        return {str(k): str(v) for k, v in parsed.items()}

    def _post_json(
        self,
        url: str,
        body: dict[str, Any],
        *,
        method: str = "POST",
        extra_headers: dict[str, str] | None = None,
    ) -> ChannelSendResult:
        raw = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json; charset=utf-8"}
        headers.update(extra_headers or {})
        req = request.Request(url=url.strip(), data=raw, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self.settings.alert_notify_timeout_seconds) as resp:  # noqa: S310
                status = getattr(resp, "status", 200)
            if status >= 400:
                return ChannelSendResult(success=False, error_message=f"webhook status={status}")
            return ChannelSendResult(success=True, provider_status=str(status))
        except Exception as exc:  # noqa: BLE001
            return ChannelSendResult(success=False, error_message=str(exc))

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"
    BLOCKED = "blocked"
    MAINTENANCE = "maintenance"


class ConnectionSettings(BaseModel):
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=5, ge=1, le=20)
    reconnect_interval_seconds: float = Field(default=30.0, ge=0.0, le=300.0)
    message_retry_attempts: int = Field(default=3, ge=1, le=10)
    message_retry_delay_seconds: float = Field(default=5.0, ge=0.0, le=60.0)
    enable_logging: bool = True


class ConnectionStats(BaseModel):
    messages_sent: int = Field(default=0, ge=0)
    messages_received: int = Field(default=0, ge=0)
    messages_delivered: int = Field(default=0, ge=0)
    messages_failed: int = Field(default=0, ge=0)
    uptime_seconds: float = Field(default=0.0, ge=0.0)
    reconnect_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)


class ConnectionRecord(BaseModel):
    connection_id: str
    tenant_id: str
    name: str
    phone_number: str | None = None
    plan: str = "basic"
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    status_reason: str | None = None
    is_active: bool = True
    is_default: bool = False
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    stats: ConnectionStats = Field(default_factory=ConnectionStats)
    credential_blob: str | None = None
    credential_expires_at: datetime | None = None
    last_heartbeat: datetime | None = None
    last_message_sent: datetime | None = None
    last_message_received: datetime | None = None
    last_connected_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @property
    def can_send_messages(self) -> bool:
        return self.is_active and self.status == ConnectionStatus.AUTHENTICATED


class ConnectionCreateRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    connection_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]{8,32}$")
    name: str | None = Field(default=None, max_length=100)
    phone_number: str | None = Field(default=None, max_length=32)
    plan: str | None = Field(default=None, max_length=32)
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    is_default: bool = False


class ConnectionUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    phone_number: str | None = Field(default=None, max_length=32)
    plan: str | None = Field(default=None, max_length=32)
    settings: ConnectionSettings | None = None


class ConnectionStateCommand(BaseModel):
    status: ConnectionStatus
    reason: str | None = Field(default=None, max_length=500)


class ConnectionHealth(BaseModel):
    is_healthy: bool
    heartbeat_age_seconds: float | None = None
    last_heartbeat: datetime | None = None
    status: ConnectionStatus
    is_active: bool
    can_send_messages: bool


class ConnectionRuntimeInfo(BaseModel):
    has_client: bool = False
    reconnect_attempts: int = 0
    last_reconnect_attempt: datetime | None = None
    reconnect_pending: bool = False
    is_connecting: bool = False


class ConnectionStatusView(BaseModel):
    connection_id: str
    tenant_id: str
    name: str
    status: ConnectionStatus
    status_reason: str | None = None
    is_active: bool
    is_default: bool
    can_send_messages: bool
    last_heartbeat: datetime | None = None
    last_message_sent: datetime | None = None
    last_message_received: datetime | None = None
    stats: ConnectionStats
    settings: ConnectionSettings
    health: ConnectionHealth
    runtime: ConnectionRuntimeInfo


class CredentialView(BaseModel):
    connection_id: str
    credential: str
    expires_at: datetime


class StateChange(BaseModel):
    connection_id: str
    tenant_id: str
    old_status: ConnectionStatus
    new_status: ConnectionStatus
    reason: str | None = None
    changed_at: datetime


class ConnectionServiceStats(BaseModel):
    total_connections: int = 0
    active_connections: int = 0
    connected_connections: int = 0
    error_connections: int = 0
    live_clients: int = 0
    total_messages_sent: int = 0
    total_messages_received: int = 0
    total_messages_delivered: int = 0
    total_messages_failed: int = 0
    total_reconnects: int = 0
    total_errors: int = 0


class ClientEventType(str, Enum):
    CREDENTIAL_CHALLENGE = "credential_challenge"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_ACK = "message_ack"


class ClientEvent(BaseModel):
    type: ClientEventType
    data: dict[str, Any] = Field(default_factory=dict)


class MessagePayload(BaseModel):
    text: str | None = Field(default=None, max_length=4096)
    media_url: str | None = None
    media_path: str | None = None
    caption: str | None = Field(default=None, max_length=1024)

    @model_validator(mode="after")
    def _require_content(self) -> "MessagePayload":
        has_text = bool(self.text and self.text.strip())
        has_media = bool(self.media_url or self.media_path)
        if not has_text and not has_media:
            raise ValueError("payload requires text or a media reference")
        return self

    @property
    def kind(self) -> str:
        return "media" if (self.media_url or self.media_path) else "text"


class SendReceipt(BaseModel):
    message_id: str
    recipient: str
    connection_id: str
    timestamp: datetime


class JobPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.BLOCKED})


class RecipientState(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class RecipientDelivery(BaseModel):
    recipient: str
    state: RecipientState = RecipientState.PENDING
    message_id: str | None = None
    error: str | None = None
    delivered_at: datetime | None = None


class DeliveryJob(BaseModel):
    job_id: str
    connection_id: str
    payload: MessagePayload
    deliveries: list[RecipientDelivery]
    priority: JobPriority = JobPriority.NORMAL
    state: JobState = JobState.QUEUED
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def recipients(self) -> list[str]:
        return [d.recipient for d in self.deliveries]

    @property
    def pending(self) -> list[RecipientDelivery]:
        return [d for d in self.deliveries if d.state == RecipientState.PENDING]


class EnqueueRequest(BaseModel):
    connection_id: str
    payload: MessagePayload
    recipients: list[str] = Field(..., min_length=1, max_length=1000)
    priority: JobPriority = JobPriority.NORMAL
    send_at: datetime | None = None
    delay_seconds: float | None = Field(default=None, ge=0.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkMessageItem(BaseModel):
    payload: MessagePayload
    recipients: list[str] = Field(..., min_length=1, max_length=1000)
    priority: JobPriority | None = None


class BulkEnqueueRequest(BaseModel):
    connection_id: str
    messages: list[BulkMessageItem] = Field(..., min_length=1, max_length=500)
    priority: JobPriority = JobPriority.NORMAL
    send_at: datetime | None = None


class EnqueueResult(BaseModel):
    job_id: str
    connection_id: str
    priority: JobPriority
    estimated_send_time: datetime
    accepted_recipients: list[str]
    rejected_recipients: list[str] = Field(default_factory=list)


class RateLimitSnapshot(BaseModel):
    connection_id: str
    plan: str
    capacity: int
    window_seconds: int
    window_start: datetime | None = None
    count: int = 0
    remaining: int = 0
    pause_until: datetime | None = None
    is_paused: bool = False
    warning: bool = False
    total_sent: int = 0


class QueueStatus(BaseModel):
    connection_id: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    is_paused: bool = False
    rate_limit: RateLimitSnapshot | None = None


class QueueStats(BaseModel):
    counts: dict[str, int]
    paused_connections: list[str]
    concurrency: int
    running_jobs: int
    worker_running: bool


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CheckResult(BaseModel):
    name: str
    status: HealthStatus
    response_time_ms: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class HealthSnapshot(BaseModel):
    timestamp: datetime
    overall: HealthStatus
    checks: dict[str, CheckResult]
    response_time_ms: float = 0.0


class PerformanceMetrics(BaseModel):
    sample_size: int = 0
    avg_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    p99_response_time_ms: float = 0.0
    success_rate: float = 1.0
    uptime_seconds: float = 0.0
    total_checks: int = 0
    failed_checks: int = 0


class DetailedHealthReport(BaseModel):
    snapshot: HealthSnapshot
    performance: PerformanceMetrics
    connections: dict[str, Any] = Field(default_factory=dict)
    queue: dict[str, Any] = Field(default_factory=dict)
    system: dict[str, Any] = Field(default_factory=dict)


class HealthDashboard(BaseModel):
    health: HealthStatus
    connections: dict[str, int]
    queue: dict[str, float]
    system: dict[str, Any]
    last_updated: datetime


class AlertType(str, Enum):
    HEALTH_ISSUE = "health_issue"
    RATE_LIMIT_WARNING = "rate_limit_warning"
    CONNECTION_ISSUE = "connection_issue"
    QUEUE_ISSUE = "queue_issue"
    TEST = "test"
    GENERAL = "general"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertRequest(BaseModel):
    type: AlertType = AlertType.GENERAL
    severity: AlertSeverity = AlertSeverity.INFO
    title: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    channels: list[str] | None = None
    cooldown: bool = True
    cooldown_seconds: int | None = Field(default=None, ge=0)


class AlertDispatchStatus(str, Enum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


class ChannelOutcome(BaseModel):
    channel: str
    success: bool
    error_message: str = ""
    provider_status: str = ""


class AlertDispatchResult(BaseModel):
    dedupe_key: str
    alert_type: AlertType
    status: AlertDispatchStatus
    outcomes: list[ChannelOutcome] = Field(default_factory=list)
    attempted_at: datetime


class AlertRecord(BaseModel):
    dedupe_key: str
    alert_type: AlertType
    last_sent_at: datetime | None = None
    last_attempt_at: datetime
    attempts: int = 0


class AlertLogEntry(BaseModel):
    id: int
    created_at: datetime
    dedupe_key: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    status: AlertDispatchStatus
    outcomes: list[ChannelOutcome] = Field(default_factory=list)


class AlertStats(BaseModel):
    total: int
    last_hour: int
    last_day: int
    channels: list[str]


class AlertTestRequest(BaseModel):
    channel: str = "email"

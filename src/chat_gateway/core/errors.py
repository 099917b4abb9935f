from __future__ import annotations


class GatewayError(Exception):
    """Base class for every error the gateway reports to callers.

    ``code`` is stable and safe to expose; ``status_code`` is the HTTP status the API
    layer answers with.
    """

    code = "gateway_error"
    status_code = 500

    def __init__(self, message: str = "", **context: object) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = dict(context)


class ValidationError(GatewayError):
    code = "validation_error"
    status_code = 400


class InvalidRecipients(ValidationError):
    code = "invalid_recipients"


class IllegalTransition(ValidationError):
    code = "illegal_transition"
    status_code = 409


class QueuePaused(GatewayError):
    code = "queue_paused"
    status_code = 409


class NotFoundError(GatewayError):
    code = "not_found"
    status_code = 404


class ConnectionNotReady(GatewayError):
    code = "connection_not_ready"
    status_code = 409


class CredentialExpired(GatewayError):
    code = "credential_expired"
    status_code = 410


class SendError(GatewayError):
    code = "send_error"
    status_code = 502


class TransientSendError(SendError):
    code = "transient_send_error"
    status_code = 503


class PermanentSendError(SendError):
    code = "permanent_send_error"

    def __init__(self, message: str = "", *, blocked: bool = False, **context: object) -> None:
        super().__init__(message, **context)
        self.blocked = blocked


class RateLimitExceeded(PermanentSendError):
    code = "rate_limit_exceeded"
    status_code = 429


class AutomationClientError(GatewayError):
    code = "automation_client_error"
    status_code = 502


class StorageError(GatewayError):
    code = "storage_error"
    status_code = 503


class ConcurrentUpdateError(StorageError):
    code = "concurrent_update"
    status_code = 409


class ConfigurationError(GatewayError):
    code = "configuration_error"
    status_code = 500

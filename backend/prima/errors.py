"""
Error taxonomy for the reminder engine.

Pipeline errors are raised by services and caught at the response
orchestrator boundary; only ``SignatureError`` and ``NotFoundError`` ever
reach the HTTP layer.
"""


class PrimaError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(PrimaError):
    """Malformed input or an ownership / state-transition violation."""


class NotFoundError(PrimaError):
    """A referenced patient or reminder does not exist."""


class DuplicateMessageError(PrimaError):
    """The inbound message's idempotency key has already been processed."""

    def __init__(self, key: str):
        super().__init__(f"Duplicate inbound message: {key}")
        self.key = key


class UnknownSenderError(PrimaError):
    """The sender is not a registered patient."""


class SignatureError(PrimaError):
    """Missing or invalid webhook signature."""


class GatewayError(PrimaError):
    """Base class for chat gateway failures."""

    def __init__(self, message: str, *, status_code: int | None = None, response: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response or {}


class GatewayTransientError(GatewayError):
    """Timeout, transport failure or 5xx response; safe to retry."""


class GatewayPermanentError(GatewayError):
    """4xx response or logical rejection by the gateway; never retried."""


class CircuitOpenError(GatewayTransientError):
    """The circuit breaker rejected the call without touching the gateway."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker OPEN for {name}")
        self.name = name
        self.retry_after = retry_after

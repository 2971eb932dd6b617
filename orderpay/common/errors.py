"""Error taxonomy raised by every component and mapped by the HTTP layer."""


class OrderPayError(Exception):
    """Base class carrying a stable code, HTTP status and retry hint."""

    code = "internal_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return self.code.replace("_", " ")


class ValidationError(OrderPayError):
    """Bad input; never retried."""

    code = "validation_error"
    http_status = 400


class NotFoundError(OrderPayError):
    code = "not_found"
    http_status = 404


class InvalidTransitionError(OrderPayError):
    """Business-rule violation on a state transition; never retried."""

    code = "invalid_transition"
    http_status = 409


class VersionConflict(OrderPayError):
    """Optimistic-concurrency race.

    Callers re-read and retry the user-intended operation rather than
    replaying the same call.
    """

    code = "version_conflict"
    http_status = 409

    def default_message(self) -> str:
        return "order already in terminal or advanced state"


class SignatureVerificationError(OrderPayError):
    code = "signature_verification_failed"
    http_status = 400


class GatewayUnavailable(OrderPayError):
    """Transient gateway failure; the side effect may still have landed."""

    code = "gateway_unavailable"
    http_status = 503
    retryable = True


class GatewayRejected(OrderPayError):
    """Gateway refused the request; details are logged, not surfaced."""

    code = "gateway_rejected"
    http_status = 502


class RefundExceedsCapturedAmount(OrderPayError):
    code = "refund_exceeds_captured_amount"
    http_status = 409


class WebhookUnavailable(OrderPayError):
    """Webhook could not be handled now (queue full or timed out)."""

    code = "webhook_unavailable"
    http_status = 503
    retryable = True

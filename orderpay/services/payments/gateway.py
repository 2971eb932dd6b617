"""Payment gateway boundary.

`PaymentGateway` is the narrow contract the coordinators and the webhook
reconciler depend on; `StripeGateway` implements it with the Stripe SDK.
"""

import time
from typing import Any, Callable, Protocol, runtime_checkable

import stripe
from pydantic import BaseModel

from orderpay.common.errors import GatewayRejected, GatewayUnavailable
from orderpay.common.logging import logger
from orderpay.common.metrics import gateway_latency_seconds, retries_total
from orderpay.common.state_machine import AuthorizationStatus, RefundStatus


class AuthorizationResult(BaseModel):
    """Gateway view of one authorization after a call."""

    authorization_id: str
    status: AuthorizationStatus
    amount: int | None = None
    amount_received: int | None = None
    client_secret: str | None = None


class RefundResult(BaseModel):
    refund_id: str
    status: RefundStatus


@runtime_checkable
class PaymentGateway(Protocol):
    """Contract for the external payment gateway."""

    def create_authorization(
        self, amount: int, currency: str, idempotency_key: str, metadata: dict[str, Any]
    ) -> AuthorizationResult: ...

    def confirm_authorization(self, authorization_id: str, idempotency_key: str) -> AuthorizationResult: ...

    def cancel_authorization(self, authorization_id: str) -> AuthorizationResult: ...

    def retrieve_authorization(self, authorization_id: str) -> AuthorizationResult: ...

    def create_refund(
        self, authorization_id: str, amount: int, idempotency_key: str, metadata: dict[str, Any]
    ) -> RefundResult: ...

    def cancel_refund(self, refund_id: str) -> RefundResult: ...

    def verify_webhook_signature(self, payload: bytes, header: str | None, secret: str) -> bool: ...


def idempotency_key(order_id: str, operation: str) -> str:
    """Key shared by every retry of one logical operation on one order."""

    return f"order:{order_id}:{operation}"


def call_with_retries(
    operation: str,
    fn: Callable[[], Any],
    *,
    attempts: int,
    backoff_seconds: float,
    service_name: str,
    sleep: Callable[[float], None] = time.sleep,
):
    """Call `fn`, retrying `GatewayUnavailable` with exponential backoff.

    Other errors propagate immediately. The last `GatewayUnavailable` is
    re-raised once `attempts` calls have failed.
    """

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except GatewayUnavailable:
            if attempt == attempts:
                raise
            retries_total.labels(service=service_name, dependency="gateway").inc()
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "gateway unavailable operation=%s attempt=%s/%s backoff_s=%s",
                operation,
                attempt,
                attempts,
                delay,
            )
            sleep(delay)


STRIPE_INTENT_STATUS: dict[str, AuthorizationStatus] = {
    "requires_payment_method": AuthorizationStatus.REQUIRES_CONFIRMATION,
    "requires_confirmation": AuthorizationStatus.REQUIRES_CONFIRMATION,
    "requires_action": AuthorizationStatus.REQUIRES_CONFIRMATION,
    "processing": AuthorizationStatus.PROCESSING,
    "requires_capture": AuthorizationStatus.SUCCEEDED,
    "succeeded": AuthorizationStatus.SUCCEEDED,
    "canceled": AuthorizationStatus.CANCELLED,
}

STRIPE_REFUND_STATUS: dict[str, RefundStatus] = {
    "pending": RefundStatus.REQUESTED,
    "requires_action": RefundStatus.REQUESTED,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.CANCELLED,
}


def map_intent_status(status: str) -> AuthorizationStatus:
    try:
        return STRIPE_INTENT_STATUS[status]
    except KeyError as exc:
        raise GatewayRejected(f"unexpected authorization status from gateway: {status}") from exc


def map_refund_status(status: str) -> RefundStatus:
    try:
        return STRIPE_REFUND_STATUS[status]
    except KeyError as exc:
        raise GatewayRejected(f"unexpected refund status from gateway: {status}") from exc


class StripeGateway:
    """`PaymentGateway` backed by Stripe PaymentIntents and Refunds."""

    def __init__(self, settings, client=None) -> None:
        self.settings = settings
        self.service_name = settings.service_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = stripe.StripeClient(
                self.settings.gateway_secret_key,
                http_client=stripe.RequestsClient(timeout=self.settings.gateway_timeout_seconds),
            )
        return self._client

    def _call(self, operation: str, fn: Callable[[], Any]):
        start = time.perf_counter()
        try:
            return fn()
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("gateway unavailable operation=%s error=%s", operation, exc)
            raise GatewayUnavailable(f"payment gateway unavailable during {operation}") from exc
        except stripe.CardError:
            raise
        except stripe.StripeError as exc:
            logger.error("gateway rejected operation=%s error=%s", operation, exc)
            raise GatewayRejected(f"payment gateway rejected {operation}") from exc
        finally:
            gateway_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                max(0.0, time.perf_counter() - start)
            )

    @staticmethod
    def _to_authorization(intent) -> AuthorizationResult:
        return AuthorizationResult(
            authorization_id=intent.id,
            status=map_intent_status(intent.status),
            amount=getattr(intent, "amount", None),
            amount_received=getattr(intent, "amount_received", None),
            client_secret=getattr(intent, "client_secret", None),
        )

    @staticmethod
    def _to_refund(refund) -> RefundResult:
        return RefundResult(refund_id=refund.id, status=map_refund_status(refund.status))

    def create_authorization(self, amount, currency, idempotency_key, metadata) -> AuthorizationResult:
        intent = self._call(
            "create_authorization",
            lambda: self.client.payment_intents.create(
                params={
                    "amount": amount,
                    "currency": currency,
                    "automatic_payment_methods": {"enabled": True},
                    "metadata": {key: str(value) for key, value in metadata.items()},
                },
                options={"idempotency_key": idempotency_key},
            ),
        )
        return self._to_authorization(intent)

    def confirm_authorization(self, authorization_id, idempotency_key) -> AuthorizationResult:
        try:
            intent = self._call(
                "confirm_authorization",
                lambda: self.client.payment_intents.confirm(
                    authorization_id,
                    options={"idempotency_key": idempotency_key},
                ),
            )
        except stripe.CardError as exc:
            logger.info("card declined authorization_id=%s code=%s", authorization_id, exc.code)
            return AuthorizationResult(authorization_id=authorization_id, status=AuthorizationStatus.FAILED)
        return self._to_authorization(intent)

    def cancel_authorization(self, authorization_id) -> AuthorizationResult:
        intent = self._call(
            "cancel_authorization",
            lambda: self.client.payment_intents.cancel(authorization_id),
        )
        return self._to_authorization(intent)

    def retrieve_authorization(self, authorization_id) -> AuthorizationResult:
        intent = self._call(
            "retrieve_authorization",
            lambda: self.client.payment_intents.retrieve(authorization_id),
        )
        return self._to_authorization(intent)

    def create_refund(self, authorization_id, amount, idempotency_key, metadata) -> RefundResult:
        refund = self._call(
            "create_refund",
            lambda: self.client.refunds.create(
                params={
                    "payment_intent": authorization_id,
                    "amount": amount,
                    "metadata": {key: str(value) for key, value in metadata.items()},
                },
                options={"idempotency_key": idempotency_key},
            ),
        )
        return self._to_refund(refund)

    def cancel_refund(self, refund_id) -> RefundResult:
        refund = self._call("cancel_refund", lambda: self.client.refunds.cancel(refund_id))
        return self._to_refund(refund)

    def verify_webhook_signature(self, payload, header, secret) -> bool:
        if not header or not secret:
            return False
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(text, header, secret, self.settings.webhook_tolerance_seconds)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

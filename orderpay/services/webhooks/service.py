"""WebhookReconciler: verified, deduplicated gateway events.

Effects, their order cascade and the ledger row commit together, so an event
is recorded only when its effects are durable. Anything that aborts the
transaction leaves the ledger untouched and the gateway redelivers.
"""

import hashlib
import json
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from orderpay.common.db import utcnow
from orderpay.common.errors import (
    InvalidTransitionError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
    WebhookUnavailable,
)
from orderpay.common.logging import event_id_ctx, logger, order_id_ctx
from orderpay.common.metrics import (
    discarded_events_total,
    duplicate_events_skipped_total,
    webhook_events_total,
)
from orderpay.common.state_machine import AuthorizationStatus, OrderStatus
from orderpay.services.orders.models import Order
from orderpay.services.payments.gateway import STRIPE_REFUND_STATUS
from orderpay.services.payments.models import Authorization
from orderpay.services.refunds.models import Refund
from orderpay.services.webhooks.models import WebhookEvent


AUTHORIZATION_EVENTS: dict[str, AuthorizationStatus] = {
    "payment_intent.processing": AuthorizationStatus.PROCESSING,
    "payment_intent.succeeded": AuthorizationStatus.SUCCEEDED,
    "payment_intent.payment_failed": AuthorizationStatus.FAILED,
    "payment_intent.canceled": AuthorizationStatus.CANCELLED,
}

REFUND_EVENTS = frozenset({"refund.created", "refund.updated", "refund.failed", "charge.refund.updated"})


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DISCARDED = "discarded"
    IGNORED = "ignored"


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class GatewayEvent(BaseModel):
    """Stripe-shaped event envelope; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: EventData


class WebhookAck(BaseModel):
    """Identical for every delivery of one event."""

    event_id: str
    received: bool = True


class WebhookReconciler:
    """Drives authorization, refund and order state from gateway events."""

    def __init__(self, session_factory, settings, payments, refunds, gateway) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.payments = payments
        self.refunds = refunds
        self.gateway = gateway
        self.service_name = settings.service_name

    def parse(self, raw_payload: bytes) -> GatewayEvent:
        try:
            return GatewayEvent.model_validate(json.loads(raw_payload))
        except ValueError as exc:
            # JSON, UTF-8 and pydantic errors are all ValueErrors.
            raise ValidationError("malformed webhook payload") from exc

    def handle_event(
        self, raw_payload: bytes, signature_header: str | None, cancel_event: threading.Event | None = None
    ) -> WebhookAck:
        event, _ = self._process(raw_payload, signature_header, cancel_event)
        return WebhookAck(event_id=event.id)

    def process_event(
        self, raw_payload: bytes, signature_header: str | None, cancel_event: threading.Event | None = None
    ) -> WebhookOutcome:
        _, outcome = self._process(raw_payload, signature_header, cancel_event)
        return outcome

    def _process(self, raw_payload, signature_header, cancel_event) -> tuple[GatewayEvent, WebhookOutcome]:
        if not self.gateway.verify_webhook_signature(raw_payload, signature_header, self.settings.webhook_secret):
            logger.warning("webhook signature rejected")
            raise SignatureVerificationError("webhook signature verification failed")
        event = self.parse(raw_payload)
        event_id_ctx.set(event.id)
        payload_hash = hashlib.sha256(raw_payload).hexdigest()

        with self.session_factory() as db:
            seen = db.get(WebhookEvent, event.id)
            if seen is not None:
                return event, self._duplicate(event, seen.payload_hash, payload_hash)

            outcome = self._route(db, event)
            if cancel_event is not None and cancel_event.is_set():
                db.rollback()
                logger.warning("webhook handling cancelled before commit type=%s", event.type)
                raise WebhookUnavailable("webhook handling was cancelled")

            db.add(
                WebhookEvent(
                    event_id=event.id,
                    event_type=event.type,
                    payload_hash=payload_hash,
                    outcome=outcome.value,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event committed first.
                db.rollback()
                return event, self._duplicate(event, None, payload_hash)

        webhook_events_total.labels(service=self.service_name, outcome=outcome.value).inc()
        logger.info("webhook event handled type=%s outcome=%s", event.type, outcome.value)
        return event, outcome

    def _duplicate(self, event: GatewayEvent, stored_hash: str | None, payload_hash: str) -> WebhookOutcome:
        if stored_hash is not None and stored_hash != payload_hash:
            logger.warning("duplicate event id with a different payload type=%s", event.type)
        duplicate_events_skipped_total.labels(service=self.service_name, event_type=event.type).inc()
        webhook_events_total.labels(service=self.service_name, outcome=WebhookOutcome.DUPLICATE.value).inc()
        logger.info("duplicate event skipped type=%s", event.type)
        return WebhookOutcome.DUPLICATE

    def _discard(self, db, event: GatewayEvent, exc: InvalidTransitionError) -> WebhookOutcome:
        db.rollback()
        discarded_events_total.labels(service=self.service_name, event_type=event.type).inc()
        logger.warning("event discarded type=%s detail=%s", event.type, exc.message)
        return WebhookOutcome.DISCARDED

    def _route(self, db, event: GatewayEvent) -> WebhookOutcome:
        if event.type in AUTHORIZATION_EVENTS:
            return self._apply_authorization_event(db, event, AUTHORIZATION_EVENTS[event.type])
        if event.type in REFUND_EVENTS:
            return self._apply_refund_event(db, event)
        logger.info("unhandled event type ignored type=%s", event.type)
        return WebhookOutcome.IGNORED

    def _apply_authorization_event(self, db, event: GatewayEvent, target: AuthorizationStatus) -> WebhookOutcome:
        obj = event.data.object
        authorization_id = obj.get("id")
        authorization = db.get(Authorization, authorization_id) if authorization_id else None
        if authorization is None:
            order_id = (obj.get("metadata") or {}).get("order_id")
            order = db.get(Order, order_id) if order_id else None
            if order is not None and order.status == OrderStatus.PENDING.value:
                # The synchronous create has not committed its row yet.
                raise NotFoundError(f"authorization {authorization_id} not yet recorded for order {order_id}")
            logger.info("event for unknown authorization ignored authorization_id=%s", authorization_id)
            return WebhookOutcome.IGNORED

        order_id_ctx.set(authorization.order_id)
        try:
            applied = self.payments.apply_authorization_status(
                db,
                authorization,
                target,
                reason=f"webhook:{event.type}",
                event_id=event.id,
                captured_amount=obj.get("amount_received"),
            )
        except InvalidTransitionError as exc:
            return self._discard(db, event, exc)
        return WebhookOutcome.PROCESSED if applied else WebhookOutcome.IGNORED

    def _find_refund(self, db, obj: dict[str, Any]) -> Refund | None:
        gateway_refund_id = obj.get("id")
        if gateway_refund_id:
            refund = db.execute(
                select(Refund).where(Refund.gateway_refund_id == gateway_refund_id)
            ).scalar_one_or_none()
            if refund is not None:
                return refund
        refund_id = (obj.get("metadata") or {}).get("refund_id")
        refund = db.get(Refund, refund_id) if refund_id else None
        if refund is not None and refund.gateway_refund_id is None and gateway_refund_id:
            db.execute(
                update(Refund)
                .where(Refund.id == refund.id, Refund.gateway_refund_id.is_(None))
                .values(gateway_refund_id=gateway_refund_id)
                .execution_options(synchronize_session=False)
            )
            db.refresh(refund)
        return refund

    def _apply_refund_event(self, db, event: GatewayEvent) -> WebhookOutcome:
        obj = event.data.object
        target = STRIPE_REFUND_STATUS.get(obj.get("status"))
        if target is None:
            logger.warning("refund event with unknown status ignored status=%s", obj.get("status"))
            return WebhookOutcome.IGNORED
        refund = self._find_refund(db, obj)
        if refund is None:
            logger.info("event for unknown refund ignored gateway_refund_id=%s", obj.get("id"))
            return WebhookOutcome.IGNORED
        try:
            applied = self.refunds.apply_refund_status(
                db, refund, target, reason=f"webhook:{event.type}", event_id=event.id
            )
        except InvalidTransitionError as exc:
            return self._discard(db, event, exc)
        return WebhookOutcome.PROCESSED if applied else WebhookOutcome.IGNORED

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete ledger rows older than the retention horizon."""

        cutoff = (now or utcnow()) - timedelta(days=self.settings.webhook_retention_days)
        with self.session_factory() as db:
            result = db.execute(delete(WebhookEvent).where(WebhookEvent.received_at < cutoff))
            db.commit()
        logger.info("purged webhook events count=%s cutoff=%s", result.rowcount, cutoff.isoformat())
        return result.rowcount

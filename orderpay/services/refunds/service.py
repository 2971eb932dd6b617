"""RefundCoordinator: refunds against captured authorizations.

The refundable ceiling is checked and the new REQUESTED row inserted in one
transaction that locks the authorization row and bumps its version, so two
concurrent requests cannot both pass a stale remaining-amount check.
"""

from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy import func, or_, select, update

from orderpay.common.db import utcnow
from orderpay.common.errors import (
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransitionError,
    NotFoundError,
    RefundExceedsCapturedAmount,
    ValidationError,
    VersionConflict,
)
from orderpay.common.logging import logger, order_id_ctx
from orderpay.common.metrics import refund_status_total, version_conflicts_total
from orderpay.common.pagination import Page, paginate
from orderpay.common.state_machine import (
    AuthorizationStatus,
    OrderStatus,
    RefundStatus,
    validate_refund_transition,
    validate_transition,
)
from orderpay.services.orders.models import Order
from orderpay.services.payments.gateway import call_with_retries
from orderpay.services.payments.models import Authorization
from orderpay.services.refunds.models import Refund


# REQUESTED refunds reserve their amount until they settle.
COMMITTED_STATUSES = (RefundStatus.REQUESTED.value, RefundStatus.SUCCEEDED.value)


@dataclass
class RefundStats:
    user_id: str
    total_refunds: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    refunded: dict[str, int] = field(default_factory=dict)
    pending: dict[str, int] = field(default_factory=dict)


class RefundCoordinator:
    """Issues, cancels and settles refunds."""

    def __init__(self, session_factory, settings, orders, gateway) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.orders = orders
        self.gateway = gateway
        self.service_name = settings.service_name

    def _sum_refunds(self, db, authorization_id: str, statuses) -> int:
        return int(
            db.execute(
                select(func.coalesce(func.sum(Refund.amount), 0)).where(
                    Refund.authorization_id == authorization_id,
                    Refund.status.in_(statuses),
                )
            ).scalar_one()
        )

    def _load(self, db, refund_id: str) -> Refund:
        refund = db.get(Refund, refund_id)
        if refund is None:
            raise NotFoundError(f"refund {refund_id} not found")
        return refund

    def _reserve(self, authorization_id: str, amount: int | None, reason: str | None) -> tuple[Refund, str]:
        """Check the ceiling and insert the REQUESTED refund atomically."""

        with self.session_factory() as db:
            authorization = db.execute(
                select(Authorization).where(Authorization.id == authorization_id).with_for_update()
            ).scalar_one_or_none()
            if authorization is None:
                raise NotFoundError(f"authorization {authorization_id} not found")
            order_id_ctx.set(authorization.order_id)
            if authorization.status != AuthorizationStatus.SUCCEEDED.value:
                raise InvalidTransitionError(
                    f"authorization {authorization_id} is {authorization.status}; only captured payments refund"
                )
            captured = authorization.captured_amount or authorization.amount
            remaining = captured - self._sum_refunds(db, authorization_id, COMMITTED_STATUSES)
            if amount is None:
                amount = remaining
                if amount <= 0:
                    raise RefundExceedsCapturedAmount("nothing left to refund on this authorization")
            elif not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValidationError("refund amount must be a positive integer in minor currency units")
            if amount > remaining:
                raise RefundExceedsCapturedAmount(
                    f"refund of {amount} exceeds remaining refundable amount {remaining}"
                )

            # Serialises concurrent refunds even where row locks are unavailable.
            bumped = db.execute(
                update(Authorization)
                .where(
                    Authorization.id == authorization_id,
                    Authorization.state_version == authorization.state_version,
                )
                .values(state_version=authorization.state_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount != 1:
                version_conflicts_total.labels(service=self.service_name, entity="authorization").inc()
                raise VersionConflict(f"authorization {authorization_id} changed concurrently; retry the refund")

            refund_id = str(uuid4())
            refund = Refund(
                id=refund_id,
                authorization_id=authorization_id,
                amount=amount,
                currency=authorization.currency,
                reason=reason,
                status=RefundStatus.REQUESTED.value,
                idempotency_key=f"refund:{refund_id}",
            )
            db.add(refund)
            db.commit()
            return refund, authorization.order_id

    def _submit(self, refund: Refund, order_id: str):
        """Send the refund to the gateway under its own idempotency key."""

        return call_with_retries(
            "create_refund",
            lambda: self.gateway.create_refund(
                refund.authorization_id,
                refund.amount,
                refund.idempotency_key,
                {"refund_id": refund.id, "order_id": order_id},
            ),
            attempts=2,
            backoff_seconds=self.settings.gateway_backoff_seconds,
            service_name=self.service_name,
        )

    def _record_result(self, refund_id: str, result, *, reason: str) -> Refund:
        with self.session_factory() as db:
            refund = self._load(db, refund_id)
            db.execute(
                update(Refund)
                .where(Refund.id == refund_id, Refund.gateway_refund_id.is_(None))
                .values(gateway_refund_id=result.refund_id)
                .execution_options(synchronize_session=False)
            )
            db.refresh(refund)
            self.apply_refund_status(db, refund, result.status, reason=reason)
            db.commit()
            return refund

    def create_refund(self, authorization_id: str, amount: int | None = None, reason: str | None = None) -> Refund:
        """Refund `amount` (default: everything still refundable)."""

        refund, order_id = self._reserve(authorization_id, amount, reason)
        logger.info(
            "refund requested refund_id=%s authorization_id=%s amount=%s",
            refund.id,
            authorization_id,
            refund.amount,
        )
        try:
            result = self._submit(refund, order_id)
        except GatewayUnavailable:
            # The refund may have landed; it stays REQUESTED until a webhook or a cancel settles it.
            logger.warning("refund left pending after gateway failure refund_id=%s", refund.id)
            raise
        except GatewayRejected:
            with self.session_factory() as db:
                self.apply_refund_status(db, self._load(db, refund.id), RefundStatus.FAILED, reason="gateway_rejected")
                db.commit()
            raise
        return self._record_result(refund.id, result, reason="gateway_refund_response")

    def apply_refund_status(
        self, db, refund: Refund, new_status, *, reason: str, event_id: str | None = None
    ) -> bool:
        """Move a refund to `new_status`; a full refund of a PAID order marks it REFUNDED.

        Returns False when nothing changes. Runs inside the caller's transaction.
        """

        target = RefundStatus(new_status)
        if refund.status == target.value:
            return False
        validate_refund_transition(refund.status, target)
        result = db.execute(
            update(Refund)
            .where(
                Refund.id == refund.id,
                Refund.status == refund.status,
                Refund.state_version == refund.state_version,
            )
            .values(status=target.value, state_version=refund.state_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            version_conflicts_total.labels(service=self.service_name, entity="refund").inc()
            raise VersionConflict(f"refund {refund.id} changed concurrently")
        db.refresh(refund)
        refund_status_total.labels(service=self.service_name, status=target.value).inc()
        logger.info("refund status refund_id=%s status=%s reason=%s", refund.id, target.value, reason)

        if target is RefundStatus.SUCCEEDED:
            self._settle_order(db, refund, reason=reason, event_id=event_id)
        return True

    def _settle_order(self, db, refund: Refund, *, reason: str, event_id: str | None) -> None:
        authorization = db.get(Authorization, refund.authorization_id)
        captured = authorization.captured_amount or authorization.amount
        refunded = self._sum_refunds(db, authorization.id, (RefundStatus.SUCCEEDED.value,))
        if refunded < captured:
            return
        order = self.orders.get(authorization.order_id, db=db)
        try:
            validate_transition(order.status, OrderStatus.REFUNDED)
        except InvalidTransitionError:
            logger.info(
                "fully refunded order keeps its status order_id=%s status=%s",
                order.id,
                order.status,
            )
            return
        self.orders.transition(
            order.id,
            order.version,
            OrderStatus.REFUNDED,
            reason=f"fully_refunded:{reason}",
            event_id=event_id,
            db=db,
        )

    def get_refund(self, refund_id: str) -> Refund:
        with self.session_factory() as db:
            return self._load(db, refund_id)

    def _acknowledge(self, refund_id: str) -> Refund:
        """Replay the create under the stored key to learn the gateway refund id.

        The gateway returns the refund it already holds for that key, or
        creates it now. A rejection means it never accepted the refund, so
        the reservation is released locally.
        """

        with self.session_factory() as db:
            refund = self._load(db, refund_id)
            order_id = db.get(Authorization, refund.authorization_id).order_id
        try:
            result = self._submit(refund, order_id)
        except GatewayRejected:
            with self.session_factory() as db:
                refund = self._load(db, refund_id)
                self.apply_refund_status(db, refund, RefundStatus.CANCELLED, reason="gateway_rejected_on_cancel")
                db.commit()
            logger.warning("unacknowledged refund released refund_id=%s", refund_id)
            return refund
        return self._record_result(refund_id, result, reason="gateway_refund_replay")

    def cancel_refund(self, refund_id: str) -> Refund:
        """Cancel a refund while it is REQUESTED, releasing its reservation."""

        with self.session_factory() as db:
            refund = self._load(db, refund_id)
            if refund.status != RefundStatus.REQUESTED.value:
                raise InvalidTransitionError(f"refund {refund_id} is {refund.status}")
        if refund.gateway_refund_id is None:
            refund = self._acknowledge(refund_id)
            if refund.status == RefundStatus.CANCELLED.value:
                return refund
            if refund.status != RefundStatus.REQUESTED.value:
                raise InvalidTransitionError(f"gateway reports refund {refund_id} as {refund.status}")
        gateway_refund_id = refund.gateway_refund_id

        result = call_with_retries(
            "cancel_refund",
            lambda: self.gateway.cancel_refund(gateway_refund_id),
            attempts=2,
            backoff_seconds=self.settings.gateway_backoff_seconds,
            service_name=self.service_name,
        )
        with self.session_factory() as db:
            refund = self._load(db, refund_id)
            self.apply_refund_status(db, refund, result.status, reason="refund_cancelled")
            db.commit()
        if refund.status != RefundStatus.CANCELLED.value:
            raise InvalidTransitionError(f"gateway reports refund {refund_id} as {refund.status}")
        return refund

    def _user_refunds(self, user_id: str):
        return (
            select(Refund)
            .join(Authorization, Authorization.id == Refund.authorization_id)
            .join(Order, Order.id == Authorization.order_id)
            .where(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
        )

    def refunds_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> Page:
        stmt = self._user_refunds(user_id).order_by(Refund.created_at.desc(), Refund.id.desc())
        with self.session_factory() as db:
            return paginate(db, stmt, page, limit)

    def refund_stats(self, user_id: str) -> RefundStats:
        """Counts by status plus settled and pending amounts per currency."""

        stats = RefundStats(user_id=user_id)
        refunds = self._user_refunds(user_id).subquery()
        with self.session_factory() as db:
            rows = db.execute(
                select(refunds.c.status, refunds.c.currency, func.count(), func.sum(refunds.c.amount)).group_by(
                    refunds.c.status, refunds.c.currency
                )
            ).all()
        for status, currency, count, total in rows:
            stats.by_status[status] = stats.by_status.get(status, 0) + int(count)
            if status == RefundStatus.SUCCEEDED.value:
                stats.refunded[currency] = stats.refunded.get(currency, 0) + int(total or 0)
            elif status == RefundStatus.REQUESTED.value:
                stats.pending[currency] = stats.pending.get(currency, 0) + int(total or 0)
        stats.total_refunds = sum(stats.by_status.values())
        return stats

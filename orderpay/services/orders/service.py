"""OrderStore: order records, their version history and read aggregates.

Every state change goes through `transition`, which enforces the order state
machine and an optimistic-concurrency guard on `(id, status, version)`.
"""

from dataclasses import dataclass, field

from sqlalchemy import func, or_, select, update

from orderpay.common.db import session_scope, utcnow
from orderpay.common.errors import NotFoundError, ValidationError, VersionConflict
from orderpay.common.logging import logger
from orderpay.common.metrics import order_transitions_total, version_conflicts_total
from orderpay.common.pagination import Page, paginate
from orderpay.common.state_machine import OrderStatus, coerce_status, validate_transition
from orderpay.services.orders.models import Order, OrderTimeline


CAPTURED_STATUSES = (OrderStatus.PAID.value, OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value)
USER_ROLES = ("buyer", "seller")


@dataclass
class OrderStats:
    user_id: str
    total_orders: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    captured_as_buyer: dict[str, int] = field(default_factory=dict)
    captured_as_seller: dict[str, int] = field(default_factory=dict)


class OrderStore:
    """Owns order rows; no other component writes to them directly."""

    MUTABLE_FIELDS = frozenset({"authorization_id"})

    def __init__(self, session_factory, settings) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.service_name = settings.service_name

    def _validate_currency(self, currency) -> str:
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise ValidationError("currency must be a 3-letter ISO 4217 code")
        code = currency.lower()
        if code not in self.settings.supported_currencies:
            raise ValidationError(f"unsupported currency: {code}")
        return code

    def create_order(self, buyer_id: str, seller_id: str, product_id: str, amount: int, currency: str) -> Order:
        """Persist a new order in `PENDING` at version 0."""

        for name, value in (("buyer_id", buyer_id), ("seller_id", seller_id), ("product_id", product_id)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")
        # bool is an int subclass; amounts are minor units, never floats.
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("amount must be a positive integer in minor currency units")
        code = self._validate_currency(currency)

        with self.session_factory() as db:
            order = Order(
                buyer_id=buyer_id,
                seller_id=seller_id,
                product_id=product_id,
                amount=amount,
                currency=code,
                status=OrderStatus.PENDING.value,
                version=0,
            )
            db.add(order)
            db.flush()
            db.add(
                OrderTimeline(
                    order_id=order.id,
                    from_status=None,
                    to_status=OrderStatus.PENDING.value,
                    version=0,
                    reason="order_created",
                    event_id=None,
                )
            )
            db.commit()
            logger.info("order created order_id=%s amount=%s currency=%s", order.id, amount, code)
            return order

    def _validate_fields(self, fields: dict | None) -> dict:
        values = dict(fields or {})
        unknown = set(values) - self.MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields not updatable through transition: {sorted(unknown)}")
        return values

    def _conflict(self, order_id: str, expected_version: int, found_version) -> VersionConflict:
        version_conflicts_total.labels(service=self.service_name, entity="order").inc()
        logger.warning(
            "order version conflict order_id=%s expected_version=%s found_version=%s",
            order_id,
            expected_version,
            found_version,
        )
        return VersionConflict()

    def transition(
        self,
        order_id: str,
        expected_version: int,
        new_status,
        fields: dict | None = None,
        *,
        reason: str = "status_update",
        event_id: str | None = None,
        db=None,
    ) -> Order:
        """Apply one validated state transition with optimistic concurrency.

        The write is guarded by `(id, status, version)`, so a stale caller gets
        `VersionConflict` instead of silently overwriting a concurrent change.
        When `db` is given the transition joins that transaction and the caller
        commits.
        """

        target = coerce_status(OrderStatus, new_status)
        values = self._validate_fields(fields)
        with session_scope(self.session_factory, db) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            if order.version != expected_version:
                raise self._conflict(order_id, expected_version, order.version)
            validate_transition(order.status, target)
            from_status = order.status

            result = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == from_status,
                    Order.version == expected_version,
                )
                .values(
                    status=target.value,
                    version=expected_version + 1,
                    updated_at=utcnow(),
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise self._conflict(order_id, expected_version, None)

            session.refresh(order)
            session.add(
                OrderTimeline(
                    order_id=order_id,
                    from_status=from_status,
                    to_status=target.value,
                    version=expected_version + 1,
                    reason=reason,
                    event_id=event_id,
                )
            )
            session.flush()
        order_transitions_total.labels(
            service=self.service_name,
            from_status=from_status,
            to_status=target.value,
        ).inc()
        logger.info(
            "order transition order_id=%s %s->%s version=%s reason=%s",
            order_id,
            from_status,
            target.value,
            expected_version + 1,
            reason,
        )
        return order

    def get(self, order_id: str, db=None) -> Order:
        with session_scope(self.session_factory, db) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            return order

    def history(self, order_id: str) -> list[OrderTimeline]:
        """Return the version history of one order, oldest first."""

        with self.session_factory() as db:
            if db.get(Order, order_id) is None:
                raise NotFoundError(f"order {order_id} not found")
            return list(
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order_id)
                    .order_by(OrderTimeline.version.asc())
                )
                .scalars()
                .all()
            )

    def cancel(self, order_id: str, user_id: str, expected_version: int | None = None, db=None) -> Order:
        """User-initiated cancellation by the buyer or the seller."""

        order = self.get(order_id, db=db)
        if user_id not in (order.buyer_id, order.seller_id):
            raise ValidationError("only the buyer or the seller can cancel this order")
        version = order.version if expected_version is None else expected_version
        return self.transition(
            order_id,
            version,
            OrderStatus.CANCELLED,
            reason=f"cancelled_by_user:{user_id}",
            db=db,
        )

    def list_by_user(self, user_id: str, role: str, page: int = 1, limit: int = 10) -> Page:
        """Orders where `user_id` is the buyer or the seller, most recent first."""

        if role not in USER_ROLES:
            raise ValidationError("role must be buyer or seller")
        column = Order.buyer_id if role == "buyer" else Order.seller_id
        stmt = select(Order).where(column == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        with self.session_factory() as db:
            return paginate(db, stmt, page, limit)

    def stats_by_user(self, user_id: str) -> OrderStats:
        """Counts by status and captured amounts per currency for one user."""

        stats = OrderStats(user_id=user_id)
        with self.session_factory() as db:
            rows = db.execute(
                select(Order.status, func.count(Order.id))
                .where(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
                .group_by(Order.status)
            ).all()
            stats.by_status = {status: int(count) for status, count in rows}
            stats.total_orders = sum(stats.by_status.values())
            for column, target in (
                (Order.buyer_id, stats.captured_as_buyer),
                (Order.seller_id, stats.captured_as_seller),
            ):
                sums = db.execute(
                    select(Order.currency, func.sum(Order.amount))
                    .where(column == user_id, Order.status.in_(CAPTURED_STATUSES))
                    .group_by(Order.currency)
                ).all()
                target.update({currency: int(total or 0) for currency, total in sums})
        return stats

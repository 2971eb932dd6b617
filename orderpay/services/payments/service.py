"""PaymentCoordinator: authorizations against the gateway and their order cascade.

Authorization status changes reach the database through one guarded apply
operation shared by the synchronous gateway path (this module) and the webhook
reconciler, so either caller may land a given status first without the other
double-applying it.
"""

import hmac
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from orderpay.common.db import utcnow
from orderpay.common.errors import (
    InvalidTransitionError,
    NotFoundError,
    OrderPayError,
    ValidationError,
    VersionConflict,
)
from orderpay.common.logging import logger, order_id_ctx
from orderpay.common.metrics import authorization_status_total, version_conflicts_total
from orderpay.common.pagination import Page, paginate
from orderpay.common.state_machine import (
    ORDER_STATUS_FOR_AUTHORIZATION,
    AuthorizationStatus,
    OrderStatus,
    validate_authorization_transition,
)
from orderpay.services.orders.models import Order
from orderpay.services.payments.gateway import call_with_retries, idempotency_key
from orderpay.services.payments.models import Authorization


CANCELLABLE_STATUSES = (AuthorizationStatus.REQUIRES_CONFIRMATION, AuthorizationStatus.PROCESSING)


class PaymentCoordinator:
    """Creates, confirms and cancels authorizations for orders."""

    def __init__(self, session_factory, settings, orders, gateway) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.orders = orders
        self.gateway = gateway
        self.service_name = settings.service_name

    def _validate_amount(self, amount, currency) -> str:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError("amount must be an integer in minor currency units")
        if amount < self.settings.min_amount or amount > self.settings.max_amount:
            raise ValidationError(
                f"amount must be between {self.settings.min_amount} and {self.settings.max_amount}"
            )
        if not isinstance(currency, str) or currency.lower() not in self.settings.supported_currencies:
            raise ValidationError(f"unsupported currency: {currency}")
        return currency.lower()

    def _mutating_call(self, operation: str, fn):
        # Mutating calls reuse their idempotency key and are retried at most once.
        return call_with_retries(
            operation,
            fn,
            attempts=2,
            backoff_seconds=self.settings.gateway_backoff_seconds,
            service_name=self.service_name,
        )

    def _read_call(self, operation: str, fn):
        return call_with_retries(
            operation,
            fn,
            attempts=1 + self.settings.gateway_read_retries,
            backoff_seconds=self.settings.gateway_backoff_seconds,
            service_name=self.service_name,
        )

    def _load(self, db, authorization_id: str) -> Authorization:
        authorization = db.get(Authorization, authorization_id)
        if authorization is None:
            raise NotFoundError(f"authorization {authorization_id} not found")
        return authorization

    def apply_authorization_status(
        self,
        db,
        authorization: Authorization,
        new_status,
        *,
        reason: str,
        event_id: str | None = None,
        captured_amount: int | None = None,
        order_version: int | None = None,
    ) -> bool:
        """Move an authorization to `new_status` and cascade to its order.

        Returns False when the authorization already has that status. Raises
        `InvalidTransitionError` when the authorization or its order cannot make
        the move from their stored state, and `VersionConflict` when a
        concurrent writer got there first (or the order is no longer at
        `order_version`). Runs inside the caller's transaction.
        """

        target = AuthorizationStatus(new_status)
        order_target = ORDER_STATUS_FOR_AUTHORIZATION.get(target)
        order = None
        if order_target is not None:
            order = self.orders.get(authorization.order_id, db=db)
            if order_version is not None and order.version != order_version:
                version_conflicts_total.labels(service=self.service_name, entity="order").inc()
                raise VersionConflict()

        if authorization.status == target.value:
            return False
        validate_authorization_transition(authorization.status, target)

        if order is not None:
            if order.authorization_id != authorization.id:
                raise InvalidTransitionError(
                    f"order {order.id} is not attached to authorization {authorization.id}"
                )
            self.orders.transition(
                order.id,
                order.version if order_version is None else order_version,
                order_target,
                reason=reason,
                event_id=event_id,
                db=db,
            )

        values = {
            "status": target.value,
            "state_version": authorization.state_version + 1,
            "updated_at": utcnow(),
        }
        if target is AuthorizationStatus.SUCCEEDED:
            values["captured_amount"] = captured_amount or authorization.amount
        result = db.execute(
            update(Authorization)
            .where(
                Authorization.id == authorization.id,
                Authorization.status == authorization.status,
                Authorization.state_version == authorization.state_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            version_conflicts_total.labels(service=self.service_name, entity="authorization").inc()
            raise VersionConflict(f"authorization {authorization.id} changed concurrently")
        db.refresh(authorization)
        authorization_status_total.labels(service=self.service_name, status=target.value).inc()
        logger.info(
            "authorization status authorization_id=%s status=%s reason=%s",
            authorization.id,
            target.value,
            reason,
        )
        return True

    def create_authorization(
        self, amount: int, currency: str, order_id: str, metadata: dict[str, Any] | None = None
    ) -> Authorization:
        """Authorize payment for a PENDING order and move it to AUTHORIZING."""

        code = self._validate_amount(amount, currency)
        order_id_ctx.set(order_id)
        key = idempotency_key(order_id, "create_authorization")
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"order {order_id} not found")
            existing = db.execute(
                select(Authorization).where(Authorization.idempotency_key == key)
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("authorization reused order_id=%s authorization_id=%s", order_id, existing.id)
                return existing
            # Fail fast: no gateway call for an order that cannot authorize.
            if order.status != OrderStatus.PENDING.value:
                raise InvalidTransitionError(f"order {order_id} is {order.status}, expected PENDING")
            if order.amount != amount or order.currency != code:
                raise ValidationError("amount and currency must match the order")
            expected_version = order.version

        gateway_metadata = {key_: value for key_, value in (metadata or {}).items()}
        gateway_metadata["order_id"] = order_id
        result = self._mutating_call(
            "create_authorization",
            lambda: self.gateway.create_authorization(amount, code, key, gateway_metadata),
        )

        with self.session_factory() as db:
            authorization = Authorization(
                id=result.authorization_id,
                order_id=order_id,
                amount=result.amount or amount,
                currency=code,
                status=AuthorizationStatus.REQUIRES_CONFIRMATION.value,
                client_secret=result.client_secret,
                idempotency_key=key,
                gateway_metadata=gateway_metadata,
            )
            try:
                db.add(authorization)
                db.flush()
                self.orders.transition(
                    order_id,
                    expected_version,
                    OrderStatus.AUTHORIZING,
                    {"authorization_id": authorization.id},
                    reason="authorization_created",
                    db=db,
                )
                if result.status is not AuthorizationStatus.REQUIRES_CONFIRMATION:
                    self.apply_authorization_status(
                        db,
                        authorization,
                        result.status,
                        reason="gateway_create_response",
                        captured_amount=result.amount_received,
                    )
                db.commit()
            except IntegrityError:
                db.rollback()
                winner = db.execute(
                    select(Authorization).where(Authorization.idempotency_key == key)
                ).scalar_one_or_none()
                if winner is None:
                    raise
                logger.info("concurrent create resolved to authorization_id=%s", winner.id)
                return winner
            except (VersionConflict, InvalidTransitionError):
                db.rollback()
                self._release_orphan(result.authorization_id)
                raise
        logger.info(
            "authorization created order_id=%s authorization_id=%s status=%s",
            order_id,
            authorization.id,
            authorization.status,
        )
        return authorization

    def _release_orphan(self, authorization_id: str) -> None:
        """Best-effort cancel of a gateway authorization no order will use."""

        try:
            self.gateway.cancel_authorization(authorization_id)
            logger.warning("released orphaned authorization authorization_id=%s", authorization_id)
        except OrderPayError as exc:
            logger.error(
                "failed to release orphaned authorization authorization_id=%s error=%s",
                authorization_id,
                exc,
            )

    def confirm_authorization(self, authorization_id: str, client_secret: str | None = None) -> Authorization:
        """Confirm at the gateway and apply a terminal synchronous outcome."""

        with self.session_factory() as db:
            authorization = self._load(db, authorization_id)
            order_id_ctx.set(authorization.order_id)
            if client_secret is not None and not hmac.compare_digest(
                client_secret, authorization.client_secret or ""
            ):
                raise ValidationError("client secret does not match the authorization")
            if authorization.status == AuthorizationStatus.SUCCEEDED.value:
                return authorization
            if authorization.status in (AuthorizationStatus.FAILED.value, AuthorizationStatus.CANCELLED.value):
                raise InvalidTransitionError(f"authorization {authorization_id} is {authorization.status}")
            order_id = authorization.order_id

        key = idempotency_key(order_id, "confirm_authorization")
        result = self._mutating_call(
            "confirm_authorization",
            lambda: self.gateway.confirm_authorization(authorization_id, key),
        )
        with self.session_factory() as db:
            authorization = self._load(db, authorization_id)
            if result.status is not AuthorizationStatus.REQUIRES_CONFIRMATION:
                try:
                    self.apply_authorization_status(
                        db,
                        authorization,
                        result.status,
                        reason="gateway_confirm_response",
                        captured_amount=result.amount_received,
                    )
                except InvalidTransitionError:
                    # A webhook already landed a different terminal state; it stands.
                    db.rollback()
                    logger.warning(
                        "confirm response discarded authorization_id=%s stored=%s gateway=%s",
                        authorization_id,
                        authorization.status,
                        result.status.value,
                    )
                    return self._load(db, authorization_id)
            db.commit()
            return authorization

    def cancel_authorization(
        self, authorization_id: str, expected_order_version: int | None = None
    ) -> Authorization:
        """Cancel an unconfirmed or processing authorization and its order.

        A SUCCEEDED authorization must be refunded instead.
        """

        with self.session_factory() as db:
            authorization = self._load(db, authorization_id)
            order_id_ctx.set(authorization.order_id)
            if authorization.status not in {status.value for status in CANCELLABLE_STATUSES}:
                raise InvalidTransitionError(
                    f"authorization {authorization_id} is {authorization.status}; "
                    "captured payments must be refunded"
                )
            if expected_order_version is not None:
                order = self.orders.get(authorization.order_id, db=db)
                if order.version != expected_order_version:
                    version_conflicts_total.labels(service=self.service_name, entity="order").inc()
                    raise VersionConflict()

        result = self._mutating_call(
            "cancel_authorization",
            lambda: self.gateway.cancel_authorization(authorization_id),
        )
        with self.session_factory() as db:
            authorization = self._load(db, authorization_id)
            self.apply_authorization_status(
                db,
                authorization,
                result.status,
                reason="authorization_cancelled",
                order_version=expected_order_version,
            )
            db.commit()
        if authorization.status != AuthorizationStatus.CANCELLED.value:
            raise InvalidTransitionError(
                f"gateway reports authorization {authorization_id} as {authorization.status}"
            )
        return authorization

    def get_authorization(self, authorization_id: str, refresh: bool = False) -> Authorization:
        """Return the local projection, optionally converging it with the gateway."""

        with self.session_factory() as db:
            authorization = self._load(db, authorization_id)
        if not refresh:
            return authorization

        result = self._read_call(
            "retrieve_authorization",
            lambda: self.gateway.retrieve_authorization(authorization_id),
        )
        with self.session_factory() as db:
            authorization = self._load(db, authorization_id)
            try:
                applied = self.apply_authorization_status(
                    db,
                    authorization,
                    result.status,
                    reason="gateway_refresh",
                    captured_amount=result.amount_received,
                )
            except InvalidTransitionError:
                db.rollback()
                logger.warning(
                    "gateway status not applicable authorization_id=%s stored=%s gateway=%s",
                    authorization_id,
                    authorization.status,
                    result.status.value,
                )
                return self._load(db, authorization_id)
            if applied:
                db.commit()
            return authorization

    def cancel_order(self, order_id: str, user_id: str, expected_version: int | None = None) -> Order:
        """User-facing cancellation that also releases an open authorization."""

        order_id_ctx.set(order_id)
        order = self.orders.get(order_id)
        if user_id not in (order.buyer_id, order.seller_id):
            raise ValidationError("only the buyer or the seller can cancel this order")
        if expected_version is not None and order.version != expected_version:
            version_conflicts_total.labels(service=self.service_name, entity="order").inc()
            raise VersionConflict()
        version = order.version
        if order.status == OrderStatus.PENDING.value:
            return self.orders.cancel(order_id, user_id, version)
        if order.status == OrderStatus.AUTHORIZING.value and order.authorization_id:
            self.cancel_authorization(order.authorization_id, expected_order_version=version)
            return self.orders.get(order_id)
        raise InvalidTransitionError(
            f"order {order_id} is {order.status}; paid orders are cancelled through a refund"
        )

    def payment_history(self, user_id: str, page: int = 1, limit: int = 10) -> Page:
        """Authorizations on orders bought by `user_id`, most recent first."""

        stmt = (
            select(Authorization)
            .join(Order, Order.id == Authorization.order_id)
            .where(Order.buyer_id == user_id)
            .order_by(Authorization.created_at.desc(), Authorization.id.desc())
        )
        with self.session_factory() as db:
            return paginate(db, stmt, page, limit)

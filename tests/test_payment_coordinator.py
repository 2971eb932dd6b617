"""PaymentCoordinator: authorization lifecycle, idempotency and gateway retries."""

import pytest
from sqlalchemy import select

from orderpay.common.errors import (
    GatewayUnavailable,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    VersionConflict,
)
from orderpay.common.state_machine import AuthorizationStatus, OrderStatus
from orderpay.services.payments.gateway import PaymentGateway, idempotency_key
from orderpay.services.payments.models import Authorization


def test_fake_gateway_satisfies_protocol(gateway):
    assert isinstance(gateway, PaymentGateway)


def test_confirmed_authorization_pays_order_and_cannot_be_cancelled(create_order, payments, orders):
    order = create_order(amount=5000, currency="usd")

    authorization = payments.create_authorization(5000, "usd", order.id)
    assert authorization.status == "REQUIRES_CONFIRMATION"
    assert orders.get(order.id).status == "AUTHORIZING"
    assert orders.get(order.id).authorization_id == authorization.id

    confirmed = payments.confirm_authorization(authorization.id, authorization.client_secret)
    assert confirmed.status == "SUCCEEDED"
    assert confirmed.captured_amount == 5000
    assert orders.get(order.id).status == "PAID"

    with pytest.raises(InvalidTransitionError):
        payments.cancel_authorization(authorization.id)
    assert orders.get(order.id).status == "PAID"


def test_create_authorization_is_idempotent_per_order(create_order, payments, gateway):
    order = create_order()

    first = payments.create_authorization(5000, "usd", order.id)
    second = payments.create_authorization(5000, "usd", order.id)

    assert first.id == second.id
    assert gateway.count("create_authorization") == 1
    assert payments.payment_history("buyer-1").total == 1


def test_concurrent_create_returns_the_committed_authorization(
    create_order, payments, orders, gateway, session_factory, monkeypatch
):
    """Another request commits the same authorization while this one waits on the gateway."""

    order = create_order()
    key = idempotency_key(order.id, "create_authorization")
    original_create = gateway.create_authorization

    def create_while_another_request_commits(amount, currency, idempotency_key_, metadata):
        result = original_create(amount, currency, idempotency_key_, metadata)
        with session_factory() as db:
            db.add(
                Authorization(
                    id=result.authorization_id,
                    order_id=order.id,
                    amount=amount,
                    currency=currency,
                    status=AuthorizationStatus.REQUIRES_CONFIRMATION.value,
                    client_secret=result.client_secret,
                    idempotency_key=idempotency_key_,
                    gateway_metadata=dict(metadata),
                )
            )
            orders.transition(
                order.id,
                0,
                OrderStatus.AUTHORIZING,
                {"authorization_id": result.authorization_id},
                reason="authorization_created",
                db=db,
            )
            db.commit()
        return result

    monkeypatch.setattr(gateway, "create_authorization", create_while_another_request_commits)

    authorization = payments.create_authorization(5000, "usd", order.id)

    with session_factory() as db:
        rows = db.execute(select(Authorization).where(Authorization.idempotency_key == key)).scalars().all()
    assert [row.id for row in rows] == [authorization.id]
    assert orders.get(order.id).authorization_id == authorization.id
    assert [row.to_status for row in orders.history(order.id)] == ["PENDING", "AUTHORIZING"]
    assert gateway.count("cancel_authorization") == 0


def test_create_authorization_validates_before_calling_gateway(create_order, payments, gateway):
    order = create_order(amount=5000)

    with pytest.raises(ValidationError):
        payments.create_authorization(49, "usd", order.id)
    with pytest.raises(ValidationError):
        payments.create_authorization(5000, "jpy", order.id)
    with pytest.raises(ValidationError):
        payments.create_authorization(4000, "usd", order.id)
    with pytest.raises(NotFoundError):
        payments.create_authorization(5000, "usd", "missing")
    assert gateway.calls == []


def test_create_authorization_requires_pending_order(create_order, orders, payments, gateway):
    order = create_order()
    orders.cancel(order.id, "buyer-1")

    with pytest.raises(InvalidTransitionError):
        payments.create_authorization(5000, "usd", order.id)
    assert gateway.calls == []


def test_create_authorization_retries_once_with_same_key(create_order, payments, gateway):
    order = create_order()
    gateway.failures["create_authorization"] = [GatewayUnavailable()]

    authorization = payments.create_authorization(5000, "usd", order.id)

    keys = [key for name, key in gateway.calls if name == "create_authorization"]
    assert keys == [idempotency_key(order.id, "create_authorization")] * 2
    assert authorization.status == "REQUIRES_CONFIRMATION"


def test_create_authorization_gives_up_after_second_failure(create_order, payments, gateway, orders):
    order = create_order()
    gateway.failures["create_authorization"] = [GatewayUnavailable(), GatewayUnavailable()]

    with pytest.raises(GatewayUnavailable):
        payments.create_authorization(5000, "usd", order.id)
    assert gateway.count("create_authorization") == 2
    assert orders.get(order.id).status == "PENDING"


def test_cancel_during_create_releases_gateway_authorization(create_order, payments, gateway, orders):
    order = create_order()
    original = gateway.create_authorization

    def create_then_user_cancels(*args):
        result = original(*args)
        orders.cancel(order.id, "buyer-1")
        return result

    gateway.create_authorization = create_then_user_cancels

    with pytest.raises(VersionConflict):
        payments.create_authorization(5000, "usd", order.id)
    assert gateway.count("cancel_authorization") == 1
    assert orders.get(order.id).status == "CANCELLED"
    assert payments.payment_history("buyer-1").total == 0


def test_gateway_metadata_carries_order_id(create_order, payments, gateway):
    order = create_order()

    authorization = payments.create_authorization(5000, "usd", order.id, {"cart": "c-1"})

    assert gateway.metadata[authorization.id] == {"cart": "c-1", "order_id": order.id}
    assert authorization.gateway_metadata["order_id"] == order.id


def test_confirm_is_idempotent_once_succeeded(create_order, payments, gateway):
    order = create_order()
    authorization = payments.create_authorization(5000, "usd", order.id)
    payments.confirm_authorization(authorization.id)

    again = payments.confirm_authorization(authorization.id)

    assert again.status == "SUCCEEDED"
    assert gateway.count("confirm_authorization") == 1


def test_confirm_rejects_wrong_client_secret(create_order, payments, gateway):
    order = create_order()
    authorization = payments.create_authorization(5000, "usd", order.id)

    with pytest.raises(ValidationError):
        payments.confirm_authorization(authorization.id, "not-the-secret")
    assert gateway.count("confirm_authorization") == 0


def test_declined_confirmation_fails_order(create_order, payments, gateway, orders):
    order = create_order()
    gateway.confirm_status = AuthorizationStatus.FAILED
    authorization = payments.create_authorization(5000, "usd", order.id)

    failed = payments.confirm_authorization(authorization.id)

    assert failed.status == "FAILED"
    assert orders.get(order.id).status == "FAILED"
    with pytest.raises(InvalidTransitionError):
        payments.confirm_authorization(authorization.id)


def test_processing_confirmation_leaves_order_authorizing(create_order, payments, gateway, orders):
    order = create_order()
    gateway.confirm_status = AuthorizationStatus.PROCESSING
    authorization = payments.create_authorization(5000, "usd", order.id)

    processing = payments.confirm_authorization(authorization.id)

    assert processing.status == "PROCESSING"
    assert orders.get(order.id).status == "AUTHORIZING"


def test_cancel_authorization_cancels_order(create_order, payments, orders):
    order = create_order()
    authorization = payments.create_authorization(5000, "usd", order.id)

    cancelled = payments.cancel_authorization(authorization.id)

    assert cancelled.status == "CANCELLED"
    assert orders.get(order.id).status == "CANCELLED"


def test_refresh_converges_with_gateway(create_order, payments, gateway, orders):
    order = create_order()
    gateway.confirm_status = AuthorizationStatus.PROCESSING
    authorization = payments.create_authorization(5000, "usd", order.id)
    payments.confirm_authorization(authorization.id)
    gateway.failures["retrieve_authorization"] = [GatewayUnavailable()] * 3

    local = payments.get_authorization(authorization.id)
    refreshed = payments.get_authorization(authorization.id, refresh=True)

    assert local.status == "PROCESSING"
    assert refreshed.status == "SUCCEEDED"
    assert gateway.count("retrieve_authorization") == 4
    assert orders.get(order.id).status == "PAID"


def test_refresh_gives_up_after_read_retries(create_order, payments, gateway):
    order = create_order()
    authorization = payments.create_authorization(5000, "usd", order.id)
    gateway.failures["retrieve_authorization"] = [GatewayUnavailable()] * 4

    with pytest.raises(GatewayUnavailable):
        payments.get_authorization(authorization.id, refresh=True)


def test_refresh_ignores_conflicting_gateway_status(create_order, payments, gateway):
    order = create_order()
    authorization = payments.create_authorization(5000, "usd", order.id)
    payments.confirm_authorization(authorization.id)
    gateway.retrieve_status = AuthorizationStatus.FAILED

    refreshed = payments.get_authorization(authorization.id, refresh=True)

    assert refreshed.status == "SUCCEEDED"


def test_cancel_order_paths(create_order, payments, orders):
    pending = create_order()
    assert payments.cancel_order(pending.id, "buyer-1").status == "CANCELLED"

    authorizing = create_order()
    payments.create_authorization(5000, "usd", authorizing.id)
    cancelled = payments.cancel_order(authorizing.id, "seller-1", expected_version=1)
    assert cancelled.status == "CANCELLED"

    paid = create_order()
    authorization = payments.create_authorization(5000, "usd", paid.id)
    payments.confirm_authorization(authorization.id)
    with pytest.raises(InvalidTransitionError):
        payments.cancel_order(paid.id, "buyer-1")
    assert orders.get(paid.id).status == OrderStatus.PAID.value


def test_cancel_order_with_stale_version_conflicts(create_order, payments):
    order = create_order()
    authorization = payments.create_authorization(5000, "usd", order.id)
    payments.confirm_authorization(authorization.id)

    with pytest.raises(VersionConflict):
        payments.cancel_order(order.id, "buyer-1", expected_version=1)


def test_cancel_order_rejects_strangers(create_order, payments):
    order = create_order()

    with pytest.raises(ValidationError):
        payments.cancel_order(order.id, "stranger")


def test_payment_history_lists_buyer_authorizations(create_order, payments):
    for _ in range(3):
        order = create_order(buyer_id="alice")
        payments.create_authorization(5000, "usd", order.id)
    other = create_order(buyer_id="bob")
    payments.create_authorization(5000, "usd", other.id)

    history = payments.payment_history("alice", page=1, limit=2)

    assert history.total == 3
    assert len(history.items) == 2
    assert {item.order_id for item in payments.payment_history("bob").items} == {other.id}

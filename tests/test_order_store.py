"""OrderStore: creation, guarded transitions, history and read aggregates."""

import pytest

from orderpay.common.errors import InvalidTransitionError, NotFoundError, ValidationError, VersionConflict
from orderpay.common.state_machine import OrderStatus


def test_create_order_starts_pending_at_version_zero(create_order, orders):
    order = create_order(currency="USD")

    assert order.status == OrderStatus.PENDING.value
    assert order.version == 0
    assert order.currency == "usd"
    history = orders.history(order.id)
    assert [(row.from_status, row.to_status, row.reason) for row in history] == [
        (None, "PENDING", "order_created")
    ]


@pytest.mark.parametrize(
    "amount,currency",
    [(0, "usd"), (-5, "usd"), (10.5, "usd"), (True, "usd"), (100, "us"), (100, "jpy"), (100, "12a")],
)
def test_create_order_rejects_bad_amount_or_currency(orders, amount, currency):
    with pytest.raises(ValidationError):
        orders.create_order("buyer-1", "seller-1", "product-1", amount, currency)


def test_create_order_requires_ids(orders):
    with pytest.raises(ValidationError):
        orders.create_order("", "seller-1", "product-1", 100, "usd")


def test_transition_bumps_version_and_records_history(create_order, orders):
    order = create_order()

    updated = orders.transition(order.id, 0, OrderStatus.AUTHORIZING, {"authorization_id": "pi_1"})

    assert updated.status == "AUTHORIZING"
    assert updated.version == 1
    assert updated.authorization_id == "pi_1"
    last = orders.history(order.id)[-1]
    assert (last.from_status, last.to_status, last.version) == ("PENDING", "AUTHORIZING", 1)


def test_stale_version_is_rejected(create_order, orders):
    order = create_order()
    orders.transition(order.id, 0, OrderStatus.AUTHORIZING)

    with pytest.raises(VersionConflict):
        orders.transition(order.id, 0, OrderStatus.CANCELLED)
    assert orders.get(order.id).status == "AUTHORIZING"


def test_invalid_edge_is_rejected(create_order, orders):
    order = create_order()

    with pytest.raises(InvalidTransitionError):
        orders.transition(order.id, 0, OrderStatus.SHIPPED)
    assert orders.get(order.id).version == 0


def test_transition_rejects_unknown_status_and_fields(create_order, orders):
    order = create_order()

    with pytest.raises(ValidationError):
        orders.transition(order.id, 0, "ARCHIVED")
    with pytest.raises(ValidationError):
        orders.transition(order.id, 0, OrderStatus.AUTHORIZING, {"amount": 1})


def test_unknown_order(orders):
    with pytest.raises(NotFoundError):
        orders.get("missing")
    with pytest.raises(NotFoundError):
        orders.transition("missing", 0, OrderStatus.CANCELLED)
    with pytest.raises(NotFoundError):
        orders.history("missing")


def test_transition_joins_caller_transaction(create_order, orders, session_factory):
    order = create_order()

    with session_factory() as db:
        orders.transition(order.id, 0, OrderStatus.CANCELLED, db=db)
        db.rollback()

    assert orders.get(order.id).status == "PENDING"


def test_cancel_requires_participant(create_order, orders):
    order = create_order()

    with pytest.raises(ValidationError):
        orders.cancel(order.id, "stranger")
    cancelled = orders.cancel(order.id, "seller-1")
    assert cancelled.status == "CANCELLED"
    assert orders.history(order.id)[-1].reason == "cancelled_by_user:seller-1"


def test_list_by_user_pages_by_role(create_order, orders):
    for _ in range(3):
        create_order(buyer_id="alice", seller_id="bob")
    create_order(buyer_id="bob", seller_id="carol")

    as_buyer = orders.list_by_user("alice", "buyer", page=1, limit=2)
    assert as_buyer.total == 3
    assert len(as_buyer.items) == 2
    assert as_buyer.total_pages == 2
    assert len(orders.list_by_user("alice", "buyer", page=2, limit=2).items) == 1
    assert orders.list_by_user("bob", "seller").total == 3
    assert orders.list_by_user("bob", "buyer").total == 1


def test_list_by_user_validates_arguments(orders):
    with pytest.raises(ValidationError):
        orders.list_by_user("alice", "admin")
    with pytest.raises(ValidationError):
        orders.list_by_user("alice", "buyer", page=0)
    with pytest.raises(ValidationError):
        orders.list_by_user("alice", "buyer", limit=101)


def test_stats_by_user_reports_per_currency(create_order, orders):
    paid = create_order(amount=1000, buyer_id="alice", seller_id="bob")
    orders.transition(paid.id, 0, OrderStatus.AUTHORIZING)
    orders.transition(paid.id, 1, OrderStatus.PAID)
    paid_eur = create_order(amount=700, currency="eur", buyer_id="alice", seller_id="bob")
    orders.transition(paid_eur.id, 0, OrderStatus.AUTHORIZING)
    orders.transition(paid_eur.id, 1, OrderStatus.PAID)
    create_order(amount=300, buyer_id="alice", seller_id="bob")
    sold = create_order(amount=900, buyer_id="carol", seller_id="alice")
    orders.transition(sold.id, 0, OrderStatus.AUTHORIZING)
    orders.transition(sold.id, 1, OrderStatus.PAID)

    stats = orders.stats_by_user("alice")

    assert stats.total_orders == 4
    assert stats.by_status == {"PAID": 3, "PENDING": 1}
    assert stats.captured_as_buyer == {"usd": 1000, "eur": 700}
    assert stats.captured_as_seller == {"usd": 900}

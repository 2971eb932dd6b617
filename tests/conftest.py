"""Shared fixtures: SQLite file database, in-memory gateway and Redis fakes."""

import hashlib
import hmac
import json

import pytest
import redis

from orderpay.common.config import Settings
from orderpay.common.db import Base, make_engine, make_session_factory
from orderpay.common.state_machine import AuthorizationStatus, RefundStatus
from orderpay.services.orders.service import OrderStore
from orderpay.services.payments.gateway import AuthorizationResult, RefundResult
from orderpay.services.payments.service import PaymentCoordinator
from orderpay.services.refunds.service import RefundCoordinator
from orderpay.services.webhooks.service import WebhookReconciler


WEBHOOK_SECRET = "whsec_test"
API_KEY = "test-key"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class FakeGateway:
    """In-memory `PaymentGateway`; same idempotency key, same gateway object."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.create_status = AuthorizationStatus.REQUIRES_CONFIRMATION
        self.confirm_status = AuthorizationStatus.SUCCEEDED
        self.cancel_status = AuthorizationStatus.CANCELLED
        self.retrieve_status = AuthorizationStatus.SUCCEEDED
        self.refund_status = RefundStatus.SUCCEEDED
        self.refund_cancel_status = RefundStatus.CANCELLED
        self.metadata: dict[str, dict] = {}
        self._intents: dict[str, str] = {}
        self._refunds: dict[str, str] = {}
        self._amounts: dict[str, int] = {}

    def _record(self, operation: str, key: str | None = None) -> None:
        self.calls.append((operation, key))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def create_authorization(self, amount, currency, idempotency_key, metadata):
        self._record("create_authorization", idempotency_key)
        authorization_id = self._intents.setdefault(idempotency_key, f"pi_{len(self._intents) + 1}")
        self._amounts[authorization_id] = amount
        self.metadata[authorization_id] = dict(metadata)
        return AuthorizationResult(
            authorization_id=authorization_id,
            status=self.create_status,
            amount=amount,
            client_secret=f"{authorization_id}_secret",
        )

    def confirm_authorization(self, authorization_id, idempotency_key):
        self._record("confirm_authorization", idempotency_key)
        received = self._amounts.get(authorization_id)
        return AuthorizationResult(
            authorization_id=authorization_id,
            status=self.confirm_status,
            amount_received=received if self.confirm_status is AuthorizationStatus.SUCCEEDED else None,
        )

    def cancel_authorization(self, authorization_id):
        self._record("cancel_authorization")
        return AuthorizationResult(authorization_id=authorization_id, status=self.cancel_status)

    def retrieve_authorization(self, authorization_id):
        self._record("retrieve_authorization")
        return AuthorizationResult(
            authorization_id=authorization_id,
            status=self.retrieve_status,
            amount_received=self._amounts.get(authorization_id),
        )

    def create_refund(self, authorization_id, amount, idempotency_key, metadata):
        self._record("create_refund", idempotency_key)
        refund_id = self._refunds.setdefault(idempotency_key, f"re_{len(self._refunds) + 1}")
        self.metadata[refund_id] = dict(metadata)
        return RefundResult(refund_id=refund_id, status=self.refund_status)

    def cancel_refund(self, refund_id):
        self._record("cancel_refund")
        return RefundResult(refund_id=refund_id, status=self.refund_cancel_status)

    def verify_webhook_signature(self, payload, header, secret):
        return bool(header) and hmac.compare_digest(header, sign(payload, secret))


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail

    def get(self, key):
        if self.fail:
            raise redis.ConnectionError("redis down")
        return self.store.get(key)

    def setex(self, key, ttl, value):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.store[key] = value
        self.ttls[key] = ttl


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_dsn=f"sqlite:///{tmp_path / 'orderpay.db'}",
        api_key=API_KEY,
        webhook_secret=WEBHOOK_SECRET,
        gateway_backoff_seconds=0.0,
        webhook_workers=2,
        webhook_queue_size=2,
        webhook_handler_timeout_seconds=5.0,
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_dsn)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orders(session_factory, settings):
    return OrderStore(session_factory, settings)


@pytest.fixture
def payments(session_factory, settings, orders, gateway):
    return PaymentCoordinator(session_factory, settings, orders, gateway)


@pytest.fixture
def refunds(session_factory, settings, orders, gateway):
    return RefundCoordinator(session_factory, settings, orders, gateway)


@pytest.fixture
def reconciler(session_factory, settings, payments, refunds, gateway):
    return WebhookReconciler(session_factory, settings, payments, refunds, gateway)


@pytest.fixture
def create_order(orders):
    def _create(amount=5000, currency="usd", buyer_id="buyer-1", seller_id="seller-1"):
        return orders.create_order(buyer_id, seller_id, "product-1", amount, currency)

    return _create


@pytest.fixture
def paid_authorization(create_order, payments):
    """Order of 10000 usd with a captured authorization."""

    def _paid(amount=10000):
        order = create_order(amount=amount)
        authorization = payments.create_authorization(amount, "usd", order.id)
        return payments.confirm_authorization(authorization.id)

    return _paid


@pytest.fixture
def gateway_event():
    """Build a signed gateway event: returns (raw payload, signature header)."""

    def _event(event_id: str, event_type: str, obj: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")
        return payload, sign(payload, secret)

    return _event


@pytest.fixture
def sign_payload():
    return sign


@pytest.fixture
def redis_client():
    return FakeRedis()

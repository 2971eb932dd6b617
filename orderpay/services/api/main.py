"""HTTP surface for orders, payments, refunds and gateway webhooks.

`create_app` wires every component from one `Settings` instance. Requests
other than webhooks, health and metrics need the configured API key; every
body uses the `{"success": ..., "data" | "error": ...}` envelope.
"""

import hmac
import json
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from orderpay.common.config import Settings
from orderpay.common.db import make_engine, make_session_factory
from orderpay.common.errors import OrderPayError, ValidationError
from orderpay.common.logging import configure_logging, logger, trace_id_ctx
from orderpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from orderpay.common.startup import log_startup_config
from orderpay.common.state_machine import OrderStatus, coerce_status
from orderpay.common.tracing import setup_tracing
from orderpay.services.api.schemas import (
    AuthorizationResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderResponse,
    OrderTransitionRequest,
    PaymentConfirmRequest,
    PaymentCreateRequest,
    RefundCreateRequest,
    RefundResponse,
    TimelineResponse,
    page_payload,
)
from orderpay.services.orders.service import OrderStore
from orderpay.services.payments.gateway import StripeGateway
from orderpay.services.payments.service import PaymentCoordinator
from orderpay.services.refunds.service import RefundCoordinator
from orderpay.services.webhooks.dispatcher import WebhookDispatcher
from orderpay.services.webhooks.service import WebhookReconciler


# Statuses a client may set directly; payment outcomes come from the gateway.
FULFILMENT_STATUSES = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)

HTTP_ERROR_CODES = {401: "unauthorized", 404: "not_found", 405: "method_not_allowed"}

STARTUP_KEYS = [
    "service_name",
    "database_dsn",
    "redis_url",
    "supported_currencies",
    "gateway_secret_key",
    "webhook_secret",
    "webhook_workers",
    "webhook_queue_size",
    "otel_exporter_otlp_endpoint",
]


def ok(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": jsonable_encoder(data)})


def error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


def _idempotency_cache_key(order_id: str, idempotency_key: str) -> str:
    # Scoped by order so keys cannot collide across orders.
    return f"idempotency:payment:{order_id}:{idempotency_key}"


def create_app(settings: Settings | None = None, *, session_factory=None, gateway=None, redis_client=None) -> FastAPI:
    """Build the application and its components."""

    settings = settings or Settings()
    configure_logging(settings)
    log_startup_config(settings, STARTUP_KEYS)

    if session_factory is None:
        session_factory = make_session_factory(make_engine(settings.database_dsn))
    gateway = gateway or StripeGateway(settings)
    rdb = redis_client if redis_client is not None else redis.Redis.from_url(
        settings.redis_url, decode_responses=True
    )

    orders = OrderStore(session_factory, settings)
    payments = PaymentCoordinator(session_factory, settings, orders, gateway)
    refunds = RefundCoordinator(session_factory, settings, orders, gateway)
    reconciler = WebhookReconciler(session_factory, settings, payments, refunds, gateway)
    dispatcher = WebhookDispatcher(reconciler, settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        dispatcher.shutdown()

    app = FastAPI(title="orderpay", lifespan=lifespan)
    app.state.settings = settings
    app.state.orders = orders
    app.state.payments = payments
    app.state.refunds = refunds
    app.state.reconciler = reconciler
    app.state.dispatcher = dispatcher
    setup_tracing(settings, app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Bind the correlation id and record request count and latency."""

        trace_id = request.headers.get("x-correlation-id") or str(uuid4())
        trace_id_ctx.set(trace_id)
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            response.headers["x-correlation-id"] = trace_id
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(OrderPayError)
    async def orderpay_error_handler(_: Request, exc: OrderPayError):
        if exc.http_status >= 500:
            logger.warning("request failed code=%s message=%s", exc.code, exc.message)
        return error(exc.http_status, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
        return error(400, ValidationError.code, message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException):
        return error(exc.status_code, HTTP_ERROR_CODES.get(exc.status_code, "http_error"), str(exc.detail))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(_: Request, exc: Exception):
        logger.exception("unhandled error: %s", type(exc).__name__)
        return error(500, "internal_error", "internal server error")

    def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Reject requests that do not provide the configured API key."""

        if x_api_key is None or not hmac.compare_digest(x_api_key, settings.api_key):
            raise HTTPException(status_code=401, detail="invalid API key")

    api = APIRouter(dependencies=[Depends(enforce_api_key)])

    @api.post("/orders", status_code=201)
    def create_order(req: OrderCreateRequest):
        order = orders.create_order(req.buyer_id, req.seller_id, req.product_id, req.amount, req.currency)
        return ok(OrderResponse.model_validate(order), status_code=201)

    @api.get("/orders/{order_id}")
    def get_order(order_id: str):
        return ok(OrderResponse.model_validate(orders.get(order_id)))

    @api.get("/orders/{order_id}/history")
    def order_history(order_id: str):
        return ok([TimelineResponse.model_validate(row) for row in orders.history(order_id)])

    @api.post("/orders/{order_id}/transition")
    def transition_order(order_id: str, req: OrderTransitionRequest):
        target = coerce_status(OrderStatus, req.status)
        if target not in FULFILMENT_STATUSES:
            raise ValidationError("only SHIPPED and DELIVERED can be set directly")
        order = orders.transition(order_id, req.expected_version, target, reason=req.reason)
        return ok(OrderResponse.model_validate(order))

    @api.post("/orders/{order_id}/cancel")
    def cancel_order(order_id: str, req: OrderCancelRequest):
        order = payments.cancel_order(order_id, req.user_id, req.expected_version)
        return ok(OrderResponse.model_validate(order))

    @api.get("/users/{user_id}/orders")
    def list_orders(user_id: str, role: str = "buyer", page: int = 1, limit: int = 10):
        return ok(page_payload(orders.list_by_user(user_id, role, page, limit), OrderResponse))

    @api.get("/users/{user_id}/order-stats")
    def order_stats(user_id: str):
        return ok(orders.stats_by_user(user_id))

    @api.post("/payments", status_code=201)
    def create_payment(req: PaymentCreateRequest, idempotency_key: str | None = Header(default=None)):
        """Create (or fetch the existing) authorization for an order.

        Returns the cached response when the same order and idempotency key
        were already processed.
        """

        cache_key = _idempotency_cache_key(req.order_id, idempotency_key) if idempotency_key else None
        if cache_key:
            try:
                cached = rdb.get(cache_key)
                if cached:
                    return JSONResponse(status_code=201, content=json.loads(cached))
            except redis.RedisError as exc:
                logger.warning("idempotency_cache_read_failed: %s", exc)

        authorization = payments.create_authorization(req.amount, req.currency, req.order_id, req.metadata)
        response = ok(AuthorizationResponse.model_validate(authorization), status_code=201)
        if cache_key:
            try:
                rdb.setex(cache_key, settings.idempotency_ttl_seconds, response.body.decode("utf-8"))
            except redis.RedisError as exc:
                logger.warning("idempotency_cache_write_failed: %s", exc)
        return response

    @api.post("/payments/{authorization_id}/confirm")
    def confirm_payment(authorization_id: str, req: PaymentConfirmRequest | None = None):
        client_secret = req.client_secret if req else None
        authorization = payments.confirm_authorization(authorization_id, client_secret)
        return ok(AuthorizationResponse.model_validate(authorization))

    @api.post("/payments/{authorization_id}/cancel")
    def cancel_payment(authorization_id: str):
        return ok(AuthorizationResponse.model_validate(payments.cancel_authorization(authorization_id)))

    @api.get("/payments/{authorization_id}")
    def get_payment(authorization_id: str, refresh: bool = False):
        authorization = payments.get_authorization(authorization_id, refresh=refresh)
        return ok(AuthorizationResponse.model_validate(authorization))

    @api.get("/users/{user_id}/payments")
    def payment_history(user_id: str, page: int = 1, limit: int = 10):
        return ok(page_payload(payments.payment_history(user_id, page, limit), AuthorizationResponse))

    @api.post("/refunds", status_code=201)
    def create_refund(req: RefundCreateRequest):
        refund = refunds.create_refund(req.authorization_id, req.amount, req.reason)
        return ok(RefundResponse.model_validate(refund), status_code=201)

    @api.get("/refunds/{refund_id}")
    def get_refund(refund_id: str):
        return ok(RefundResponse.model_validate(refunds.get_refund(refund_id)))

    @api.post("/refunds/{refund_id}/cancel")
    def cancel_refund(refund_id: str):
        return ok(RefundResponse.model_validate(refunds.cancel_refund(refund_id)))

    @api.get("/users/{user_id}/refunds")
    def list_refunds(user_id: str, page: int = 1, limit: int = 10):
        return ok(page_payload(refunds.refunds_by_user(user_id, page, limit), RefundResponse))

    @api.get("/users/{user_id}/refund-stats")
    def refund_stats(user_id: str):
        return ok(refunds.refund_stats(user_id))

    app.include_router(api)

    @app.post("/webhooks/gateway")
    async def gateway_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        """Verify, deduplicate and apply one gateway event."""

        raw_payload = await request.body()
        ack = await run_in_threadpool(dispatcher.dispatch, raw_payload, stripe_signature)
        return ok(ack)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return ok({"status": "ok"})

    return app

"""Order, authorization and refund state machines."""

from enum import Enum

from orderpay.common.errors import InvalidTransitionError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZING = "AUTHORIZING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class AuthorizationStatus(str, Enum):
    REQUIRES_CONFIRMATION = "REQUIRES_CONFIRMATION"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RefundStatus(str, Enum):
    REQUESTED = "REQUESTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.AUTHORIZING, OrderStatus.CANCELLED},
    OrderStatus.AUTHORIZING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED},
    # Cancelling a PAID order is only possible before shipment.
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.REFUNDED: set(),
}

AUTHORIZATION_TRANSITIONS: dict[AuthorizationStatus, set[AuthorizationStatus]] = {
    AuthorizationStatus.REQUIRES_CONFIRMATION: {
        AuthorizationStatus.PROCESSING,
        AuthorizationStatus.SUCCEEDED,
        AuthorizationStatus.FAILED,
        AuthorizationStatus.CANCELLED,
    },
    AuthorizationStatus.PROCESSING: {
        AuthorizationStatus.SUCCEEDED,
        AuthorizationStatus.FAILED,
        AuthorizationStatus.CANCELLED,
    },
    AuthorizationStatus.SUCCEEDED: set(),
    AuthorizationStatus.FAILED: set(),
    AuthorizationStatus.CANCELLED: set(),
}

REFUND_TRANSITIONS: dict[RefundStatus, set[RefundStatus]] = {
    RefundStatus.REQUESTED: {RefundStatus.SUCCEEDED, RefundStatus.FAILED, RefundStatus.CANCELLED},
    RefundStatus.SUCCEEDED: set(),
    RefundStatus.FAILED: set(),
    RefundStatus.CANCELLED: set(),
}

# Order status an authorization outcome cascades to.
ORDER_STATUS_FOR_AUTHORIZATION: dict[AuthorizationStatus, OrderStatus] = {
    AuthorizationStatus.SUCCEEDED: OrderStatus.PAID,
    AuthorizationStatus.FAILED: OrderStatus.FAILED,
    AuthorizationStatus.CANCELLED: OrderStatus.CANCELLED,
}


def coerce_status(enum_cls, value):
    """Return `value` as a member of `enum_cls` or raise `ValidationError`."""

    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"unknown {enum_cls.__name__}: {value!r}") from exc


def _validate(table, enum_cls, current, new, entity: str) -> None:
    current = enum_cls(current)
    new = enum_cls(new)
    if new not in table.get(current, set()):
        raise InvalidTransitionError(f"Invalid {entity} transition: {current.value} -> {new.value}")


def validate_transition(current, new) -> None:
    """Raise when an order transition is not allowed by the state machine."""

    _validate(ORDER_TRANSITIONS, OrderStatus, current, new, "order")


def validate_authorization_transition(current, new) -> None:
    _validate(AUTHORIZATION_TRANSITIONS, AuthorizationStatus, current, new, "authorization")


def validate_refund_transition(current, new) -> None:
    _validate(REFUND_TRANSITIONS, RefundStatus, current, new, "refund")

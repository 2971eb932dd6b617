"""Authorization model: the local projection of gateway payment state."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from orderpay.common.db import Base, JSONType, utcnow


class Authorization(Base):
    """One gateway authorization (payment intent) attached to an order.

    The primary key is the gateway's own id. `idempotency_key` is unique so a
    retried create can never produce a second row for the same order.
    """

    __tablename__ = "authorizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, index=True)
    captured_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    gateway_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

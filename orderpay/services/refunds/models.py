"""Refund persistence model."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from orderpay.common.db import Base, utcnow


class Refund(Base):
    """A refund issued against a captured authorization."""

    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    authorization_id: Mapped[str] = mapped_column(ForeignKey("authorizations.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    gateway_refund_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

"""Orchestrator database models.

This DB is the source of truth for local payment state, refunds and the
status timeline. Which provider owns each payment lives in the provider
adapter's `provider_mappings` table.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payroute.common.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Payment(Base):
    """Current state of a charge."""

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    customer_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, index=True)
    payment_method: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(String, default="")
    provider_name: Mapped[str] = mapped_column(String(64))
    provider_charge_id: Mapped[str] = mapped_column(String, index=True)
    capture_method: Mapped[str] = mapped_column(String(16), default="automatic")
    captured_amount: Mapped[int] = mapped_column(Integer, default=0)
    next_action_type: Mapped[str | None] = mapped_column(String, nullable=True)
    next_action_url: Mapped[str | None] = mapped_column(String, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )


class Refund(Base):
    """A provider refund against a local payment."""

    __tablename__ = "refunds"

    refund_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    reason: Mapped[str] = mapped_column(String, default="")
    status: Mapped[str] = mapped_column(String)
    provider_name: Mapped[str] = mapped_column(String(64))
    provider_refund_id: Mapped[str] = mapped_column(String)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())


class PaymentTimeline(Base):
    """Immutable audit trail of every status change."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

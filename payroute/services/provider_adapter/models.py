"""Provider adapter persistence models (entity-to-provider mappings)."""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from payroute.common.db import Base


class EntityType(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    DISPUTE = "dispute"
    PAYOUT = "payout"
    INVOICE = "invoice"
    PAYMENT_SESSION = "payment_session"


class ProviderMapping(Base):
    """Which provider originated an entity, and the provider's own id for it.

    This table is authoritative; any in-memory map is only a cache of it.
    """

    __tablename__ = "provider_mappings"
    __table_args__ = (UniqueConstraint("entity_id", "entity_type", name="uq_provider_mapping_entity"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    entity_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String(32))
    provider_name: Mapped[str] = mapped_column(String(64))
    provider_entity_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )

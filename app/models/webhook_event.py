"""
Webhook Event Ledger Model
==========================

One row per inbound store notification, keyed by (platform,
provider_event_id). The unique constraint is what makes redelivery a
no-op; ``processed_at`` stays NULL until the reconciliation that consumed
the event has committed.
"""

from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy import (
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType, UTCDateTime, enum_values
from app.utils.helpers import utc_now
from app.models.subscription import Platform


class WebhookEvent(Base):
    """Idempotency ledger row."""

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("apps.id", ondelete="SET NULL"),
        nullable=True,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="platform", values_callable=enum_values),
        nullable=False,
    )
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "platform", "provider_event_id", name="uq_webhook_event_platform_event"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(platform={self.platform}, id={self.provider_event_id}, "
            f"processed={self.processed_at is not None})>"
        )

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

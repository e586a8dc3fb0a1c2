"""
Subscriber Model
================

One subscriber per (app, app_user_id). Created lazily on first receipt
or attribute write, never deleted by the reconciliation core.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional
import uuid

from sqlalchemy import ForeignKey, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType, TimestampMixin, UTCDateTime
from app.utils.helpers import utc_now

if TYPE_CHECKING:
    from app.models.entitlement import SubscriberEntitlement
    from app.models.subscription import Purchase, Subscription


class Subscriber(Base, TimestampMixin):
    """End user of a tenant app."""

    __tablename__ = "subscribers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.id", ondelete="CASCADE"),
        nullable=False,
    )
    app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_app_user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    aliases: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    first_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="subscriber",
    )
    purchases: Mapped[list["Purchase"]] = relationship("Purchase")
    entitlements: Mapped[list["SubscriberEntitlement"]] = relationship(
        "SubscriberEntitlement",
        back_populates="subscriber",
    )

    __table_args__ = (
        UniqueConstraint("app_id", "app_user_id", name="uq_subscriber_app_user"),
    )

    def __repr__(self) -> str:
        return f"<Subscriber(app_id={self.app_id}, app_user_id={self.app_user_id})>"

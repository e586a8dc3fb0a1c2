"""
Subscriber Entitlement Models
=============================

Derived entitlement rows (rebuilt on every recompute) and the manual
grant/revoke overrides that feed into them.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, enum_values

if TYPE_CHECKING:
    from app.models.catalog import Entitlement, Product
    from app.models.subscriber import Subscriber
    from app.models.subscription import Subscription


class EntitlementSource(str, Enum):
    """Provenance of a derived entitlement."""
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    MANUAL = "manual"


class OverrideAction(str, Enum):
    """Manual override actions."""
    GRANT = "grant"
    REVOKE = "revoke"


class SubscriberEntitlement(Base, TimestampMixin):
    """
    Derived subscriber x entitlement row.

    Never patched in place: the recomputer deletes and re-inserts the whole
    set for a subscriber inside one transaction.
    """

    __tablename__ = "subscriber_entitlements"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entitlements.id", ondelete="CASCADE"),
        nullable=False,
    )

    source: Mapped[EntitlementSource] = mapped_column(
        SQLEnum(EntitlementSource, name="entitlement_source", values_callable=enum_values),
        nullable=False,
    )
    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    purchase_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("purchases.id", ondelete="SET NULL"),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_at_risk: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    subscriber: Mapped["Subscriber"] = relationship(
        "Subscriber",
        back_populates="entitlements",
    )
    entitlement: Mapped["Entitlement"] = relationship("Entitlement", lazy="joined")
    product: Mapped[Optional["Product"]] = relationship("Product", lazy="joined")
    subscription: Mapped[Optional["Subscription"]] = relationship(
        "Subscription", lazy="joined"
    )

    __table_args__ = (
        UniqueConstraint(
            "subscriber_id", "entitlement_id", name="uq_subscriber_entitlement"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriberEntitlement(subscriber_id={self.subscriber_id}, "
            f"entitlement_id={self.entitlement_id}, source={self.source})>"
        )


class ManualOverride(Base, TimestampMixin):
    """
    Manual grant or revoke of an entitlement for one subscriber.

    The latest action replaces the previous one. A revoke wins over every
    other entitlement source until a new grant replaces it.
    """

    __tablename__ = "manual_entitlement_overrides"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entitlements.id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[OverrideAction] = mapped_column(
        SQLEnum(OverrideAction, name="override_action", values_callable=enum_values),
        nullable=False,
    )
    expires_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    granted_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    entitlement: Mapped["Entitlement"] = relationship("Entitlement", lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "subscriber_id", "entitlement_id", name="uq_manual_override_subscriber_entitlement"
        ),
    )

    def __repr__(self) -> str:
        return f"<ManualOverride(subscriber_id={self.subscriber_id}, action={self.action})>"

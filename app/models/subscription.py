"""
Subscription Models
===================

SQLAlchemy models for store subscriptions, their transition history and
one-off (non-subscription) purchases.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
import uuid

from sqlalchemy import (
    Boolean,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType, TimestampMixin, UTCDateTime, enum_values
from app.utils.helpers import utc_now

if TYPE_CHECKING:
    from app.models.catalog import Product
    from app.models.subscriber import Subscriber


class Platform(str, Enum):
    """Purchase platform."""
    IOS = "ios"
    ANDROID = "android"


class SubscriptionStatus(str, Enum):
    """Reconciled subscription status."""
    ACTIVE = "active"
    IN_GRACE_PERIOD = "in_grace_period"
    IN_BILLING_RETRY = "in_billing_retry"
    EXPIRED = "expired"
    REVOKED = "revoked"


class PurchaseStatus(str, Enum):
    """Status of a non-subscription purchase."""
    COMPLETED = "completed"
    REFUNDED = "refunded"


# Statuses that still grant access
ENTITLING_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.IN_GRACE_PERIOD,
    SubscriptionStatus.IN_BILLING_RETRY,
)


class Subscription(Base, TimestampMixin):
    """
    Store subscription keyed by (platform, original_transaction_id).

    Mutated only by the reconciler; terminal rows are kept for history.
    On Android the purchase token is the original transaction id.
    """

    __tablename__ = "subscriptions"

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
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("products.id"),
        nullable=False,
    )

    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="platform", values_callable=enum_values),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, name="subscription_status", values_callable=enum_values),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )

    original_transaction_id: Mapped[str] = mapped_column(String(512), nullable=False)
    latest_transaction_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    purchase_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    original_purchase_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    expires_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    auto_renew_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_trial_period: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_in_intro_offer_period: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    grace_period_expires_date: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    environment: Mapped[str] = mapped_column(String(16), default="production", nullable=False)
    store_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Relationships
    subscriber: Mapped["Subscriber"] = relationship(
        "Subscriber",
        back_populates="subscriptions",
    )
    product: Mapped["Product"] = relationship("Product", lazy="joined", innerjoin=True)
    history: Mapped[list["SubscriptionHistory"]] = relationship(
        "SubscriptionHistory",
        back_populates="subscription",
        order_by="desc(SubscriptionHistory.created_at)",
    )

    __table_args__ = (
        UniqueConstraint(
            "platform", "original_transaction_id", name="uq_subscription_platform_original_tx"
        ),
        Index("idx_subscription_status_expires", "status", "expires_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(platform={self.platform}, "
            f"original_transaction_id={self.original_transaction_id}, status={self.status})>"
        )

    @property
    def period_type(self) -> str:
        if self.is_trial_period:
            return "trial"
        if self.is_in_intro_offer_period:
            return "intro"
        return "normal"


class SubscriptionHistory(Base):
    """
    Subscription history model.

    One row per applied transition, for audit and support.
    """

    __tablename__ = "subscription_history"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
    )

    event: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    subscription: Mapped["Subscription"] = relationship(
        "Subscription",
        back_populates="history",
    )

    __table_args__ = (
        Index("idx_sub_history_subscription", "subscription_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(subscription_id={self.subscription_id}, "
            f"event={self.event}, {self.previous_status}->{self.new_status})>"
        )


class Purchase(Base, TimestampMixin):
    """
    Non-subscription purchase (consumable or non-consumable).

    Completed non-consumable purchases grant their product's entitlements
    permanently.
    """

    __tablename__ = "purchases"

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
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("products.id"),
        nullable=False,
    )
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="platform", values_callable=enum_values),
        nullable=False,
    )
    store_transaction_id: Mapped[str] = mapped_column(String(512), nullable=False)
    original_transaction_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    purchase_date: Mapped[datetime] = mapped_column(nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[PurchaseStatus] = mapped_column(
        SQLEnum(PurchaseStatus, name="purchase_status", values_callable=enum_values),
        default=PurchaseStatus.COMPLETED,
        nullable=False,
    )
    environment: Mapped[str] = mapped_column(String(16), default="production", nullable=False)
    store_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    product: Mapped["Product"] = relationship("Product", lazy="joined", innerjoin=True)

    __table_args__ = (
        UniqueConstraint(
            "platform", "store_transaction_id", name="uq_purchase_platform_transaction"
        ),
    )

    def __repr__(self) -> str:
        return f"<Purchase(platform={self.platform}, transaction={self.store_transaction_id})>"

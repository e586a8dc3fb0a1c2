"""
Catalog Models
==============

Products, entitlements and the many-to-many join between them.
The reconciler only ever reads these tables.
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import Enum as SQLEnum, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, enum_values
from app.models.subscription import Platform

if TYPE_CHECKING:
    from app.models.app import App


class ProductType(str, Enum):
    """Store product types."""
    CONSUMABLE = "consumable"
    NON_CONSUMABLE = "non_consumable"
    AUTO_RENEWABLE_SUBSCRIPTION = "auto_renewable_subscription"
    NON_RENEWING_SUBSCRIPTION = "non_renewing_subscription"


class ProductEntitlement(Base):
    """Join row: a product unlocks an entitlement."""

    __tablename__ = "product_entitlements"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("products.id", ondelete="CASCADE"),
        primary_key=True,
    )
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("entitlements.id", ondelete="CASCADE"),
        primary_key=True,
    )


class Product(Base, TimestampMixin):
    """App-scoped catalog entry for a store product."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    store_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[Platform] = mapped_column(
        SQLEnum(Platform, name="platform", values_callable=enum_values),
        nullable=False,
    )
    type: Mapped[ProductType] = mapped_column(
        SQLEnum(ProductType, name="product_type", values_callable=enum_values),
        nullable=False,
    )
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    app: Mapped["App"] = relationship("App", back_populates="products")
    entitlements: Mapped[list["Entitlement"]] = relationship(
        "Entitlement",
        secondary="product_entitlements",
        back_populates="products",
    )

    __table_args__ = (
        UniqueConstraint(
            "app_id", "store_product_id", "platform", name="uq_product_app_store_platform"
        ),
    )

    def __repr__(self) -> str:
        return f"<Product(identifier={self.identifier}, platform={self.platform})>"

    @property
    def is_subscription(self) -> bool:
        return self.type in (
            ProductType.AUTO_RENEWABLE_SUBSCRIPTION,
            ProductType.NON_RENEWING_SUBSCRIPTION,
        )


class Entitlement(Base, TimestampMixin):
    """App-scoped named capability, e.g. ``pro_access``."""

    __tablename__ = "entitlements"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    app: Mapped["App"] = relationship("App", back_populates="entitlements")
    products: Mapped[list["Product"]] = relationship(
        "Product",
        secondary="product_entitlements",
        back_populates="entitlements",
    )

    __table_args__ = (
        UniqueConstraint("app_id", "identifier", name="uq_entitlement_app_identifier"),
    )

    def __repr__(self) -> str:
        return f"<Entitlement(identifier={self.identifier})>"

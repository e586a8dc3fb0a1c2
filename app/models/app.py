"""
App Model
=========

Tenant application registered with the service. Holds the API keys
clients authenticate with and the per-app store credentials.
"""

from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.catalog import Entitlement, Product


class App(Base, TimestampMixin):
    """A mobile application whose purchases are reconciled."""

    __tablename__ = "apps"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Store routing keys
    bundle_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    package_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    # API keys
    public_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    secret_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    # App Store Server API
    apple_issuer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    apple_key_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    apple_private_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Google Play Developer API (service account JSON)
    google_service_account: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Customer webhook
    webhook_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    webhook_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    products: Mapped[list["Product"]] = relationship("Product", back_populates="app")
    entitlements: Mapped[list["Entitlement"]] = relationship(
        "Entitlement", back_populates="app"
    )

    def __repr__(self) -> str:
        return f"<App(id={self.id}, name={self.name})>"

    @property
    def has_apple_credentials(self) -> bool:
        return bool(self.apple_issuer_id and self.apple_key_id and self.apple_private_key)

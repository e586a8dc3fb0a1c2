"""Initial reconciliation schema

Apps, catalog, subscribers, subscriptions and their history, purchases,
derived entitlements, manual overrides and the webhook event ledger.

Revision ID: 3f1c2b7e9a10
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2b7e9a10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PLATFORM_VALUES = ("ios", "android")
PRODUCT_TYPE_VALUES = (
    "consumable",
    "non_consumable",
    "auto_renewable_subscription",
    "non_renewing_subscription",
)
SUBSCRIPTION_STATUS_VALUES = (
    "active",
    "in_grace_period",
    "in_billing_retry",
    "expired",
    "revoked",
)
PURCHASE_STATUS_VALUES = ("completed", "refunded")
ENTITLEMENT_SOURCE_VALUES = ("subscription", "purchase", "manual")
OVERRIDE_ACTION_VALUES = ("grant", "revoke")

# Types are created once up front and shared between tables
platform = postgresql.ENUM(*PLATFORM_VALUES, name="platform", create_type=False)
product_type = postgresql.ENUM(*PRODUCT_TYPE_VALUES, name="product_type", create_type=False)
subscription_status = postgresql.ENUM(
    *SUBSCRIPTION_STATUS_VALUES, name="subscription_status", create_type=False
)
purchase_status = postgresql.ENUM(
    *PURCHASE_STATUS_VALUES, name="purchase_status", create_type=False
)
entitlement_source = postgresql.ENUM(
    *ENTITLEMENT_SOURCE_VALUES, name="entitlement_source", create_type=False
)
override_action = postgresql.ENUM(
    *OVERRIDE_ACTION_VALUES, name="override_action", create_type=False
)
ENUMS = (
    platform,
    product_type,
    subscription_status,
    purchase_status,
    entitlement_source,
    override_action,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # 2. Tenants and catalog
    # ------------------------------------------------------------------
    op.create_table(
        "apps",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("bundle_id", sa.String(255), nullable=True, unique=True),
        sa.Column("package_name", sa.String(255), nullable=True, unique=True),
        sa.Column("public_key", sa.String(64), nullable=False, unique=True),
        sa.Column("secret_key", sa.String(64), nullable=False, unique=True),
        sa.Column("apple_issuer_id", sa.String(64), nullable=True),
        sa.Column("apple_key_id", sa.String(32), nullable=True),
        sa.Column("apple_private_key", sa.Text(), nullable=True),
        sa.Column("google_service_account", sa.Text(), nullable=True),
        sa.Column("webhook_url", sa.String(2048), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "app_id", sa.Uuid(), sa.ForeignKey("apps.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("store_product_id", sa.String(255), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("type", product_type, nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "app_id", "store_product_id", "platform", name="uq_product_app_store_platform"
        ),
    )
    op.create_index("ix_products_app_id", "products", ["app_id"])

    op.create_table(
        "entitlements",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "app_id", sa.Uuid(), sa.ForeignKey("apps.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("app_id", "identifier", name="uq_entitlement_app_identifier"),
    )
    op.create_index("ix_entitlements_app_id", "entitlements", ["app_id"])

    op.create_table(
        "product_entitlements",
        sa.Column(
            "product_id",
            sa.Uuid(),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "entitlement_id",
            sa.Uuid(),
            sa.ForeignKey("entitlements.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    # ------------------------------------------------------------------
    # 3. Subscribers and store state
    # ------------------------------------------------------------------
    op.create_table(
        "subscribers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "app_id", sa.Uuid(), sa.ForeignKey("apps.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("original_app_user_id", sa.String(255), nullable=True),
        sa.Column("aliases", postgresql.JSONB(), nullable=False),
        sa.Column("attributes", postgresql.JSONB(), nullable=False),
        sa.Column(
            "first_seen_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "last_seen_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("app_id", "app_user_id", name="uq_subscriber_app_user"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.Uuid(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("original_transaction_id", sa.String(512), nullable=False),
        sa.Column("latest_transaction_id", sa.String(512), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew_enabled", sa.Boolean(), nullable=False),
        sa.Column("is_trial_period", sa.Boolean(), nullable=False),
        sa.Column("is_in_intro_offer_period", sa.Boolean(), nullable=False),
        sa.Column("grace_period_expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(64), nullable=True),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("store_response", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "platform", "original_transaction_id", name="uq_subscription_platform_original_tx"
        ),
    )
    op.create_index("ix_subscriptions_subscriber_id", "subscriptions", ["subscriber_id"])
    op.create_index(
        "idx_subscription_status_expires", "subscriptions", ["status", "expires_date"]
    )

    op.create_table(
        "subscription_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "subscriber_id",
            sa.Uuid(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("previous_status", sa.String(32), nullable=True),
        sa.Column("new_status", sa.String(32), nullable=False),
        sa.Column("transaction_id", sa.String(512), nullable=True),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_sub_history_subscription", "subscription_history", ["subscription_id", "created_at"]
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.Uuid(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("platform", platform, nullable=False),
        sa.Column("store_transaction_id", sa.String(512), nullable=False),
        sa.Column("original_transaction_id", sa.String(512), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("status", purchase_status, nullable=False),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("store_response", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "platform", "store_transaction_id", name="uq_purchase_platform_transaction"
        ),
    )
    op.create_index("ix_purchases_subscriber_id", "purchases", ["subscriber_id"])

    # ------------------------------------------------------------------
    # 4. Entitlements
    # ------------------------------------------------------------------
    op.create_table(
        "subscriber_entitlements",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.Uuid(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "entitlement_id",
            sa.Uuid(),
            sa.ForeignKey("entitlements.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source", entitlement_source, nullable=False),
        sa.Column(
            "product_id", sa.Uuid(), sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column(
            "subscription_id",
            sa.Uuid(),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "purchase_id",
            sa.Uuid(),
            sa.ForeignKey("purchases.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_at_risk", sa.Boolean(), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("subscriber_id", "entitlement_id", name="uq_subscriber_entitlement"),
    )
    op.create_index(
        "ix_subscriber_entitlements_subscriber_id", "subscriber_entitlements", ["subscriber_id"]
    )

    op.create_table(
        "manual_entitlement_overrides",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "subscriber_id",
            sa.Uuid(),
            sa.ForeignKey("subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "entitlement_id",
            sa.Uuid(),
            sa.ForeignKey("entitlements.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", override_action, nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("granted_by", sa.String(64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "subscriber_id", "entitlement_id", name="uq_manual_override_subscriber_entitlement"
        ),
    )
    op.create_index(
        "ix_manual_entitlement_overrides_subscriber_id",
        "manual_entitlement_overrides",
        ["subscriber_id"],
    )

    # ------------------------------------------------------------------
    # 5. Webhook event ledger
    # ------------------------------------------------------------------
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "app_id", sa.Uuid(), sa.ForeignKey("apps.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("platform", platform, nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.UniqueConstraint(
            "platform", "provider_event_id", name="uq_webhook_event_platform_event"
        ),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("webhook_events")
    op.drop_table("manual_entitlement_overrides")
    op.drop_table("subscriber_entitlements")
    op.drop_table("purchases")
    op.drop_table("subscription_history")
    op.drop_table("subscriptions")
    op.drop_table("subscribers")
    op.drop_table("product_entitlements")
    op.drop_table("entitlements")
    op.drop_table("products")
    op.drop_table("apps")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)

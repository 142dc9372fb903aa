"""Initialize Shopify merchant and webhook ledger schema.

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "shopify_merchants"):
        op.create_table(
            "shopify_merchants",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("shop_domain", sa.String(length=255), nullable=True),
            sa.Column("access_token", sa.String(length=255), nullable=True),
            sa.Column("scopes", sa.Text(), nullable=True),
            sa.Column(
                "token_status",
                sa.Enum("ACTIVE", "INVALID", "REVOKED", name="tokenstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("token_last_validated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "subscription_status",
                sa.Enum("TRIAL", "ACTIVE", "CANCELLED", "EXPIRED", name="subscriptionstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("charge_id", sa.String(length=64), nullable=True),
            sa.Column("trial_start", sa.DateTime(timezone=True), nullable=False),
            sa.Column("trial_end", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not _has_index(bind, "shopify_merchants", op.f("ix_shopify_merchants_user_id")):
        op.create_index(op.f("ix_shopify_merchants_user_id"), "shopify_merchants", ["user_id"], unique=True)
    if not _has_index(bind, "shopify_merchants", op.f("ix_shopify_merchants_shop_domain")):
        op.create_index(op.f("ix_shopify_merchants_shop_domain"), "shopify_merchants", ["shop_domain"], unique=False)
    if not _has_index(bind, "shopify_merchants", "ix_shopify_merchants_shop_token_status"):
        op.create_index(
            "ix_shopify_merchants_shop_token_status",
            "shopify_merchants",
            ["shop_domain", "token_status"],
            unique=False,
        )

    if not _table_exists(bind, "shopify_webhook_events"):
        op.create_table(
            "shopify_webhook_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("webhook_id", sa.String(length=128), nullable=True),
            sa.Column("shop_domain", sa.String(length=255), nullable=False),
            sa.Column("topic", sa.String(length=128), nullable=False),
            sa.Column(
                "status",
                sa.Enum("PROCESSED", "FAILED", name="webhookeventstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not _has_index(bind, "shopify_webhook_events", op.f("ix_shopify_webhook_events_webhook_id")):
        op.create_index(
            op.f("ix_shopify_webhook_events_webhook_id"),
            "shopify_webhook_events",
            ["webhook_id"],
            unique=True,
        )
    if not _has_index(bind, "shopify_webhook_events", op.f("ix_shopify_webhook_events_shop_domain")):
        op.create_index(
            op.f("ix_shopify_webhook_events_shop_domain"),
            "shopify_webhook_events",
            ["shop_domain"],
            unique=False,
        )
    if not _has_index(bind, "shopify_webhook_events", op.f("ix_shopify_webhook_events_topic")):
        op.create_index(op.f("ix_shopify_webhook_events_topic"), "shopify_webhook_events", ["topic"], unique=False)
    if not _has_index(bind, "shopify_webhook_events", op.f("ix_shopify_webhook_events_created_at")):
        op.create_index(
            op.f("ix_shopify_webhook_events_created_at"),
            "shopify_webhook_events",
            ["created_at"],
            unique=False,
        )


def downgrade() -> None:
    bind = op.get_bind()
    for table_name, index_name in [
        ("shopify_webhook_events", op.f("ix_shopify_webhook_events_created_at")),
        ("shopify_webhook_events", op.f("ix_shopify_webhook_events_topic")),
        ("shopify_webhook_events", op.f("ix_shopify_webhook_events_shop_domain")),
        ("shopify_webhook_events", op.f("ix_shopify_webhook_events_webhook_id")),
        ("shopify_merchants", "ix_shopify_merchants_shop_token_status"),
        ("shopify_merchants", op.f("ix_shopify_merchants_shop_domain")),
        ("shopify_merchants", op.f("ix_shopify_merchants_user_id")),
    ]:
        if _has_index(bind, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in ["shopify_webhook_events", "shopify_merchants"]:
        if _table_exists(bind, table_name):
            op.drop_table(table_name)

"""add hot-path indexes for user listings and timelines

Revision ID: 0002_hot_path_indexes
Revises: 0001_orderpay
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_orderpay"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index("ix_orders_buyer_id_created_at", "orders", ["buyer_id", "created_at"])
    op.create_index("ix_orders_seller_id_created_at", "orders", ["seller_id", "created_at"])
    op.create_index(
        "ix_order_timeline_order_id_version",
        "order_timeline",
        ["order_id", "version"],
        unique=True,
    )
    op.create_index("ix_refunds_authorization_id_status", "refunds", ["authorization_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_refunds_authorization_id_status", table_name="refunds")
    op.drop_index("ix_order_timeline_order_id_version", table_name="order_timeline")
    op.drop_index("ix_orders_seller_id_created_at", table_name="orders")
    op.drop_index("ix_orders_buyer_id_created_at", table_name="orders")

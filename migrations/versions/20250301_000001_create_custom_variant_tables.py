"""Create temporary_products, cleanup_logs and shopify_sessions tables.

Revision ID: 20250301_000001
Revises:
Create Date: 2025-03-01 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20250301_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("temporary_products"):
        op.create_table(
            "temporary_products",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("product_id", sa.String(), nullable=False),
            sa.Column("variant_id", sa.String(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("scheduled_deletion_at", sa.DateTime(), nullable=False),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("width", sa.Integer(), nullable=False),
            sa.Column("height", sa.Integer(), nullable=False),
            sa.Column("material", sa.Text(), nullable=False),
            sa.Column("computed_area", sa.Integer(), nullable=False),
            sa.Column("calculated_price", sa.Numeric(10, 2), nullable=False),
            sa.Column("is_ordered", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column(
                "order_ids",
                postgresql.JSONB(astext_type=sa.Text()),
                nullable=False,
                server_default=sa.text("'[]'::jsonb"),
            ),
            sa.Column("cleanup_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_cleanup_error", sa.Text(), nullable=True),
            sa.Column("dead_lettered_at", sa.DateTime(), nullable=True),
            sa.Column("shop_domain", sa.Text(), nullable=False),
            sa.Column("session_id", sa.String(), nullable=True),
            sa.CheckConstraint("width > 0 AND height > 0", name="ck_temporary_products_dimensions"),
            sa.CheckConstraint("cleanup_attempts >= 0", name="ck_temporary_products_attempts"),
        )
        op.create_index(
            "ix_temporary_products_sweep",
            "temporary_products",
            ["deleted_at", "is_ordered", "scheduled_deletion_at"],
        )
        op.create_index("ix_temporary_products_variant", "temporary_products", ["variant_id"])
        op.create_index("ix_temporary_products_created_at", "temporary_products", ["created_at"])

    if not inspector.has_table("cleanup_logs"):
        op.create_table(
            "cleanup_logs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
            sa.Column("action", sa.String(), nullable=False),
            sa.Column("product_id", sa.String(), nullable=True),
            sa.Column("variant_id", sa.String(), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("error_details", sa.Text(), nullable=True),
        )
        op.create_index("ix_cleanup_logs_action_created", "cleanup_logs", ["action", "created_at"])

    if not inspector.has_table("shopify_sessions"):
        op.create_table(
            "shopify_sessions",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop", sa.Text(), nullable=False),
            sa.Column("access_token", sa.Text(), nullable=False),
            sa.Column("scope", sa.Text(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        )
        op.create_index("ix_shopify_sessions_shop", "shopify_sessions", ["shop"])


def downgrade() -> None:
    op.drop_index("ix_shopify_sessions_shop", table_name="shopify_sessions")
    op.drop_table("shopify_sessions")
    op.drop_index("ix_cleanup_logs_action_created", table_name="cleanup_logs")
    op.drop_table("cleanup_logs")
    op.drop_index("ix_temporary_products_created_at", table_name="temporary_products")
    op.drop_index("ix_temporary_products_variant", table_name="temporary_products")
    op.drop_index("ix_temporary_products_sweep", table_name="temporary_products")
    op.drop_table("temporary_products")

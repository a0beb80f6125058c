"""Create profiles, iap_transactions and store_notifications tables

Revision ID: a1c4e7f20b11
Revises:
Create Date: 2026-02-03

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1c4e7f20b11"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("room_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_type", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("subscription_status", sa.String(length=16), nullable=False, server_default="inactive"),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("room_credits >= 0", name="ck_profiles_room_credits_non_negative"),
    )

    op.create_table(
        "iap_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=16), nullable=False),
        sa.Column("platform_transaction_id", sa.String(length=128), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("product_id", sa.String(length=128), nullable=False),
        sa.Column("product_type", sa.String(length=16), nullable=False),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_auto_renew_status", sa.Boolean(), nullable=True),
        sa.Column("receipt_data", sa.Text(), nullable=True),
        sa.Column("purchase_token", sa.Text(), nullable=True),
        sa.Column("environment", sa.String(length=16), nullable=True),
        sa.Column("acknowledgement_state", sa.Integer(), nullable=True),
        sa.Column("validation_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_iap_transactions_platform_transaction_id",
        "iap_transactions",
        ["platform_transaction_id"],
        unique=True,
    )
    op.create_index("ix_iap_transactions_user_id", "iap_transactions", ["user_id"])
    op.create_index("ix_iap_transactions_original_transaction_id", "iap_transactions", ["original_transaction_id"])
    op.create_index("ix_iap_transactions_product_id", "iap_transactions", ["product_id"])

    op.create_table(
        "store_notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("platform", sa.String(length=16), nullable=False),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("environment", sa.String(length=16), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_store_notifications_notification_type", "store_notifications", ["notification_type"])
    op.create_index(
        "ix_store_notifications_original_transaction_id", "store_notifications", ["original_transaction_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_store_notifications_original_transaction_id", table_name="store_notifications")
    op.drop_index("ix_store_notifications_notification_type", table_name="store_notifications")
    op.drop_table("store_notifications")

    op.drop_index("ix_iap_transactions_product_id", table_name="iap_transactions")
    op.drop_index("ix_iap_transactions_original_transaction_id", table_name="iap_transactions")
    op.drop_index("ix_iap_transactions_user_id", table_name="iap_transactions")
    op.drop_index("ix_iap_transactions_platform_transaction_id", table_name="iap_transactions")
    op.drop_table("iap_transactions")

    op.drop_table("profiles")

"""Orders, loyalty ledger and reward catalogue.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = sa.dialects.postgresql.UUID(as_uuid=True)

order_status_enum = sa.Enum(
    "pending",
    "confirmed",
    "preparing",
    "ready",
    "out_for_delivery",
    "delivered",
    "completed",
    "cancelled",
    name="order_status_enum",
)
order_type_enum = sa.Enum("delivery", "pickup", name="order_type_enum")
loyalty_tier_enum = sa.Enum("regular", "senior", "volunteer", name="loyalty_tier_enum")
points_transaction_type = sa.Enum(
    "purchase",
    "redemption",
    "spin_cost",
    "spin_win",
    "expiry",
    "admin_adjustment",
    name="points_transaction_type",
)
redemption_status = sa.Enum("active", "used", "expired", name="redemption_status")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(16), nullable=False, server_default="customer"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "orders",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_number", sa.String(32), nullable=False, unique=True),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("status", order_status_enum, nullable=False, server_default="pending"),
        sa.Column("order_type", order_type_enum, nullable=False, server_default="pickup"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("tax", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("eligible_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("has_volunteer_discount", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("payment_reference", sa.String(255), nullable=True, unique=True),
        sa.Column("checkout_session_id", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_id", UUID, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("points_eligible", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "order_status_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_id", UUID, nullable=False),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor_role", sa.String(16), nullable=True),
        sa.Column("actor_id", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_order_status_events_order_id", "order_status_events", ["order_id"])

    op.create_table(
        "processed_events",
        sa.Column("external_event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("order_id", UUID, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "loyalty_profiles",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("current_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", loyalty_tier_enum, nullable=False, server_default="regular"),
        sa.Column("can_spin", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_spin_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lifetime_spins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("current_points >= 0", name="ck_loyalty_profiles_non_negative"),
    )

    op.create_table(
        "points_transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", points_transaction_type, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("order_id", UUID, nullable=True),
        sa.Column("source_entry_id", UUID, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["loyalty_profiles.user_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["source_entry_id"], ["points_transactions.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_points_transactions_user_created", "points_transactions", ["user_id", "created_at"])
    op.create_index("ix_points_transactions_type_created", "points_transactions", ["type", "created_at"])
    op.create_index("ix_points_transactions_expires_at", "points_transactions", ["expires_at"])
    op.create_index("ix_points_transactions_source_entry_id", "points_transactions", ["source_entry_id"])

    op.create_table(
        "reward_offers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(64), nullable=False, server_default="food"),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("cogs_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("current_redemptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_reward_offers_slug", "reward_offers", ["slug"])

    op.create_table(
        "redemptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("offer_id", UUID, nullable=False),
        sa.Column("ledger_entry_id", UUID, nullable=True),
        sa.Column("code", sa.String(16), nullable=False, unique=True),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("cogs_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("status", redemption_status, nullable=False, server_default="active"),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_reference", sa.String(128), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["loyalty_profiles.user_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["offer_id"], ["reward_offers.id"]),
        sa.ForeignKeyConstraint(["ledger_entry_id"], ["points_transactions.id"]),
    )
    op.create_index("ix_redemptions_user_id", "redemptions", ["user_id"])
    op.create_index("ix_redemptions_offer_id", "redemptions", ["offer_id"])
    op.create_index("ix_redemptions_redeemed_at", "redemptions", ["redeemed_at"])


def downgrade() -> None:
    op.drop_table("redemptions")
    op.drop_table("reward_offers")
    op.drop_table("points_transactions")
    op.drop_table("loyalty_profiles")
    op.drop_table("processed_events")
    op.drop_table("order_status_events")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (redemption_status, points_transaction_type, loyalty_tier_enum, order_type_enum, order_status_enum):
        enum.drop(bind, checkfirst=True)

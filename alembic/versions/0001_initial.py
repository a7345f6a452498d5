"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("wallet_address", sa.String(length=42), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_wallet_address", "users", ["wallet_address"], unique=False)

    op.create_table(
        "rooms",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("stay_id", sa.String(length=36), nullable=False, server_default=""),
        sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("price_usdc", sa.Numeric(18, 6), nullable=True),
        sa.Column("price_usdt", sa.Numeric(18, 6), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_rooms_stay_id", "rooms", ["stay_id"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("stay_id", sa.String(length=36), nullable=False, server_default=""),
        sa.Column("selected_room_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("payment_token", sa.String(length=10), nullable=True),
        sa.Column("payment_amount", sa.Numeric(18, 6), nullable=True),
        sa.Column("amount_base_units", sa.String(length=80), nullable=True),
        sa.Column("chain_id", sa.Integer(), nullable=True),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("requires_reservation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reservation_amount", sa.Numeric(18, 6), nullable=True),
        sa.Column("remaining_amount", sa.Numeric(18, 6), nullable=True),
        sa.Column("reservation_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("remaining_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reservation_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("remaining_tx_hash", sa.String(length=66), nullable=True),
        sa.Column("sender_address", sa.String(length=42), nullable=True),
        sa.Column("receiver_address", sa.String(length=42), nullable=True),
        sa.Column("block_number", sa.Integer(), nullable=True),
        sa.Column("gas_used", sa.String(length=40), nullable=True),
        sa.Column("gas_fee_usd", sa.Numeric(18, 6), nullable=True),
        sa.Column("total_paid", sa.Numeric(18, 6), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"], unique=False)
    op.create_index("ix_bookings_stay_id", "bookings", ["stay_id"], unique=False)
    op.create_index("ix_bookings_selected_room_id", "bookings", ["selected_room_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_tx_hash", "bookings", ["tx_hash"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("leg", sa.String(length=20), nullable=False, server_default="full"),
        sa.Column("token", sa.String(length=10), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("amount_base_units", sa.String(length=80), nullable=False),
        sa.Column("sender_address", sa.String(length=42), nullable=False, server_default=""),
        sa.Column("block_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"], unique=False)
    op.create_index("ix_payments_tx_hash", "payments", ["tx_hash"], unique=True)

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("entity_type", sa.String(length=40), nullable=False, server_default="booking"),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_activity_logs_booking_id", "activity_logs", ["booking_id"], unique=False)
    op.create_index("ix_activity_logs_user_id", "activity_logs", ["user_id"], unique=False)
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"], unique=False)

    op.create_table(
        "email_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("to_email", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("kind", sa.String(length=40), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="queued"),
        sa.Column("related_booking_id", sa.String(length=36), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_email_logs_to_email", "email_logs", ["to_email"], unique=False)
    op.create_index("ix_email_logs_related_booking_id", "email_logs", ["related_booking_id"], unique=False)


def downgrade() -> None:
    op.drop_table("email_logs")
    op.drop_table("activity_logs")
    op.drop_table("payments")
    op.drop_table("bookings")
    op.drop_table("rooms")
    op.drop_table("users")

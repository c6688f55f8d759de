"""campus market core schema: users, products, wallets, negotiations, orders, squad payments

Revision ID: c4a1e7d2b9f0
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "c4a1e7d2b9f0"
down_revision = None
branch_labels = None
depends_on = None


MONEY = sa.Numeric(14, 2)


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _indexes(table: str, *columns: str, unique: tuple[str, ...] = ()) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column], unique=column in unique)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("transaction_pin_hash", sa.String(length=255), nullable=True),
            sa.Column("transaction_pin_set", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("pin_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("pin_lock_until", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("users", "email", "phone", unique=("email", "phone"))

    if not _table_exists(bind, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("price", MONEY, nullable=False),
            sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_sold", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("products", "seller_id")

    if not _table_exists(bind, "wallets"):
        op.create_table(
            "wallets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("balance", MONEY, nullable=False, server_default="0"),
            sa.Column("escrow_balance", MONEY, nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("wallets", "user_id", unique=("user_id",))

    if not _table_exists(bind, "transactions"):
        op.create_table(
            "transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
            sa.Column("type", sa.String(length=32), nullable=False),
            sa.Column("amount", MONEY, nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("reference_id", sa.String(length=64), nullable=True),
            sa.Column("external_reference", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("transactions", "wallet_id", "type", "status", "reference_id", "external_reference", "created_at")

    if not _table_exists(bind, "negotiations"):
        op.create_table(
            "negotiations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("original_price", MONEY, nullable=False),
            sa.Column("offer_price", MONEY, nullable=False),
            sa.Column("counter_offer_price", MONEY, nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("seller_message", sa.Text(), nullable=True),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("rejected_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("negotiations", "product_id", "buyer_id", "seller_id", "status")

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_number", sa.String(length=40), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("negotiation_id", sa.Integer(), sa.ForeignKey("negotiations.id"), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("total_amount", MONEY, nullable=False),
            sa.Column("seller_price", MONEY, nullable=False),
            sa.Column("platform_commission", MONEY, nullable=False, server_default="0"),
            sa.Column("payment_fee", MONEY, nullable=False, server_default="0"),
            sa.Column("seller_receives", MONEY, nullable=False),
            sa.Column("commission_rate", sa.Numeric(6, 4), nullable=False),
            sa.Column("payment_method", sa.String(length=32), nullable=False, server_default="CARD"),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("delivery_method", sa.String(length=16), nullable=False, server_default="meetup"),
            sa.Column("delivery_address", sa.String(length=500), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("orders", "order_number", "buyer_id", "seller_id", "product_id", "status", unique=("order_number",))

    if not _table_exists(bind, "order_status_history"):
        op.create_table(
            "order_status_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("changed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("actor_type", sa.String(length=16), nullable=False, server_default="user"),
            sa.Column("note", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("order_status_history", "order_id")

    if not _table_exists(bind, "order_outbox_events"):
        op.create_table(
            "order_outbox_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("order_outbox_events", "order_id", "dispatched_at")

    if not _table_exists(bind, "gateway_payments"):
        op.create_table(
            "gateway_payments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="squad"),
            sa.Column("transaction_ref", sa.String(length=80), nullable=False),
            sa.Column("amount", MONEY, nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="NGN"),
            sa.Column("purpose", sa.String(length=32), nullable=False, server_default="wallet_deposit"),
            sa.Column("payment_channel", sa.String(length=16), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("checkout_url", sa.String(length=1024), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("gateway_payments", "user_id", "order_id", "transaction_ref", "status", unique=("transaction_ref",))

    if not _table_exists(bind, "gateway_transfers"):
        op.create_table(
            "gateway_transfers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="squad"),
            sa.Column("transaction_ref", sa.String(length=80), nullable=False),
            sa.Column("amount", MONEY, nullable=False),
            sa.Column("bank_code", sa.String(length=16), nullable=False),
            sa.Column("account_number", sa.String(length=16), nullable=False),
            sa.Column("account_name", sa.String(length=160), nullable=False),
            sa.Column("narration", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("gateway_transfers", "user_id", "transaction_ref", "status", unique=("transaction_ref",))

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="squad"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        )

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("channel", sa.String(length=32), nullable=False, server_default="in_app"),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("link", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes("notifications", "user_id")

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("amount", MONEY, nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        _indexes(
            "platform_events",
            "created_at",
            "event_type",
            "actor_user_id",
            "subject_type",
            "subject_id",
            "idempotency_key",
            unique=("idempotency_key",),
        )


def downgrade():
    bind = op.get_bind()
    for table in (
        "platform_events",
        "notifications",
        "webhook_events",
        "gateway_transfers",
        "gateway_payments",
        "order_outbox_events",
        "order_status_history",
        "orders",
        "negotiations",
        "transactions",
        "wallets",
        "products",
        "users",
    ):
        if _table_exists(bind, table):
            op.drop_table(table)

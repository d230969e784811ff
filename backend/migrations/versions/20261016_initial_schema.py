"""initial kasir schema

Revision ID: 20261016_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000

Creates the complete schema from scratch:
- users, session_tokens: accounts and opaque bearer sessions
- stores, store_members: tenancy with a per-store invoice counter
- products, product_variants, customers: catalog and customer book
- transactions, transaction_items: completed sales
- subscription_packages, subscriptions, payments, payment_events: billing
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261016_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable,
                     server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade():
    """
    Create all tables.

    WHY: Stock, invoice and subscription invariants are also enforced as
    CHECK/UNIQUE constraints so a bug in a service cannot persist a broken row.
    """

    # ============================================================================
    # users / session_tokens
    # ============================================================================
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("whatsapp", sa.String(length=32), nullable=True),
        sa.Column("is_email_verified", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="USER"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        _timestamp("last_used_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(length=255), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_session_tokens_user_id", "session_tokens", ["user_id"])
    op.create_index("ix_session_tokens_token_hash", "session_tokens", ["token_hash"], unique=True)
    op.create_index("ix_session_tokens_expires_at", "session_tokens", ["expires_at"])
    op.create_index("ix_session_tokens_is_revoked", "session_tokens", ["is_revoked"])
    op.create_index("ix_session_tokens_user_active", "session_tokens", ["user_id", "is_revoked"])

    # ============================================================================
    # stores / store_members
    # ============================================================================
    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("store_type", sa.String(length=64), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("whatsapp", sa.String(length=32), nullable=True),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("invoice_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "name", name="uq_stores_owner_name"),
        sa.CheckConstraint("invoice_counter >= 0", name="ck_stores_invoice_counter_nonneg"),
        sa.CheckConstraint("tax_rate_bps >= 0 AND tax_rate_bps <= 10000", name="ck_stores_tax_rate_range"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_stores_owner_id", "stores", ["owner_id"])
    op.create_index("ix_stores_is_active", "stores", ["is_active"])

    op.create_table(
        "store_members",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="CASHIER"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"], ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "user_id", name="uq_store_members_store_user"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_store_members_store_id", "store_members", ["store_id"])
    op.create_index("ix_store_members_user_id", "store_members", ["user_id"])
    op.create_index("ix_store_members_store_active", "store_members", ["store_id", "is_active"])

    # ============================================================================
    # products / product_variants / customers
    # ============================================================================
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_products_store_id", "products", ["store_id"])
    op.create_index("ix_products_store_active", "products", ["store_id", "is_active"])

    # Stock never goes negative; the sale engine relies on this as a backstop
    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("capital_price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_rp", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity >= 0", name="ck_variants_quantity_nonneg"),
        sa.CheckConstraint("price >= 0", name="ck_variants_price_nonneg"),
        sa.CheckConstraint("capital_price <= price", name="ck_variants_capital_le_price"),
        sa.CheckConstraint("NOT (discount_percent > 0 AND discount_rp > 0)", name="ck_variants_single_discount"),
        sa.CheckConstraint("discount_rp < price OR discount_rp = 0", name="ck_variants_discount_lt_price"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_product_variants_product_id", "product_variants", ["product_id"])

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("company", sa.String(length=128), nullable=True),
        sa.Column("whatsapp", sa.String(length=32), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "phone", name="uq_customers_store_phone"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_customers_store_id", "customers", ["store_id"])

    # ============================================================================
    # transactions / transaction_items
    # ============================================================================
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("invoice_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="COMPLETED"),
        sa.Column("payment_method", sa.String(length=16), nullable=False),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        sa.Column("tax", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=True),
        sa.Column("change", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["store_id"], ["stores.id"], ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "invoice_number", name="uq_transactions_store_invoice"),
        sa.CheckConstraint("total = subtotal + tax - discount", name="ck_transactions_total"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_transactions_store_id", "transactions", ["store_id"])
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_customer_id", "transactions", ["customer_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_payment_method", "transactions", ["payment_method"])
    op.create_index("ix_transactions_store_status_created", "transactions",
                    ["store_id", "status", "created_at"])

    op.create_table(
        "transaction_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("discount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ),
        sa.ForeignKeyConstraint(["variant_id"], ["product_variants.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity > 0", name="ck_transaction_items_quantity_pos"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_transaction_items_transaction_id", "transaction_items", ["transaction_id"])

    # ============================================================================
    # billing
    # ============================================================================
    op.create_table(
        "subscription_packages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=32), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_stores", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_members", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_users", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", "duration_months", name="uq_packages_name_duration"),
        sqlite_autoincrement=True
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_new_user_promo", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("paid_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("bonus_months", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("is_upgrade", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("previous_package_id", sa.Integer(), nullable=True),
        sa.Column("first_reminder_sent", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("second_reminder_sent", sa.Boolean(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.ForeignKeyConstraint(["package_id"], ["subscription_packages.id"], ),
        sa.ForeignKeyConstraint(["previous_package_id"], ["subscription_packages.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("end_date > start_date", name="ck_subscriptions_window"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])
    op.create_index("ix_subscriptions_user_status_end", "subscriptions", ["user_id", "status", "end_date"])

    # merchant_order_id is the idempotency key for gateway callbacks
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("merchant_code", sa.String(length=32), nullable=False),
        sa.Column("merchant_order_id", sa.String(length=64), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("payment_amount", sa.Integer(), nullable=False),
        sa.Column("product_detail", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("result_code", sa.String(length=8), nullable=True),
        sa.Column("payment_url", sa.String(length=512), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("signature", sa.String(length=128), nullable=True),
        sa.Column("expiry_period", sa.Integer(), nullable=False, server_default="1440"),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("callback_url", sa.String(length=512), nullable=True),
        sa.Column("return_url", sa.String(length=512), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.ForeignKeyConstraint(["package_id"], ["subscription_packages.id"], ),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_order_id", name="uq_payments_merchant_order_id"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_user_status_expiry", "payments", ["user_id", "status", "expired_at"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True
    )
    op.create_index("ix_payment_events_payment_id", "payment_events", ["payment_id"])
    op.create_index("ix_payment_events_event_type", "payment_events", ["event_type"])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table("payment_events")
    op.drop_table("payments")
    op.drop_table("subscriptions")
    op.drop_table("subscription_packages")
    op.drop_table("transaction_items")
    op.drop_table("transactions")
    op.drop_table("customers")
    op.drop_table("product_variants")
    op.drop_table("products")
    op.drop_table("store_members")
    op.drop_table("stores")
    op.drop_table("session_tokens")
    op.drop_table("users")

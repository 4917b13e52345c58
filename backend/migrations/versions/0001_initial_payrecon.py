"""Initial payment reconciliation schema

Revision ID: 0001_initial_payrecon
Revises:
Create Date: 2026-02-20
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial_payrecon"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*names):
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False)
        for name in names
    ]


def upgrade():
    # =========================================================================
    # Customers / catalog
    # =========================================================================
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("credit_limit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("credit_used_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps("created_at"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_email", ["email"], unique=False)

    op.create_table(
        "saved_payment_methods",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("customer_profile_id", sa.String(64), nullable=False),
        sa.Column("payment_profile_id", sa.String(64), nullable=False),
        sa.Column("card_last_four", sa.String(4), nullable=True),
        sa.Column("card_brand", sa.String(32), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("saved_payment_methods", schema=None) as batch_op:
        batch_op.create_index("ix_saved_payment_methods_customer_id", ["customer_id"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "product_sizes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("size_label", sa.String(64), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "size_label", name="uq_product_sizes_product_label"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("product_sizes", schema=None) as batch_op:
        batch_op.create_index("ix_product_sizes_product_id", ["product_id"], unique=False)

    # =========================================================================
    # Orders
    # =========================================================================
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("shipping_cost_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("po_accept", sa.Boolean(), nullable=True),
        sa.Column("handling_charges_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("freight_charges_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="unpaid"),
        sa.Column("gateway_transaction_id", sa.String(64), nullable=True),
        sa.Column("is_void", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("void_reason", sa.String(255), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_payment_status", ["payment_status"], unique=False)
        batch_op.create_index("ix_orders_customer_created", ["customer_id", "created_at"], unique=False)

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(255), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_order_lines_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_lines_product_id", ["product_id"], unique=False)

    op.create_table(
        "order_line_sizes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_line_id", sa.Integer(), nullable=False),
        sa.Column("product_size_id", sa.Integer(), nullable=True),
        sa.Column("size_label", sa.String(64), nullable=False, server_default="default"),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_line_id"], ["order_lines.id"]),
        sa.ForeignKeyConstraint(["product_size_id"], ["product_sizes.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_line_sizes", schema=None) as batch_op:
        batch_op.create_index("ix_order_line_sizes_order_line_id", ["order_line_id"], unique=False)
        batch_op.create_index("ix_order_line_sizes_product_size_id", ["product_size_id"], unique=False)

    op.create_table(
        "order_activities",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("activity_type", sa.String(32), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("performed_by", sa.String(255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_activities", schema=None) as batch_op:
        batch_op.create_index("ix_order_activities_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_activities_activity_type", ["activity_type"], unique=False)
        batch_op.create_index("ix_order_activities_order_created", ["order_id", "created_at"], unique=False)

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_size_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(64), nullable=False),
        *_timestamps("occurred_at"),
        sa.ForeignKeyConstraint(["product_size_id"], ["product_sizes.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_movements", schema=None) as batch_op:
        batch_op.create_index("ix_stock_movements_product_size_id", ["product_size_id"], unique=False)
        batch_op.create_index("ix_stock_movements_order_id", ["order_id"], unique=False)

    # =========================================================================
    # Billing ledgers
    # =========================================================================
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("tax_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("shipping_cost_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("paid_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="unpaid"),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("transaction_reference", sa.String(64), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number"),
        sa.UniqueConstraint("order_id", name="uq_invoices_order"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("invoices", schema=None) as batch_op:
        batch_op.create_index("ix_invoices_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_invoices_payment_status", ["payment_status"], unique=False)

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("invoice_id", sa.Integer(), nullable=True),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(64), nullable=True),
        sa.Column("auth_code", sa.String(32), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("last_four", sa.String(4), nullable=True),
        sa.Column("brand", sa.String(32), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("payment_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_payment_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_payment_transactions_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_payment_transactions_invoice_id", ["invoice_id"], unique=False)
        batch_op.create_index("ix_payment_transactions_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_payment_transactions_gateway_transaction_id", ["gateway_transaction_id"], unique=False)
        batch_op.create_index("ix_payment_transactions_status", ["status"], unique=False)
        batch_op.create_index("ix_payment_transactions_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_payment_txns_order_created", ["order_id", "created_at"], unique=False)

    op.create_table(
        "account_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("entry_type", sa.String(8), nullable=False),
        sa.Column("reference_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("processed_by", sa.String(255), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(64), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("account_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_account_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_account_transactions_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_account_transactions_reference_type", ["reference_type"], unique=False)
        batch_op.create_index("ix_account_txns_customer_created", ["customer_id", "created_at"], unique=False)

    op.create_table(
        "credit_memos",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("memo_number", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="issued"),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("issued_by", sa.String(255), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("memo_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("credit_memos", schema=None) as batch_op:
        batch_op.create_index("ix_credit_memos_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_credit_memos_order_id", ["order_id"], unique=False)

    op.create_table(
        "adjustments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("adjustment_number", sa.String(64), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("adjustment_type", sa.String(32), nullable=False),
        sa.Column("original_amount_cents", sa.Integer(), nullable=False),
        sa.Column("new_amount_cents", sa.Integer(), nullable=False),
        sa.Column("difference_amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("credit_memo_id", sa.Integer(), nullable=True),
        sa.Column("refund_id", sa.String(64), nullable=True),
        sa.Column("payment_transaction_id", sa.Integer(), nullable=True),
        sa.Column("fulfills_adjustment_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("processed_by", sa.String(255), nullable=True),
        *_timestamps("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["credit_memo_id"], ["credit_memos.id"]),
        sa.ForeignKeyConstraint(["payment_transaction_id"], ["payment_transactions.id"]),
        sa.ForeignKeyConstraint(["fulfills_adjustment_id"], ["adjustments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("adjustment_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("adjustments", schema=None) as batch_op:
        batch_op.create_index("ix_adjustments_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_adjustments_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_adjustments_adjustment_type", ["adjustment_type"], unique=False)
        batch_op.create_index("ix_adjustments_payment_status", ["payment_status"], unique=False)
        batch_op.create_index("ix_adjustments_fulfills_adjustment_id", ["fulfills_adjustment_id"], unique=False)
        batch_op.create_index("ix_adjustments_order_created", ["order_id", "created_at"], unique=False)

    # =========================================================================
    # Gateway attempts / reconciliation / sequences
    # =========================================================================
    op.create_table(
        "gateway_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("attempt_type", sa.String(32), nullable=False),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("gateway_transaction_id", sa.String(64), nullable=True),
        sa.Column("error_code", sa.String(32), nullable=True),
        sa.Column("error_message", sa.String(500), nullable=True),
        *_timestamps("created_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_note", sa.String(500), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("gateway_attempts", schema=None) as batch_op:
        batch_op.create_index("ix_gateway_attempts_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_gateway_attempts_status", ["status"], unique=False)
        batch_op.create_index("ix_gateway_attempts_order_status", ["order_id", "status"], unique=False)

    op.create_table(
        "reconciliation_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("gateway_attempt_id", sa.Integer(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("resolution_note", sa.String(500), nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        *_timestamps("created_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["gateway_attempt_id"], ["gateway_attempts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("reconciliation_items", schema=None) as batch_op:
        batch_op.create_index("ix_reconciliation_items_kind", ["kind"], unique=False)
        batch_op.create_index("ix_reconciliation_items_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_reconciliation_items_gateway_attempt_id", ["gateway_attempt_id"], unique=False)
        batch_op.create_index("ix_reconciliation_items_status", ["status"], unique=False)

    op.create_table(
        "sequence_counters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("prefix", name="uq_sequence_counters_prefix"),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table("sequence_counters")
    op.drop_table("reconciliation_items")
    op.drop_table("gateway_attempts")
    op.drop_table("adjustments")
    op.drop_table("credit_memos")
    op.drop_table("account_transactions")
    op.drop_table("payment_transactions")
    op.drop_table("invoices")
    op.drop_table("stock_movements")
    op.drop_table("order_activities")
    op.drop_table("order_line_sizes")
    op.drop_table("order_lines")
    op.drop_table("orders")
    op.drop_table("product_sizes")
    op.drop_table("products")
    op.drop_table("saved_payment_methods")
    op.drop_table("customers")

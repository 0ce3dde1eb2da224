"""Fulfillment, payout and refund schema

Revision ID: 20261018_fulfillment_initial
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_fulfillment_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False, server_default=True):
    if server_default:
        return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=nullable)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _status(name, nullable=False):
    return sa.Column(name, sa.String(32), nullable=nullable)


def upgrade():
    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("full_name", sa.String(255), nullable=True),
        _status("role"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_email", ["email"], unique=True)
        batch_op.create_index("ix_users_role", ["role"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(255), nullable=False),
        _timestamp("created_at"),
        _timestamp("expires_at", server_default=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _timestamp("revoked_at", nullable=True, server_default=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("session_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_session_tokens_token_hash", ["token_hash"], unique=True)
        batch_op.create_index("ix_session_tokens_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_session_tokens_expires_at", ["expires_at"], unique=False)
        batch_op.create_index("ix_session_tokens_user_active", ["user_id", "is_revoked"], unique=False)

    op.create_table(
        "suppliers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("whatsapp_phone", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_payout_enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("bank_name", sa.String(128), nullable=True),
        sa.Column("bank_code", sa.String(32), nullable=True),
        sa.Column("bank_country", sa.String(2), nullable=True),
        sa.Column("account_number", sa.String(32), nullable=True),
        sa.Column("account_name", sa.String(255), nullable=True),
        _status("bank_verification_status"),
        _timestamp("bank_verified_at", nullable=True, server_default=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("suppliers", schema=None) as batch_op:
        batch_op.create_index("ix_suppliers_user_id", ["user_id"], unique=True)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("in_stock", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "product_variants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(255), nullable=True),
        sa.Column("in_stock", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("product_variants", schema=None) as batch_op:
        batch_op.create_index("ix_product_variants_product_id", ["product_id"], unique=False)

    for table, extra in (
        ("supplier_product_offers", []),
        ("supplier_variant_offers", [sa.Column("variant_id", sa.Integer(), nullable=False)]),
    ):
        unique_cols = ["supplier_id", "variant_id"] if extra else ["supplier_id", "product_id"]
        unique_name = "uq_supplier_variant_offer" if extra else "uq_supplier_product_offer"
        foreign_keys = [
            sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        ]
        if extra:
            foreign_keys.append(sa.ForeignKeyConstraint(["variant_id"], ["product_variants.id"]))
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("supplier_id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=False),
            *extra,
            sa.Column("unit_cost_kobo", sa.Integer(), nullable=False),
            sa.Column("available_qty", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("in_stock", sa.Boolean(), nullable=False, server_default=sa.text("0")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
            *foreign_keys,
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(*unique_cols, name=unique_name),
            sqlite_autoincrement=True,
        )
        with op.batch_alter_table(table, schema=None) as batch_op:
            batch_op.create_index(f"ix_{table}_supplier_id", ["supplier_id"], unique=False)
            batch_op.create_index(f"ix_{table}_product_id", ["product_id"], unique=False)
            if extra:
                batch_op.create_index(f"ix_{table}_variant_id", ["variant_id"], unique=False)

    # ------------------------------------------------------------------
    # Orders and payments
    # ------------------------------------------------------------------
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        _status("status"),
        sa.Column("subtotal_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("service_fee_base_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("service_fee_comms_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("service_fee_gateway_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
        sa.Column("ship_to_name", sa.String(255), nullable=True),
        sa.Column("ship_to_phone", sa.String(32), nullable=True),
        sa.Column("ship_to_address", sa.Text(), nullable=True),
        sa.Column("ship_to_city", sa.String(128), nullable=True),
        sa.Column("ship_to_state", sa.String(128), nullable=True),
        _timestamp("created_at"),
        _timestamp("paid_at", nullable=True, server_default=False),
        _timestamp("canceled_at", nullable=True, server_default=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_user_status", ["user_id", "status"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("unit_price_kobo", sa.Integer(), nullable=False),
        sa.Column("chosen_supplier_id", sa.Integer(), nullable=True),
        sa.Column("chosen_supplier_unit_cost_kobo", sa.Integer(), nullable=True),
        sa.Column("chosen_offer_kind", sa.String(16), nullable=True),
        sa.Column("chosen_offer_id", sa.Integer(), nullable=True),
        sa.Column("fulfillment_status", sa.String(32), nullable=False, server_default="PENDING"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["variant_id"], ["product_variants.id"]),
        sa.ForeignKeyConstraint(["chosen_supplier_id"], ["suppliers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_items_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_order_items_chosen_supplier_id", ["chosen_supplier_id"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(32), nullable=True),
        sa.Column("amount_kobo", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
        _status("status"),
        _timestamp("paid_at", nullable=True, server_default=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference", name="uq_payments_reference"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("payments", schema=None) as batch_op:
        batch_op.create_index("ix_payments_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_payments_status", ["status"], unique=False)

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("payment_events", schema=None) as batch_op:
        batch_op.create_index("ix_payment_events_payment_id", ["payment_id"], unique=False)

    op.create_table(
        "order_action_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("purpose", sa.String(32), nullable=False),
        sa.Column("code_salt", sa.String(64), nullable=False),
        sa.Column("code_hash", sa.String(128), nullable=False),
        _timestamp("created_at", server_default=False),
        _timestamp("expires_at", server_default=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("locked_until", nullable=True, server_default=False),
        _timestamp("verified_at", nullable=True, server_default=False),
        _timestamp("consumed_at", nullable=True, server_default=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_action_codes", schema=None) as batch_op:
        batch_op.create_index("ix_order_action_codes_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_action_codes_lookup", ["order_id", "user_id", "purpose"], unique=False)

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=False),
        sa.Column("supplier_order_ref", sa.String(32), nullable=True),
        sa.Column("supplier_amount_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
        _status("status"),
        _status("payout_status"),
        _timestamp("shipped_at", nullable=True, server_default=False),
        _timestamp("delivered_at", nullable=True, server_default=False),
        sa.Column("delivered_by_user_id", sa.Integer(), nullable=True),
        sa.Column("delivered_without_verification", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _timestamp("delivery_verified_at", nullable=True, server_default=False),
        _timestamp("refund_requested_at", nullable=True, server_default=False),
        _timestamp("paid_out_at", nullable=True, server_default=False),
        _timestamp("canceled_at", nullable=True, server_default=False),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True, server_default=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["delivered_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "supplier_id", name="uq_purchase_orders_order_supplier"),
        sa.UniqueConstraint("supplier_order_ref", name="uq_purchase_orders_supplier_order_ref"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("purchase_orders", schema=None) as batch_op:
        batch_op.create_index("ix_purchase_orders_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_purchase_orders_supplier_id", ["supplier_id"], unique=False)
        batch_op.create_index("ix_purchase_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_purchase_orders_supplier_status", ["supplier_id", "status"], unique=False)

    op.create_table(
        "purchase_order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("purchase_order_id", sa.Integer(), nullable=False),
        sa.Column("order_item_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_item_id", name="uq_purchase_order_items_order_item"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("purchase_order_items", schema=None) as batch_op:
        batch_op.create_index("ix_purchase_order_items_purchase_order_id", ["purchase_order_id"], unique=False)

    op.create_table(
        "delivery_challenges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("purchase_order_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("issued_by_user_id", sa.Integer(), nullable=True),
        sa.Column("code_salt", sa.String(64), nullable=False),
        sa.Column("code_hash", sa.String(128), nullable=False),
        _timestamp("created_at", server_default=False),
        _timestamp("expires_at", server_default=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("locked_until", nullable=True, server_default=False),
        _timestamp("verified_at", nullable=True, server_default=False),
        sa.Column("verified_by_user_id", sa.Integer(), nullable=True),
        _timestamp("consumed_at", nullable=True, server_default=False),
        _timestamp("superseded_at", nullable=True, server_default=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["issued_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["verified_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("delivery_challenges", schema=None) as batch_op:
        batch_op.create_index("ix_delivery_challenges_purchase_order_id", ["purchase_order_id"], unique=False)
        batch_op.create_index("ix_delivery_challenges_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_delivery_challenges_po_created", ["purchase_order_id", "created_at"], unique=False)

    # ------------------------------------------------------------------
    # Payouts and ledger
    # ------------------------------------------------------------------
    op.create_table(
        "supplier_payment_allocations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("purchase_order_id", sa.Integer(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=False),
        sa.Column("amount_kobo", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
        _status("status"),
        sa.Column("supplier_name_snapshot", sa.String(255), nullable=True),
        sa.Column("hold_reason", sa.String(255), nullable=True),
        _timestamp("released_at", nullable=True, server_default=False),
        sa.Column("released_by_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at", nullable=True, server_default=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["released_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "payment_id", "purchase_order_id", "supplier_id",
            name="uq_allocations_payment_po_supplier",
        ),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("supplier_payment_allocations", schema=None) as batch_op:
        batch_op.create_index("ix_supplier_payment_allocations_payment_id", ["payment_id"], unique=False)
        batch_op.create_index("ix_supplier_payment_allocations_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_supplier_payment_allocations_purchase_order_id", ["purchase_order_id"], unique=False)
        batch_op.create_index("ix_supplier_payment_allocations_supplier_id", ["supplier_id"], unique=False)
        batch_op.create_index("ix_allocations_supplier_status", ["supplier_id", "status"], unique=False)

    op.create_table(
        "supplier_ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=False),
        _status("entry_type"),
        _status("reason"),
        sa.Column("amount_kobo", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("purchase_order_id", sa.Integer(), nullable=True),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.CheckConstraint("amount_kobo > 0", name="ck_supplier_ledger_amount_positive"),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("supplier_ledger_entries", schema=None) as batch_op:
        batch_op.create_index("ix_supplier_ledger_entries_supplier_id", ["supplier_id"], unique=False)
        batch_op.create_index("ix_supplier_ledger_entries_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_supplier_ledger_entries_purchase_order_id", ["purchase_order_id"], unique=False)
        batch_op.create_index("ix_supplier_ledger_supplier_created", ["supplier_id", "created_at"], unique=False)
        batch_op.create_index("ix_supplier_ledger_reference", ["reference_type", "reference_id"], unique=False)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    op.create_table(
        "refunds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("purchase_order_id", sa.Integer(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=False),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=False),
        sa.Column("filed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        _status("status"),
        sa.Column("items_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("service_fee_base_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("service_fee_comms_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("service_fee_gateway_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_kobo", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default="NGN"),
        sa.Column("supplier_response", sa.String(16), nullable=True),
        sa.Column("supplier_note", sa.Text(), nullable=True),
        _timestamp("supplier_responded_at", nullable=True, server_default=False),
        sa.Column("resolution", sa.String(16), nullable=True),
        sa.Column("admin_note", sa.Text(), nullable=True),
        _timestamp("closed_at", nullable=True, server_default=False),
        sa.Column("closed_by_user_id", sa.Integer(), nullable=True),
        _timestamp("requested_at", server_default=False),
        _timestamp("updated_at", nullable=True, server_default=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["filed_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["closed_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("purchase_order_id", name="uq_refunds_purchase_order"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("refunds", schema=None) as batch_op:
        batch_op.create_index("ix_refunds_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_refunds_status", ["status"], unique=False)
        batch_op.create_index("ix_refunds_supplier_status", ["supplier_id", "status"], unique=False)

    op.create_table(
        "refund_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("refund_id", sa.Integer(), nullable=False),
        sa.Column("order_item_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_kobo", sa.Integer(), nullable=False),
        sa.Column("supplier_unit_cost_kobo", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["refund_id"], ["refunds.id"]),
        sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("refund_id", "order_item_id", name="uq_refund_items_refund_item"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("refund_items", schema=None) as batch_op:
        batch_op.create_index("ix_refund_items_refund_id", ["refund_id"], unique=False)

    op.create_table(
        "refund_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("refund_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at", server_default=False),
        sa.ForeignKeyConstraint(["refund_id"], ["refunds.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("refund_events", schema=None) as batch_op:
        batch_op.create_index("ix_refund_events_refund_id", ["refund_id"], unique=False)

    # ------------------------------------------------------------------
    # Activity and notifications
    # ------------------------------------------------------------------
    op.create_table(
        "order_activities",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("supplier_id", sa.Integer(), nullable=True),
        sa.Column("purchase_order_id", sa.Integer(), nullable=True),
        sa.Column("activity_type", sa.String(48), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["supplier_id"], ["suppliers.id"]),
        sa.ForeignKeyConstraint(["purchase_order_id"], ["purchase_orders.id"]),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_activities", schema=None) as batch_op:
        batch_op.create_index("ix_order_activities_activity_type", ["activity_type"], unique=False)
        batch_op.create_index("ix_order_activities_order_created", ["order_id", "created_at"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("notification_type", sa.String(48), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("data_json", sa.Text(), nullable=True),
        _timestamp("read_at", nullable=True, server_default=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("notifications", schema=None) as batch_op:
        batch_op.create_index("ix_notifications_user_read", ["user_id", "read_at"], unique=False)


def downgrade():
    for table in (
        "notifications",
        "order_activities",
        "refund_events",
        "refund_items",
        "refunds",
        "supplier_ledger_entries",
        "supplier_payment_allocations",
        "delivery_challenges",
        "purchase_order_items",
        "purchase_orders",
        "order_action_codes",
        "payment_events",
        "payments",
        "order_items",
        "orders",
        "supplier_variant_offers",
        "supplier_product_offers",
        "product_variants",
        "products",
        "suppliers",
        "session_tokens",
        "users",
    ):
        op.drop_table(table)

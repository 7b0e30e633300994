"""initial wmscore schema: items, bins, ledger, txns, orders, claims, picking logs

Revision ID: 3c1f0a7d9e21
Revises:
Create Date: 2026-10-19 10:12:40.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f0a7d9e21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "stocked_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("units_per_pack", sa.Integer(), nullable=False, server_default="1"),
        _ts("created_at"),
        sa.UniqueConstraint("sku", name="uq_stocked_items_sku"),
    )
    op.create_index("ix_stocked_items_sku", "stocked_items", ["sku"])

    op.create_table(
        "storage_bins",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("zone", sa.String(length=32), nullable=True),
        sa.Column("pick_sequence", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
        sa.UniqueConstraint("code", name="uq_storage_bins_code"),
    )
    op.create_index("ix_storage_bins_pick_sequence", "storage_bins", ["pick_sequence"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "item_id", sa.Integer(), sa.ForeignKey("stocked_items.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column(
            "bin_id", sa.Integer(), sa.ForeignKey("storage_bins.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("on_hand", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("picked", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at"),
        sa.UniqueConstraint("item_id", "bin_id", name="uq_ledger_entries_item_bin"),
        sa.CheckConstraint("on_hand >= 0", name="ck_ledger_on_hand_nonneg"),
        sa.CheckConstraint("reserved >= 0", name="ck_ledger_reserved_nonneg"),
        sa.CheckConstraint("picked >= 0", name="ck_ledger_picked_nonneg"),
        sa.CheckConstraint("reserved + picked <= on_hand", name="ck_ledger_committed_le_on_hand"),
    )

    op.create_table(
        "inventory_txns",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("bin_id", sa.Integer(), nullable=False),
        sa.Column("txn_type", sa.String(length=16), nullable=False),
        sa.Column("qty_delta", sa.Integer(), nullable=False),
        sa.Column("ref_type", sa.String(length=32), nullable=False),
        sa.Column("ref_id", sa.String(length=128), nullable=False),
        sa.Column("ref_seq", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("on_hand_after", sa.Integer(), nullable=False),
        sa.Column("reserved_after", sa.Integer(), nullable=False),
        sa.Column("picked_after", sa.Integer(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint(
            "txn_type", "ref_type", "ref_id", "ref_seq", name="uq_inventory_txns_type_ref_seq"
        ),
    )
    op.create_index("ix_inventory_txns_ref", "inventory_txns", ["ref_type", "ref_id"])
    op.create_index("ix_inventory_txns_item_bin", "inventory_txns", ["item_id", "bin_id"])
    op.create_index("ix_inventory_txns_order", "inventory_txns", ["order_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_ref", sa.String(length=128), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("on_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allocation_short", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("review_reason", sa.Text(), nullable=True),
        sa.Column("resolution", sa.String(length=16), nullable=True),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(length=64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("external_ref", name="uq_orders_external_ref"),
    )
    op.create_index("ix_orders_status_priority", "orders", ["status", "priority"])

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "item_id", sa.Integer(), sa.ForeignKey("stocked_items.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("required_qty", sa.Integer(), nullable=False),
        sa.Column("reserved_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("picked_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("short_reason", sa.String(length=16), nullable=True),
        sa.Column("bin_id", sa.Integer(), sa.ForeignKey("storage_bins.id", ondelete="RESTRICT"), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("picked_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("order_id", "line_no", name="uq_order_lines_order_line_no"),
        sa.CheckConstraint("required_qty > 0", name="ck_order_lines_required_pos"),
        sa.CheckConstraint("picked_qty >= 0", name="ck_order_lines_picked_nonneg"),
        sa.CheckConstraint("reserved_qty >= 0", name="ck_order_lines_reserved_nonneg"),
    )
    op.create_index("ix_order_lines_order_id", "order_lines", ["order_id"])

    op.create_table(
        "order_line_allocations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "line_id", sa.Integer(), sa.ForeignKey("order_lines.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "bin_id", sa.Integer(), sa.ForeignKey("storage_bins.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("pick_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("picked_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("released_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("line_id", "bin_id", name="uq_order_line_allocations_line_bin"),
        sa.CheckConstraint("reserved_qty >= 0", name="ck_allocations_reserved_nonneg"),
    )

    op.create_table(
        "order_claims",
        sa.Column(
            "order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("worker_id", sa.String(length=64), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_order_claims_worker_id", "order_claims", ["worker_id"])
    op.create_index("ix_order_claims_expires_at", "order_claims", ["expires_at"])

    op.create_table(
        "picking_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("line_id", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(length=64), nullable=True),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("qty_before", sa.Integer(), nullable=True),
        sa.Column("qty_after", sa.Integer(), nullable=True),
        sa.Column("status_before", sa.String(length=16), nullable=True),
        sa.Column("status_after", sa.String(length=16), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_picking_logs_order", "picking_logs", ["order_id", "created_at"])
    op.create_index("ix_picking_logs_worker", "picking_logs", ["worker_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_picking_logs_worker", table_name="picking_logs")
    op.drop_index("ix_picking_logs_order", table_name="picking_logs")
    op.drop_table("picking_logs")

    op.drop_index("ix_order_claims_expires_at", table_name="order_claims")
    op.drop_index("ix_order_claims_worker_id", table_name="order_claims")
    op.drop_table("order_claims")

    op.drop_table("order_line_allocations")

    op.drop_index("ix_order_lines_order_id", table_name="order_lines")
    op.drop_table("order_lines")

    op.drop_index("ix_orders_status_priority", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_inventory_txns_order", table_name="inventory_txns")
    op.drop_index("ix_inventory_txns_item_bin", table_name="inventory_txns")
    op.drop_index("ix_inventory_txns_ref", table_name="inventory_txns")
    op.drop_table("inventory_txns")

    op.drop_table("ledger_entries")

    op.drop_index("ix_storage_bins_pick_sequence", table_name="storage_bins")
    op.drop_table("storage_bins")

    op.drop_index("ix_stocked_items_sku", table_name="stocked_items")
    op.drop_table("stocked_items")

"""Initial stock ledger schema: departments, labs, items, stock log, moves

Revision ID: ls001
Revises:
Create Date: 2026-10-19 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "ls001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("code", name="uq_departments_code"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "labs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_labs_department_id", "labs", ["department_id"], unique=False)
    op.create_index("ix_labs_department_name", "labs", ["department_id", "name"], unique=False)

    # Items: quantity is only ever written by the stock ledger
    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("lab_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("unit", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minimum_quantity", sa.Integer(), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["lab_id"], ["labs.id"]),
        sa.CheckConstraint("quantity >= 0", name="ck_items_quantity_non_negative"),
        sa.CheckConstraint(
            "minimum_quantity IS NULL OR minimum_quantity >= 0",
            name="ck_items_minimum_quantity_non_negative",
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_items_lab_id", "items", ["lab_id"], unique=False)
    op.create_index(
        "uq_items_lab_name_type_active",
        "items",
        ["lab_id", "name", "type"],
        unique=True,
        sqlite_where=sa.text("deleted_at IS NULL"),
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index("ix_items_expiry_date", "items", ["expiry_date"], unique=False)

    # Append-only stock log
    op.create_table(
        "stock_log_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("lab_id", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(length=16), nullable=False),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.Column("resulting_quantity", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("move_id", sa.String(length=32), nullable=True),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=True),
        sa.Column("supplier", sa.String(length=255), nullable=True),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"]),
        sa.ForeignKeyConstraint(["lab_id"], ["labs.id"]),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_log_entries_item_id", "stock_log_entries", ["item_id"], unique=False)
    op.create_index("ix_stock_log_entries_lab_id", "stock_log_entries", ["lab_id"], unique=False)
    op.create_index("ix_stock_log_entries_operation", "stock_log_entries", ["operation"], unique=False)
    op.create_index("ix_stock_log_entries_actor_id", "stock_log_entries", ["actor_id"], unique=False)
    op.create_index("ix_stock_log_entries_move_id", "stock_log_entries", ["move_id"], unique=False)
    op.create_index("ix_stock_log_entries_occurred_at", "stock_log_entries", ["occurred_at"], unique=False)
    op.create_index("ix_stock_log_item_occurred", "stock_log_entries", ["item_id", "occurred_at", "id"], unique=False)
    op.create_index("ix_stock_log_lab_occurred", "stock_log_entries", ["lab_id", "occurred_at"], unique=False)

    # Move correlation records (saga state)
    op.create_table(
        "stock_moves",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("move_id", sa.String(length=32), nullable=False),
        sa.Column("source_item_id", sa.Integer(), nullable=False),
        sa.Column("target_item_id", sa.Integer(), nullable=True),
        sa.Column("source_lab_id", sa.Integer(), nullable=False),
        sa.Column("target_lab_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("compensated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["source_item_id"], ["items.id"]),
        sa.ForeignKeyConstraint(["target_item_id"], ["items.id"]),
        sa.ForeignKeyConstraint(["source_lab_id"], ["labs.id"]),
        sa.ForeignKeyConstraint(["target_lab_id"], ["labs.id"]),
        sa.UniqueConstraint("move_id", name="uq_stock_moves_move_id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_stock_moves_source_item_id", "stock_moves", ["source_item_id"], unique=False)
    op.create_index("ix_stock_moves_target_item_id", "stock_moves", ["target_item_id"], unique=False)
    op.create_index("ix_stock_moves_status", "stock_moves", ["status"], unique=False)
    op.create_index("ix_stock_moves_status_created", "stock_moves", ["status", "created_at"], unique=False)


def downgrade():
    op.drop_index("ix_stock_moves_status_created", table_name="stock_moves")
    op.drop_index("ix_stock_moves_status", table_name="stock_moves")
    op.drop_index("ix_stock_moves_target_item_id", table_name="stock_moves")
    op.drop_index("ix_stock_moves_source_item_id", table_name="stock_moves")
    op.drop_table("stock_moves")

    op.drop_index("ix_stock_log_lab_occurred", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_item_occurred", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_entries_occurred_at", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_entries_move_id", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_entries_actor_id", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_entries_operation", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_entries_lab_id", table_name="stock_log_entries")
    op.drop_index("ix_stock_log_entries_item_id", table_name="stock_log_entries")
    op.drop_table("stock_log_entries")

    op.drop_index("ix_items_expiry_date", table_name="items")
    op.drop_index("uq_items_lab_name_type_active", table_name="items")
    op.drop_index("ix_items_lab_id", table_name="items")
    op.drop_table("items")

    op.drop_index("ix_labs_department_name", table_name="labs")
    op.drop_index("ix_labs_department_id", table_name="labs")
    op.drop_table("labs")

    op.drop_table("departments")

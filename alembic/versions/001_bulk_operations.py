"""bulk operation ledger, progress log and audit trail

Revision ID: 001_bulk_operations
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_bulk_operations"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- bulk_operations ---
    op.create_table(
        "bulk_operations",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("account_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="processing"),
        sa.Column("total_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("successful_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_value", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("items_json", sa.Text, nullable=False, server_default="[]"),
        sa.Column("metadata_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("rollback_deadline", sa.DateTime, nullable=False),
        sa.Column("rollback_state", sa.String(16), nullable=False, server_default="none"),
        sa.Column("rolled_back_at", sa.DateTime, nullable=True),
        sa.Column("rolled_back_by", sa.String(128), nullable=True),
        sa.Column("rollback_reason", sa.Text, nullable=True),
        sa.Column("reversed_items", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_bulk_operations_user_id", "bulk_operations", ["user_id"])
    op.create_index("ix_bulk_operations_account_id", "bulk_operations", ["account_id"])
    op.create_index("ix_bulk_operations_status", "bulk_operations", ["status"])
    op.create_index("ix_bulk_operations_created_at", "bulk_operations", ["created_at"])

    # --- bulk_operation_progress ---
    op.create_table(
        "bulk_operation_progress",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("operation_id", sa.String(40), sa.ForeignKey("bulk_operations.id"), nullable=False),
        sa.Column("row_index", sa.Integer, nullable=False),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("order_ref", sa.String(255), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("recorded_at", sa.DateTime, nullable=False),
        sa.Column("reversed_at", sa.DateTime, nullable=True),
        sa.Column("reversal_error", sa.Text, nullable=True),
        sa.UniqueConstraint("operation_id", "row_index", name="uq_progress_operation_row"),
    )
    op.create_index("ix_bulk_operation_progress_operation_id", "bulk_operation_progress", ["operation_id"])

    # --- audit_events ---
    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("timestamp", sa.DateTime, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("account_id", sa.String(128), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("resource", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("details_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("previous_checksum", sa.String(64), nullable=True),
        sa.Column("checksum", sa.String(64), nullable=False),
    )
    op.create_index("ix_audit_events_sequence", "audit_events", ["sequence"], unique=True)
    op.create_index("ix_audit_events_timestamp", "audit_events", ["timestamp"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("bulk_operation_progress")
    op.drop_table("bulk_operations")

"""
Bulk Operation Models
=====================

SQLModel tables for the operation ledger.

OperationRecord holds one row per accepted bulk upload (created only after
every validation stage passed). ProgressEntry is the append-only progress
log: one row per submitted CSV row, unique on (operation_id, row_index), so
a row can never gain a second terminal outcome.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Column, Field, SQLModel, Text

from bulkorder.models.types import UTCDateTime


class OperationStatus(str, Enum):
    """Operation lifecycle states."""
    PROCESSING = "processing"    # Created, rows being executed
    COMPLETED = "completed"      # Every row added to cart
    PARTIAL = "partial"          # Some rows (or some reversals) failed
    FAILED = "failed"            # No row succeeded, or the pipeline faulted
    ROLLED_BACK = "rolled_back"  # Every successful row reversed


class RollbackState(str, Enum):
    NONE = "none"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class RowOutcome(str, Enum):
    SUCCESS = "success"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


ROLLBACK_ELIGIBLE_STATUSES = (OperationStatus.COMPLETED.value, OperationStatus.PARTIAL.value)


class OperationRecord(SQLModel, table=True):
    """Persistent record of one bulk operation."""

    __tablename__ = "bulk_operations"

    id: str = Field(primary_key=True, max_length=40)
    user_id: str = Field(index=True, max_length=128)
    account_id: str = Field(index=True, max_length=128)
    status: str = Field(default=OperationStatus.PROCESSING.value, index=True, max_length=32)

    total_items: int = Field(default=0)
    processed_items: int = Field(default=0)
    successful_items: int = Field(default=0)
    failed_items: int = Field(default=0)
    total_value: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)

    items_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, default="{}"))

    created_at: datetime = Field(sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, nullable=True)
    rollback_deadline: datetime = Field(sa_type=UTCDateTime)

    rollback_state: str = Field(default=RollbackState.NONE.value, max_length=16)
    rolled_back_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, nullable=True)
    rolled_back_by: Optional[str] = Field(default=None, nullable=True, max_length=128)
    rollback_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    reversed_items: int = Field(default=0)


class ProgressEntry(SQLModel, table=True):
    """One terminal outcome for one submitted row. Append-only."""

    __tablename__ = "bulk_operation_progress"
    __table_args__ = (
        UniqueConstraint("operation_id", "row_index", name="uq_progress_operation_row"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    operation_id: str = Field(foreign_key="bulk_operations.id", index=True, max_length=40)
    row_index: int
    sku: str = Field(max_length=100)
    quantity: int = Field(default=0)
    outcome: str = Field(max_length=16)
    order_ref: Optional[str] = Field(default=None, nullable=True, max_length=255)
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    recorded_at: datetime = Field(sa_type=UTCDateTime)

    # Set by rollback only
    reversed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, nullable=True)
    reversal_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

"""
Bulk Order Schemas
==================

Pydantic models shared by the parser, processor, ledger and router.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bulkorder.models.operation import RowOutcome

CENTS = Decimal("0.01")


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


# ---------------------------------------------------------------------------
# Parsed input
# ---------------------------------------------------------------------------

class ParsedRow(BaseModel):
    """A CSV data row that passed every structural and threat check."""

    model_config = ConfigDict(frozen=True)

    row_index: int = Field(ge=1, description="1-based data row number (header excluded)")
    sku: str = Field(min_length=1, max_length=100)
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)
    reference: Optional[str] = Field(default=None, max_length=100)
    priority: Priority = Priority.NORMAL

    @property
    def line_value(self) -> Decimal:
        return (Decimal(self.quantity) * (self.unit_price or Decimal("0"))).quantize(CENTS)

    def to_ledger_item(self) -> Dict[str, Any]:
        return {
            "row_index": self.row_index,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
            "notes": self.notes,
            "reference": self.reference,
            "priority": self.priority.value,
        }


# ---------------------------------------------------------------------------
# Commerce capability payloads
# ---------------------------------------------------------------------------

class ProductAvailability(BaseModel):
    sku: str
    available: bool
    quantity_available: int = 0
    unit_price: Optional[Decimal] = None
    name: Optional[str] = None


class AlternativeProduct(BaseModel):
    sku: str
    name: Optional[str] = None
    unit_price: Optional[Decimal] = None
    quantity_available: int = 0
    reason: Optional[str] = None


class CartItem(BaseModel):
    sku: str
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Progress and results
# ---------------------------------------------------------------------------

class ProgressUpdate(BaseModel):
    """Terminal outcome of one row, as recorded in the ledger."""

    model_config = ConfigDict(frozen=True)

    row_index: int
    sku: str
    quantity: int = 0
    outcome: RowOutcome
    order_ref: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    alternatives: List[AlternativeProduct] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome == RowOutcome.SUCCESS


class RowError(BaseModel):
    row_index: Optional[int] = None
    sku: Optional[str] = None
    code: str
    message: str


class BulkResult(BaseModel):
    operation_id: Optional[str] = None
    success: bool
    processed: int = 0
    added: int = 0
    failed: int = 0
    reversed: int = 0
    total_quantity: int = 0
    total_value: Decimal = Decimal("0.00")
    duration_ms: float = 0.0
    errors: List[RowError] = Field(default_factory=list)
    alternatives: Dict[str, List[AlternativeProduct]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class RollbackRequest(BaseModel):
    reason: str = ""


class RollbackResponse(BaseModel):
    operation_id: str
    success: bool
    status: str
    reversed_items: int
    errors: List[RowError] = Field(default_factory=list)
    message: str


class RollbackEligibility(BaseModel):
    operation_id: str
    eligible: bool
    reason: Optional[str] = None
    deadline: Optional[datetime] = None
    hours_remaining: Optional[float] = None


class ProgressEntryOut(BaseModel):
    row_index: int
    sku: str
    quantity: int
    outcome: str
    order_ref: Optional[str] = None
    error: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversal_error: Optional[str] = None


class OperationSummary(BaseModel):
    operation_id: str
    status: str
    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    total_value: Decimal
    created_at: datetime
    completed_at: Optional[datetime] = None
    rollback_deadline: datetime
    rolled_back_at: Optional[datetime] = None
    filename: Optional[str] = None


class OperationDetail(OperationSummary):
    user_id: str
    account_id: str
    items: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    progress: List[ProgressEntryOut] = Field(default_factory=list)
    rolled_back_by: Optional[str] = None
    rollback_reason: Optional[str] = None
    reversed_items: int = 0


class OperationHistory(BaseModel):
    operations: List[OperationSummary]
    count: int

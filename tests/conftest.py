"""
Pytest configuration for bulk-order service tests.
Sets environment variables before any bulkorder import so Settings picks
them up, and provides an isolated database + fake commerce backend.
"""

import asyncio
import os
import tempfile

# Must be set before any bulkorder imports
os.environ["BULKORDER_DEBUG"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["BULKORDER_AUTH_ENABLED"] = "true"
os.environ["BULKORDER_SESSION_SECRET"] = "test-session-secret"
os.environ["BULKORDER_AUDIT_HMAC_SECRET"] = "test-audit-secret"

# Temp data/log directories so tests never touch ./data
_test_data_dir = tempfile.mkdtemp(prefix="bulkorder_test_")
os.environ.setdefault("BULKORDER_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("BULKORDER_LOG_DIRECTORY", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import pytest
from sqlmodel import SQLModel

from bulkorder.auth.b2b_auth import B2BIdentity, B2BRole, issue_session_token
from bulkorder.core.database import build_engine

# Import all models so their tables are registered on SQLModel.metadata
from bulkorder.models.operation import OperationRecord, ProgressEntry  # noqa: F401
from bulkorder.models.audit import AuditEventRecord  # noqa: F401
from bulkorder.schemas.bulk import AlternativeProduct, CartItem, ParsedRow, ProductAvailability

# Load error registry so BulkOrderError returns correct HTTP status codes
from bulkorder.core.errors.registry import error_registry
error_registry.load()


# ---------------------------------------------------------------------------
# Fake commerce backend
# ---------------------------------------------------------------------------

class FakeCommerce:
    """In-memory CommerceCapabilities that records every call."""

    def __init__(self):
        self.inventory: Dict[str, int] = {}
        self.alternatives: Dict[str, List[AlternativeProduct]] = {}
        self.failing_skus: set = set()
        self.slow_skus: set = set()
        self.slow_s: float = 1.0
        self.alternatives_fail = False
        self.reverse_failures: set = set()
        self.reverse_delay_s: float = 0.0
        self.calls: List[tuple] = []
        self.cart: List[CartItem] = []
        self.reversed: List[str] = []

    async def check_availability(self, sku: str) -> ProductAvailability:
        self.calls.append(("check_availability", sku))
        if sku in self.failing_skus:
            raise RuntimeError("inventory backend unavailable")
        if sku in self.slow_skus:
            await asyncio.sleep(self.slow_s)
        quantity = self.inventory.get(sku, 0)
        return ProductAvailability(sku=sku, available=quantity > 0, quantity_available=quantity)

    async def find_alternatives(self, sku: str, quantity: int) -> List[AlternativeProduct]:
        self.calls.append(("find_alternatives", sku))
        if self.alternatives_fail:
            raise RuntimeError("recommendation backend unavailable")
        return list(self.alternatives.get(sku, []))

    async def add_to_cart(self, items: Sequence[CartItem]) -> Optional[str]:
        self.calls.append(("add_to_cart", items[0].sku))
        self.cart.extend(items)
        return f"ref-{items[0].sku}"

    async def reverse(self, order_ref: str) -> None:
        self.calls.append(("reverse", order_ref))
        if self.reverse_delay_s:
            await asyncio.sleep(self.reverse_delay_s)
        if order_ref in self.reverse_failures:
            raise RuntimeError("cart line already shipped")
        self.reversed.append(order_ref)

    def calls_to(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database per test."""
    eng = build_engine(f"sqlite:///{tmp_path}/bulkorder_test.db")
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def commerce():
    fake = FakeCommerce()
    fake.inventory.update({"A1": 100, "C3": 100, "D4": 100})
    return fake


@pytest.fixture
def identity():
    return B2BIdentity(user_id="user-1", account_id="acme", role=B2BRole.BUYER)


@pytest.fixture
def make_identity():
    def _make(**overrides) -> B2BIdentity:
        fields = {"user_id": "user-1", "account_id": "acme", "role": B2BRole.BUYER}
        fields.update(overrides)
        return B2BIdentity(**fields)
    return _make


@pytest.fixture
def bearer():
    """Authorization headers for an identity."""
    def _headers(identity: B2BIdentity) -> Dict[str, str]:
        return {"Authorization": f"Bearer {issue_session_token(identity)}"}
    return _headers


@pytest.fixture
def make_row():
    def _row(row_index: int, sku: str, quantity: int, price: Optional[str] = None, **extra) -> ParsedRow:
        return ParsedRow(
            row_index=row_index,
            sku=sku,
            quantity=quantity,
            unit_price=Decimal(price) if price is not None else None,
            **extra,
        )
    return _row

"""
B2B Authorization
=================

Role/permission and spending-limit checks for bulk operations.

Evaluation order for authorize():
    1. permission for the operation type (bulk_order.create / .approve / .view)
    2. bulk_order.unlimited bypasses every limit
    3. limits: single order value → single order items → daily → monthly

Limits come from the identity's custom limits, else the account policy,
else the role defaults. Daily/monthly usage is tracked per account by
OrderStatsTracker and resets at UTC day/month boundaries.

The ingress guard calls authorize() with a zero value/zero item request
(permission check only); the validation pipeline calls it again with the
parsed order value and row count. Every denial writes an audit event.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple

from bulkorder.auth.b2b_auth import B2BIdentity, B2BRole, OrderLimits, Permission
from bulkorder.config import AccountPolicySettings, settings
from bulkorder.core.errors import AuthorizationError
from bulkorder.services.audit_logger import AuditEventType, AuditLogger

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

ROLE_PERMISSIONS: Dict[B2BRole, List[Permission]] = {
    B2BRole.BUYER: [
        Permission.BULK_ORDER_CREATE,
        Permission.BULK_ORDER_VIEW,
        Permission.ACCOUNT_VIEW,
    ],
    B2BRole.PURCHASING_MANAGER: [
        Permission.BULK_ORDER_CREATE,
        Permission.BULK_ORDER_VIEW,
        Permission.BULK_ORDER_APPROVE,
        Permission.ACCOUNT_VIEW,
    ],
    B2BRole.ACCOUNT_ADMIN: [
        Permission.BULK_ORDER_CREATE,
        Permission.BULK_ORDER_VIEW,
        Permission.BULK_ORDER_APPROVE,
        Permission.BULK_ORDER_UNLIMITED,
        Permission.ACCOUNT_VIEW,
        Permission.ACCOUNT_MANAGE,
    ],
    B2BRole.API_USER: [
        Permission.BULK_ORDER_CREATE,
        Permission.BULK_ORDER_VIEW,
        Permission.API_ACCESS,
    ],
}

ROLE_LIMITS: Dict[B2BRole, OrderLimits] = {
    B2BRole.BUYER: OrderLimits(daily_value=10_000, monthly_value=100_000, single_order_value=5_000, single_order_items=100),
    B2BRole.PURCHASING_MANAGER: OrderLimits(daily_value=50_000, monthly_value=500_000, single_order_value=25_000, single_order_items=500),
    B2BRole.ACCOUNT_ADMIN: OrderLimits(daily_value=100_000, monthly_value=1_000_000, single_order_value=50_000, single_order_items=1000),
    B2BRole.API_USER: OrderLimits(daily_value=200_000, monthly_value=2_000_000, single_order_value=100_000, single_order_items=2000),
}


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    APPROVE = "approve"
    VIEW = "view"


_REQUIRED_PERMISSION = {
    OperationType.CREATE: Permission.BULK_ORDER_CREATE,
    OperationType.UPDATE: Permission.BULK_ORDER_CREATE,
    OperationType.APPROVE: Permission.BULK_ORDER_APPROVE,
    OperationType.VIEW: Permission.BULK_ORDER_VIEW,
}


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BulkOperationRequest:
    type: OperationType
    order_value: Decimal = Decimal("0")
    item_count: int = 0


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    required_permission: Optional[str] = None
    current_limit: Optional[Decimal] = None
    requested_amount: Optional[Decimal] = None

    def to_error(self) -> AuthorizationError:
        details = {"reason": self.reason}
        if self.required_permission:
            details["required_permission"] = self.required_permission
        if self.current_limit is not None:
            details["limit"] = str(self.current_limit)
            details["requested"] = str(self.requested_amount)
        return AuthorizationError(self.code, detail=self.reason, details=details)


@dataclass(frozen=True)
class SkuValidation:
    valid: bool
    invalid_skus: List[str] = field(default_factory=list)
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Order stats
# ---------------------------------------------------------------------------

@dataclass
class _AccountStats:
    day: date
    month: Tuple[int, int]
    daily_total: Decimal = Decimal("0")
    monthly_total: Decimal = Decimal("0")


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class OrderStatsTracker:
    """Per-account running totals for the daily and monthly limits."""

    def __init__(self, today: Callable[[], date] = _utc_today):
        self._today = today
        self._stats: Dict[str, _AccountStats] = {}
        self._lock = threading.Lock()

    def _current(self, account_id: str) -> _AccountStats:
        today = self._today()
        month = (today.year, today.month)
        stats = self._stats.get(account_id)
        if stats is None:
            stats = _AccountStats(day=today, month=month)
            self._stats[account_id] = stats
        if stats.month != month:
            stats.month, stats.monthly_total = month, Decimal("0")
        if stats.day != today:
            stats.day, stats.daily_total = today, Decimal("0")
        return stats

    def usage(self, account_id: str) -> Tuple[Decimal, Decimal]:
        with self._lock:
            stats = self._current(account_id)
            return stats.daily_total, stats.monthly_total

    def record(self, account_id: str, value: Decimal) -> None:
        with self._lock:
            stats = self._current(account_id)
            stats.daily_total += value
            stats.monthly_total += value
        logger.info("Order stats updated: account=%s value=%s", account_id, value)


# ---------------------------------------------------------------------------
# Account policies
# ---------------------------------------------------------------------------

class AccountPolicyStore:
    """Account-specific limit overrides and SKU allow-patterns."""

    def __init__(
        self,
        policies: Optional[Dict[str, AccountPolicySettings]] = None,
        default_sku_pattern: str = r"^[A-Z0-9-]+$",
    ):
        self._policies = dict(policies or {})
        self._default_patterns = [re.compile(default_sku_pattern)]
        self._compiled: Dict[str, List[Pattern]] = {
            account_id: [re.compile(p) for p in policy.sku_patterns]
            for account_id, policy in self._policies.items()
            if policy.sku_patterns
        }

    def sku_patterns(self, account_id: str) -> List[Pattern]:
        return self._compiled.get(account_id, self._default_patterns)

    def limits_for(self, account_id: str, role_limits: OrderLimits) -> OrderLimits:
        policy = self._policies.get(account_id)
        if policy is None:
            return role_limits
        return OrderLimits(
            daily_value=policy.daily_value if policy.daily_value is not None else role_limits.daily_value,
            monthly_value=policy.monthly_value if policy.monthly_value is not None else role_limits.monthly_value,
            single_order_value=(
                policy.single_order_value if policy.single_order_value is not None else role_limits.single_order_value
            ),
            single_order_items=(
                policy.single_order_items if policy.single_order_items is not None else role_limits.single_order_items
            ),
        )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class B2BAuthorizationService:
    def __init__(
        self,
        audit: AuditLogger,
        policies: Optional[AccountPolicyStore] = None,
        stats: Optional[OrderStatsTracker] = None,
    ):
        self.audit = audit
        self.policies = policies or AccountPolicyStore()
        self.stats = stats or OrderStatsTracker()

    @staticmethod
    def permissions_for(identity: B2BIdentity) -> set:
        granted = {p.value for p in ROLE_PERMISSIONS.get(identity.role, [])}
        return granted | set(identity.permissions)

    def limits_for(self, identity: B2BIdentity) -> OrderLimits:
        if identity.custom_limits is not None:
            return identity.custom_limits
        return self.policies.limits_for(identity.account_id, ROLE_LIMITS[identity.role])

    async def authorize(
        self,
        identity: B2BIdentity,
        request: BulkOperationRequest,
        ip_address: Optional[str] = None,
    ) -> AuthorizationDecision:
        permissions = self.permissions_for(identity)
        required = _REQUIRED_PERMISSION[request.type].value

        if required not in permissions:
            decision = AuthorizationDecision(
                allowed=False,
                reason=f"Missing required permission: {required}",
                code="BLK-AUTH-003",
                required_permission=required,
            )
            await self._audit_denial(AuditEventType.UNAUTHORIZED_ACCESS, identity, request, decision, ip_address)
            return decision

        if Permission.BULK_ORDER_UNLIMITED.value in permissions:
            return AuthorizationDecision(allowed=True)

        decision = self._check_limits(identity, request)
        if not decision.allowed:
            await self._audit_denial(AuditEventType.ORDER_LIMIT_EXCEEDED, identity, request, decision, ip_address)
        return decision

    def _check_limits(self, identity: B2BIdentity, request: BulkOperationRequest) -> AuthorizationDecision:
        limits = self.limits_for(identity)
        value = to_money(request.order_value)

        single_value = to_money(limits.single_order_value)
        if value > single_value:
            return AuthorizationDecision(
                allowed=False,
                reason=f"Order value {value} exceeds single order limit {single_value}",
                code="BLK-AUTH-004",
                current_limit=single_value,
                requested_amount=value,
            )

        if request.item_count > limits.single_order_items:
            return AuthorizationDecision(
                allowed=False,
                reason=f"Item count {request.item_count} exceeds limit {limits.single_order_items}",
                code="BLK-AUTH-005",
                current_limit=Decimal(limits.single_order_items),
                requested_amount=Decimal(request.item_count),
            )

        daily_used, monthly_used = self.stats.usage(identity.account_id)

        daily_limit = to_money(limits.daily_value)
        if daily_used + value > daily_limit:
            return AuthorizationDecision(
                allowed=False,
                reason=f"Order would exceed daily limit (remaining {daily_limit - daily_used})",
                code="BLK-AUTH-006",
                current_limit=daily_limit - daily_used,
                requested_amount=value,
            )

        monthly_limit = to_money(limits.monthly_value)
        if monthly_used + value > monthly_limit:
            return AuthorizationDecision(
                allowed=False,
                reason=f"Order would exceed monthly limit (remaining {monthly_limit - monthly_used})",
                code="BLK-AUTH-007",
                current_limit=monthly_limit - monthly_used,
                requested_amount=value,
            )

        return AuthorizationDecision(allowed=True)

    async def validate_sku_patterns(
        self,
        identity: B2BIdentity,
        skus: Iterable[str],
        ip_address: Optional[str] = None,
    ) -> SkuValidation:
        patterns = self.policies.sku_patterns(identity.account_id)
        invalid: List[str] = []
        for sku in skus:
            if not any(p.fullmatch(sku) for p in patterns) and sku not in invalid:
                invalid.append(sku)

        if not invalid:
            return SkuValidation(valid=True)

        result = SkuValidation(
            valid=False,
            invalid_skus=invalid,
            reason=f"{len(invalid)} SKU(s) do not match the account's allowed patterns",
        )
        await self.audit.log_event(
            AuditEventType.INVALID_SKU_PATTERN,
            action="validate_sku_patterns",
            outcome="failure",
            user_id=identity.user_id,
            account_id=identity.account_id,
            ip_address=ip_address,
            details={"invalid_skus": invalid[:50], "invalid_count": len(invalid)},
        )
        return result

    def record_order(self, account_id: str, value: Decimal) -> None:
        self.stats.record(account_id, to_money(value))

    async def _audit_denial(
        self,
        event_type: AuditEventType,
        identity: B2BIdentity,
        request: BulkOperationRequest,
        decision: AuthorizationDecision,
        ip_address: Optional[str],
    ) -> None:
        await self.audit.log_event(
            event_type,
            action=f"bulk_order.{request.type.value}",
            outcome="failure",
            user_id=identity.user_id,
            account_id=identity.account_id,
            ip_address=ip_address,
            details={
                "reason": decision.reason,
                "code": decision.code,
                "required_permission": decision.required_permission,
                "limit": str(decision.current_limit) if decision.current_limit is not None else None,
                "requested": str(decision.requested_amount) if decision.requested_amount is not None else None,
                "item_count": request.item_count,
            },
        )


def build_policy_store() -> AccountPolicyStore:
    return AccountPolicyStore(settings.account_policies, settings.default_sku_pattern)

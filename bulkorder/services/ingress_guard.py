"""
Ingress Guard: first line of defense for bulk uploads.

Order (cheapest first, before any file bytes are examined):
    1. rate limit per client key       → 429 + Retry-After
    2. authentication                   → 401
    3. B2B account type                 → 403
    4. coarse authorization (value 0)   → 403 (missing bulk_order.create)

Every denial is audited. Rate-limit and auth denials also feed the alert
service's threat monitor.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from bulkorder.auth.b2b_auth import B2BIdentity
from bulkorder.core.errors import (
    AuthenticationError,
    AuthorizationError,
    BulkOrderError,
    RateLimitError,
)
from bulkorder.services.alert_service import SecurityAlertService
from bulkorder.services.audit_logger import AuditEventType, AuditLogger
from bulkorder.services.b2b_authorization import (
    B2BAuthorizationService,
    BulkOperationRequest,
    OperationType,
)
from bulkorder.services.rate_limiter import UploadRateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allow:
    identity: B2BIdentity


@dataclass(frozen=True)
class Deny:
    error: BulkOrderError

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def reason(self) -> str:
        return self.error.detail or self.error.code

    @property
    def retry_after(self) -> Optional[int]:
        return getattr(self.error, "retry_after", None)


AdmitDecision = Union[Allow, Deny]


class IngressGuard:
    def __init__(
        self,
        limiter: UploadRateLimiter,
        authorizer: B2BAuthorizationService,
        audit: AuditLogger,
        alerts: SecurityAlertService,
    ):
        self.limiter = limiter
        self.authorizer = authorizer
        self.audit = audit
        self.alerts = alerts

    async def admit(
        self,
        client_key: str,
        identity: Optional[B2BIdentity],
        credential_error: Optional[AuthenticationError] = None,
        user_agent: Optional[str] = None,
    ) -> AdmitDecision:
        retry_after = self.limiter.check_and_record(client_key)
        if retry_after is not None:
            await self.audit.log_event(
                AuditEventType.RATE_LIMIT_EXCEEDED,
                action="bulk_upload",
                outcome="blocked",
                user_id=identity.user_id if identity else None,
                ip_address=client_key,
                user_agent=user_agent,
                details={"retry_after": retry_after, "limit": self.limiter.max_requests},
            )
            await self.alerts.monitor_event("RATE_LIMIT_EXCEEDED", client_key)
            return Deny(RateLimitError(retry_after, detail=f"rate limit exceeded for {client_key}"))

        if identity is None:
            error = credential_error or AuthenticationError("BLK-AUTH-001", detail="no identity")
            await self.audit.log_event(
                AuditEventType.AUTH_FAILURE,
                action="bulk_upload",
                outcome="failure",
                ip_address=client_key,
                user_agent=user_agent,
                details={"code": error.code, "reason": error.detail},
            )
            await self.alerts.monitor_event("AUTH_FAILURE", client_key)
            return Deny(error)

        if not identity.is_b2b:
            await self.audit.log_event(
                AuditEventType.AUTH_B2B_REQUIRED,
                action="bulk_upload",
                outcome="failure",
                user_id=identity.user_id,
                account_id=identity.account_id,
                ip_address=client_key,
                user_agent=user_agent,
                details={"account_type": identity.account_type},
            )
            return Deny(AuthorizationError("BLK-AUTH-002", detail=f"account type {identity.account_type!r}"))

        decision = await self.authorizer.authorize(
            identity,
            BulkOperationRequest(type=OperationType.CREATE, order_value=Decimal("0"), item_count=0),
            ip_address=client_key,
        )
        if not decision.allowed:
            await self.alerts.monitor_event("UNAUTHORIZED_ACCESS", identity.user_id)
            return Deny(decision.to_error())

        return Allow(identity)

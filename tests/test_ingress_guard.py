"""
Tests for the ingress guard: rate limit, authentication, B2B gate.
"""

import pytest

from bulkorder.core.errors import AuthenticationError
from bulkorder.services.alert_service import SecurityAlertService
from bulkorder.services.audit_logger import AuditEventType, AuditLogger
from bulkorder.services.b2b_authorization import B2BAuthorizationService
from bulkorder.services.ingress_guard import Allow, Deny, IngressGuard
from bulkorder.services.rate_limiter import UploadRateLimiter


@pytest.fixture
def audit(engine):
    return AuditLogger(engine, secret="test-secret")


@pytest.fixture
def guard(audit):
    return IngressGuard(
        UploadRateLimiter(max_requests=2, window_s=300),
        B2BAuthorizationService(audit),
        audit,
        SecurityAlertService(handlers=[]),
    )


class TestAdmit:
    @pytest.mark.asyncio
    async def test_admits_b2b_buyer(self, guard, identity):
        decision = await guard.admit("10.0.0.1", identity)
        assert isinstance(decision, Allow)
        assert decision.identity is identity

    @pytest.mark.asyncio
    async def test_rate_limit_checked_before_auth(self, guard, audit):
        for _ in range(2):
            assert isinstance(await guard.admit("10.0.0.1", None), Deny)
        decision = await guard.admit("10.0.0.1", None)
        assert decision.code == "BLK-RATE-001"
        assert decision.retry_after >= 1

        events = await audit.query(event_type=AuditEventType.RATE_LIMIT_EXCEEDED)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_missing_identity_is_401(self, guard, audit):
        decision = await guard.admit("10.0.0.1", None)
        assert decision.code == "BLK-AUTH-001"
        events = await audit.query(event_type=AuditEventType.AUTH_FAILURE)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_credential_error_is_propagated(self, guard):
        error = AuthenticationError("BLK-AUTH-009", detail="session expired")
        decision = await guard.admit("10.0.0.1", None, credential_error=error)
        assert decision.error is error
        assert decision.reason == "session expired"

    @pytest.mark.asyncio
    async def test_consumer_account_is_rejected(self, guard, make_identity, audit):
        decision = await guard.admit("10.0.0.1", make_identity(account_type="consumer"))
        assert decision.code == "BLK-AUTH-002"
        events = await audit.query(event_type=AuditEventType.AUTH_B2B_REQUIRED)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_repeated_auth_failures_raise_alert(self, audit):
        alerts = SecurityAlertService(handlers=[])
        guard = IngressGuard(UploadRateLimiter(max_requests=100), B2BAuthorizationService(audit), audit, alerts)
        for _ in range(5):
            await guard.admit("10.0.0.9", None)
        assert [a.category.value for a in alerts.recent_alerts] == ["credential_stuffing"]

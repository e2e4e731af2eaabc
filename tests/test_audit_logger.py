"""
Tests for the audit trail: persistence, redaction cap, checksum chain.
"""

import json

import pytest
from sqlmodel import Session, select

from bulkorder.models.audit import AuditEventRecord
from bulkorder.services.audit_logger import (
    MAX_DETAILS_BYTES,
    AuditEventType,
    AuditLogger,
    AuditSeverity,
)


@pytest.fixture
def audit(engine):
    return AuditLogger(engine, secret="test-secret")


async def _log_three(audit: AuditLogger) -> None:
    await audit.log_event(AuditEventType.BULK_UPLOAD_START, action="create_operation", user_id="u1",
                          resource="op_1", details={"total_items": 2})
    await audit.log_event(AuditEventType.RATE_LIMIT_EXCEEDED, action="bulk_upload", outcome="blocked",
                          ip_address="10.0.0.1")
    await audit.log_event(AuditEventType.BULK_OPERATION_ROLLBACK, action="rollback_operation", user_id="u1",
                          resource="op_1", details={"reason": "duplicate order"})


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestLogEvent:
    @pytest.mark.asyncio
    async def test_persists_with_sequence(self, audit):
        await _log_three(audit)
        rows = await audit.query()
        assert [r.sequence for r in rows] == [3, 2, 1]
        assert rows[-1].previous_checksum is None
        assert rows[0].previous_checksum == rows[1].checksum

    @pytest.mark.asyncio
    async def test_default_severity_by_type(self, audit):
        event = await audit.log_event(AuditEventType.MALWARE_DETECTED, action="malware_scan", outcome="blocked")
        assert event.severity == AuditSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_query_filters(self, audit):
        await _log_three(audit)
        rows = await audit.query(user_id="u1", event_type=AuditEventType.BULK_OPERATION_ROLLBACK)
        assert len(rows) == 1
        assert json.loads(rows[0].details_json) == {"reason": "duplicate order"}

    @pytest.mark.asyncio
    async def test_oversized_details_are_dropped(self, audit):
        event = await audit.log_event(
            AuditEventType.BULK_VALIDATION_FAILURE,
            action="parse",
            details={"errors": ["x" * 100] * (MAX_DETAILS_BYTES // 50), "summary": {}},
        )
        assert event.details == {"_truncated": True, "keys": ["errors", "summary"]}


# ---------------------------------------------------------------------------
# Chain verification
# ---------------------------------------------------------------------------

class TestVerifyChain:
    @pytest.mark.asyncio
    async def test_intact_chain(self, audit):
        await _log_three(audit)
        assert audit.verify_chain() == (True, None)

    @pytest.mark.asyncio
    async def test_edited_details_detected(self, audit, engine):
        await _log_three(audit)
        with Session(engine) as session:
            row = session.exec(select(AuditEventRecord).where(AuditEventRecord.sequence == 2)).one()
            row.details_json = json.dumps({"retry_after": 1})
            session.add(row)
            session.commit()
            tampered_id = row.id

        ok, bad_id = audit.verify_chain()
        assert ok is False
        assert bad_id == tampered_id

    @pytest.mark.asyncio
    async def test_deleted_entry_detected(self, audit, engine):
        await _log_three(audit)
        with Session(engine) as session:
            row = session.exec(select(AuditEventRecord).where(AuditEventRecord.sequence == 2)).one()
            session.delete(row)
            session.commit()

        ok, bad_id = audit.verify_chain()
        assert ok is False
        assert bad_id is not None

    @pytest.mark.asyncio
    async def test_other_key_cannot_verify(self, audit, engine):
        await _log_three(audit)
        assert AuditLogger(engine, secret="another-secret").verify_chain()[0] is False

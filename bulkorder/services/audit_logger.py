"""
Audit Logger: tamper-evident audit trail for bulk-order security events.

Every event is:
  1. written as a structured log line on the ``bulkorder.audit`` logger
  2. persisted to ``audit_events`` with an HMAC-SHA256 checksum over the
     event content chained to the previous event's checksum

Redaction policy:
  - Never log file contents or session tokens
  - Cap each entry's details to 4KB (details dropped past the cap)

verify_chain() recomputes every checksum in sequence order and reports
the first entry that does not match.
"""

import hashlib
import hmac
import json
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from bulkorder.config import settings
from bulkorder.core.async_utils import run_sync
from bulkorder.core.database import get_engine, sqlite_retry
from bulkorder.models.audit import AuditEventRecord
from bulkorder.models.types import utcnow

logger = logging.getLogger("bulkorder.audit")

MAX_DETAILS_BYTES = 4096


class AuditEventType(str, Enum):
    AUTH_FAILURE = "AUTH_FAILURE"
    AUTH_B2B_REQUIRED = "AUTH_B2B_REQUIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    FILE_SCAN_REJECTED = "FILE_SCAN_REJECTED"
    MALWARE_DETECTED = "MALWARE_DETECTED"
    MALICIOUS_PAYLOAD_DETECTED = "MALICIOUS_PAYLOAD_DETECTED"
    BULK_VALIDATION_FAILURE = "BULK_VALIDATION_FAILURE"
    ORDER_LIMIT_EXCEEDED = "ORDER_LIMIT_EXCEEDED"
    INVALID_SKU_PATTERN = "INVALID_SKU_PATTERN"
    BULK_UPLOAD_START = "BULK_UPLOAD_START"
    BULK_UPLOAD_SUCCESS = "BULK_UPLOAD_SUCCESS"
    BULK_UPLOAD_FAILURE = "BULK_UPLOAD_FAILURE"
    BULK_OPERATION_ROLLBACK = "BULK_OPERATION_ROLLBACK"
    SECURITY_ALERT = "SECURITY_ALERT"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_DEFAULT_SEVERITY = {
    AuditEventType.AUTH_FAILURE: AuditSeverity.WARNING,
    AuditEventType.AUTH_B2B_REQUIRED: AuditSeverity.WARNING,
    AuditEventType.RATE_LIMIT_EXCEEDED: AuditSeverity.WARNING,
    AuditEventType.UNAUTHORIZED_ACCESS: AuditSeverity.ERROR,
    AuditEventType.FILE_SCAN_REJECTED: AuditSeverity.WARNING,
    AuditEventType.MALWARE_DETECTED: AuditSeverity.CRITICAL,
    AuditEventType.MALICIOUS_PAYLOAD_DETECTED: AuditSeverity.ERROR,
    AuditEventType.BULK_VALIDATION_FAILURE: AuditSeverity.INFO,
    AuditEventType.ORDER_LIMIT_EXCEEDED: AuditSeverity.WARNING,
    AuditEventType.INVALID_SKU_PATTERN: AuditSeverity.WARNING,
    AuditEventType.BULK_UPLOAD_FAILURE: AuditSeverity.ERROR,
}

_SEVERITY_TO_LEVEL = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    severity: AuditSeverity
    action: str
    outcome: str
    timestamp: datetime
    id: str = field(default_factory=lambda: f"aud_{uuid.uuid4().hex}")
    user_id: Optional[str] = None
    account_id: Optional[str] = None
    resource: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def canonical(self) -> str:
        """Stable serialization covered by the checksum."""
        return json.dumps(
            {
                "id": self.id,
                "ts": self.timestamp.isoformat(),
                "type": self.event_type.value,
                "severity": self.severity.value,
                "user": self.user_id,
                "account": self.account_id,
                "ip": self.ip_address,
                "ua": self.user_agent,
                "action": self.action,
                "resource": self.resource,
                "outcome": self.outcome,
                "details": self.details,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )


def _cap_details(details: Dict[str, Any]) -> Dict[str, Any]:
    serialized = json.dumps(details, default=str)
    if len(serialized.encode("utf-8")) <= MAX_DETAILS_BYTES:
        return json.loads(serialized)
    return {"_truncated": True, "keys": sorted(details.keys())}


class AuditLogger:
    """Structured + persisted audit trail with an HMAC checksum chain."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        secret: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._clock = clock
        self._chain_lock = threading.Lock()
        if secret is None:
            secret = settings.audit_hmac_secret
        if not secret:
            secret = secrets.token_hex(32)
            logger.warning(
                "BULKORDER_AUDIT_HMAC_SECRET not set, using an ephemeral key. "
                "The audit chain cannot be verified after a restart."
            )
        self._secret = secret.encode()

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    async def log_event(
        self,
        event_type: AuditEventType,
        *,
        action: str,
        outcome: str = "success",
        severity: Optional[AuditSeverity] = None,
        user_id: Optional[str] = None,
        account_id: Optional[str] = None,
        resource: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type,
            severity=severity or _DEFAULT_SEVERITY.get(event_type, AuditSeverity.INFO),
            action=action,
            outcome=outcome,
            timestamp=self._clock(),
            user_id=user_id,
            account_id=account_id,
            resource=resource,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            details=_cap_details(details or {}),
        )

        logger.log(
            _SEVERITY_TO_LEVEL[event.severity],
            "audit_event",
            extra={
                "audit.id": event.id,
                "audit.type": event.event_type.value,
                "audit.severity": event.severity.value,
                "audit.action": event.action,
                "audit.outcome": event.outcome,
                "audit.user_id": event.user_id,
                "audit.account_id": event.account_id,
                "audit.resource": event.resource,
                "audit.ip": event.ip_address,
                "audit.details": event.details,
            },
        )

        try:
            await run_sync(sqlite_retry, lambda: self._persist(event))
        except Exception:
            # The structured log line above is the fallback record
            logger.exception("Audit persistence failed for %s", event.id)
        return event

    # ------------------------------------------------------------------
    # Chain
    # ------------------------------------------------------------------

    def _checksum(self, previous: Optional[str], canonical: str) -> str:
        message = f"{previous or ''}|{canonical}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _persist(self, event: AuditEvent) -> None:
        with self._chain_lock, Session(self.engine) as session:
            last = session.exec(
                select(AuditEventRecord).order_by(col(AuditEventRecord.sequence).desc()).limit(1)
            ).first()
            previous = last.checksum if last else None
            session.add(
                AuditEventRecord(
                    id=event.id,
                    sequence=(last.sequence + 1) if last else 1,
                    timestamp=event.timestamp,
                    event_type=event.event_type.value,
                    severity=event.severity.value,
                    user_id=event.user_id,
                    account_id=event.account_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    action=event.action,
                    resource=event.resource,
                    outcome=event.outcome,
                    details_json=json.dumps(event.details, sort_keys=True, default=str),
                    previous_checksum=previous,
                    checksum=self._checksum(previous, event.canonical()),
                )
            )
            session.commit()

    def verify_chain(self) -> Tuple[bool, Optional[str]]:
        """Recompute the chain. Returns (ok, id of first bad entry)."""
        previous: Optional[str] = None
        with Session(self.engine) as session:
            rows = session.exec(select(AuditEventRecord).order_by(col(AuditEventRecord.sequence))).all()
        for row in rows:
            event = AuditEvent(
                id=row.id,
                event_type=AuditEventType(row.event_type),
                severity=AuditSeverity(row.severity),
                action=row.action,
                outcome=row.outcome,
                timestamp=row.timestamp,
                user_id=row.user_id,
                account_id=row.account_id,
                resource=row.resource,
                ip_address=row.ip_address,
                user_agent=row.user_agent,
                details=json.loads(row.details_json),
            )
            if row.previous_checksum != previous:
                return False, row.id
            if not hmac.compare_digest(row.checksum, self._checksum(previous, event.canonical())):
                return False, row.id
            previous = row.checksum
        return True, None

    async def query(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEventRecord]:
        def _query() -> List[AuditEventRecord]:
            stmt = select(AuditEventRecord)
            if user_id:
                stmt = stmt.where(AuditEventRecord.user_id == user_id)
            if event_type:
                stmt = stmt.where(AuditEventRecord.event_type == event_type.value)
            if since:
                stmt = stmt.where(AuditEventRecord.timestamp >= since)
            stmt = stmt.order_by(col(AuditEventRecord.sequence).desc()).limit(limit)
            with Session(self.engine) as session:
                return list(session.exec(stmt).all())

        return await run_sync(_query)

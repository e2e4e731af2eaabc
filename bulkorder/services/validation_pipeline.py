"""
Validation Pipeline
===================

Ordered, fail-closed validation for an admitted upload. Each stage returns
``Pass`` or ``Reject(error)``; the pipeline runs them left to right and stops
at the first rejection. Nothing is written to the operation ledger unless
every stage passed.

    file_scan → malware_scan → parse → authorize (precise) → sku_patterns

Rejecting stages emit their audit event (and alert, where one applies)
before returning, so the caller only has to render the error.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from bulkorder.core.errors import (
    AuthorizationError,
    BulkOrderError,
    SecurityError,
    ValidationError,
)
from bulkorder.schemas.bulk import CENTS, ParsedRow
from bulkorder.schemas.security import Severity, highest_severity
from bulkorder.schemas.upload import BulkOrderRequest
from bulkorder.services.alert_service import AlertCategory, SecurityAlertService
from bulkorder.services.audit_logger import AuditEventType, AuditLogger
from bulkorder.services.b2b_authorization import (
    B2BAuthorizationService,
    BulkOperationRequest,
    OperationType,
)
from bulkorder.services.content_scanner import ContentSecurityScanner, ScanReport
from bulkorder.services.secure_parser import ParseResult, SecureCSVParser

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 50


@dataclass(frozen=True)
class Pass:
    pass


@dataclass(frozen=True)
class Reject:
    error: BulkOrderError


StageResult = Union[Pass, Reject]


@dataclass
class UploadContext:
    """Mutable scratch state threaded through the stages of one upload."""

    upload: BulkOrderRequest
    structural: Optional[ScanReport] = None
    malware: Optional[ScanReport] = None
    parsed: Optional[ParseResult] = None
    rows: List[ParsedRow] = field(default_factory=list)

    @property
    def order_value(self) -> Decimal:
        return sum((row.line_value for row in self.rows), Decimal("0")).quantize(CENTS)

    @property
    def identity(self):
        return self.upload.identity

    @property
    def ip_address(self) -> str:
        return self.upload.client.ip_address

    def audit_fields(self) -> Dict[str, Any]:
        return {
            "user_id": self.identity.user_id,
            "account_id": self.identity.account_id,
            "ip_address": self.ip_address,
            "user_agent": self.upload.client.user_agent,
            "resource": self.upload.client.filename,
        }


class ValidationStage(Protocol):
    name: str

    async def run(self, ctx: UploadContext) -> StageResult: ...


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

class FileScanStage:
    name = "file_scan"

    def __init__(self, scanner: ContentSecurityScanner, audit: AuditLogger, alerts: SecurityAlertService):
        self.scanner = scanner
        self.audit = audit
        self.alerts = alerts

    async def run(self, ctx: UploadContext) -> StageResult:
        report = self.scanner.structural_scan(ctx.upload)
        ctx.structural = report
        if report.safe:
            return Pass()

        await self.audit.log_event(
            AuditEventType.FILE_SCAN_REJECTED,
            action="file_scan",
            outcome="blocked",
            details={"threats": [t.to_dict() for t in report.threats], "sha256": report.metadata.get("sha256")},
            **ctx.audit_fields(),
        )
        await self.alerts.raise_alert(
            AlertCategory.SUSPICIOUS_FILE,
            Severity.MEDIUM,
            source=self.name,
            description=f"Upload {ctx.upload.client.filename!r} failed the structural file scan",
            evidence={
                "user_id": ctx.identity.user_id,
                "ip_address": ctx.ip_address,
                "threat_count": len(report.threats),
            },
        )
        return Reject(SecurityError("BLK-SEC-001", detail="file scan rejected upload", findings=report.threats))


class MalwareScanStage:
    name = "malware_scan"

    def __init__(self, scanner: ContentSecurityScanner, audit: AuditLogger, alerts: SecurityAlertService):
        self.scanner = scanner
        self.audit = audit
        self.alerts = alerts

    async def run(self, ctx: UploadContext) -> StageResult:
        try:
            report = await self.scanner.malware_scan(ctx.upload)
        except SecurityError as exc:
            await self.audit.log_event(
                AuditEventType.FILE_SCAN_REJECTED,
                action="malware_scan",
                outcome="error",
                details={"code": exc.code, "reason": exc.detail},
                **ctx.audit_fields(),
            )
            await self.alerts.raise_alert(
                AlertCategory.SCANNER_UNAVAILABLE,
                Severity.MEDIUM,
                source=self.name,
                description=f"Malware scan unavailable, upload {ctx.upload.client.filename!r} rejected",
                evidence={"user_id": ctx.identity.user_id, "ip_address": ctx.ip_address, "reason": exc.detail},
            )
            return Reject(exc)

        ctx.malware = report
        if report.safe:
            return Pass()

        if not report.metadata.get("infected"):
            # Skipped by the scanner (size limit): nothing was detected
            await self.audit.log_event(
                AuditEventType.FILE_SCAN_REJECTED,
                action="malware_scan",
                outcome="unverified",
                details={"threats": [t.to_dict() for t in report.threats], **report.metadata},
                **ctx.audit_fields(),
            )
            await self.alerts.raise_alert(
                AlertCategory.UNSCANNED_FILE,
                Severity.LOW,
                source=self.name,
                description=f"Upload {ctx.upload.client.filename!r} could not be scanned for malware",
                evidence={
                    "user_id": ctx.identity.user_id,
                    "ip_address": ctx.ip_address,
                    "size": ctx.upload.size,
                    "provider": report.metadata.get("provider"),
                },
            )
            return Reject(SecurityError("BLK-SEC-002", detail="file could not be verified as clean",
                                        findings=report.threats))

        await self.audit.log_event(
            AuditEventType.MALWARE_DETECTED,
            action="malware_scan",
            outcome="blocked",
            details={"threats": [t.to_dict() for t in report.threats], **report.metadata},
            **ctx.audit_fields(),
        )
        await self.alerts.raise_alert(
            AlertCategory.MALWARE_DETECTED,
            Severity.HIGH,
            source=self.name,
            description=f"Malware scan flagged upload {ctx.upload.client.filename!r}",
            evidence={
                "user_id": ctx.identity.user_id,
                "ip_address": ctx.ip_address,
                "provider": report.metadata.get("provider"),
                "threats": [t.pattern or t.description for t in report.threats],
            },
        )
        return Reject(SecurityError("BLK-SEC-002", detail="malware detected", findings=report.threats))


class ParseStage:
    name = "parse"

    def __init__(self, parser: SecureCSVParser, audit: AuditLogger, alerts: SecurityAlertService):
        self.parser = parser
        self.audit = audit
        self.alerts = alerts

    async def run(self, ctx: UploadContext) -> StageResult:
        result = self.parser.parse(
            ctx.upload.content,
            user_id=ctx.identity.user_id,
            account_id=ctx.identity.account_id,
        )
        ctx.parsed = result

        if result.security_threats:
            severity = highest_severity(result.security_threats) or Severity.HIGH
            await self.audit.log_event(
                AuditEventType.MALICIOUS_PAYLOAD_DETECTED,
                action="parse",
                outcome="blocked",
                details={
                    "threats": [t.to_dict() for t in result.security_threats],
                    "summary": result.summary,
                },
                **ctx.audit_fields(),
            )
            await self.alerts.raise_alert(
                AlertCategory.MALICIOUS_PAYLOAD_DETECTED,
                Severity.HIGH,
                source=self.name,
                description=f"{len(result.security_threats)} malicious cell(s) in {ctx.upload.client.filename!r}",
                evidence={
                    "user_id": ctx.identity.user_id,
                    "ip_address": ctx.ip_address,
                    "highest_severity": severity.value,
                    "patterns": sorted({t.pattern for t in result.security_threats if t.pattern}),
                },
            )
            await self.alerts.monitor_event(
                "MALICIOUS_PAYLOAD_DETECTED",
                ctx.identity.user_id,
                details={"ip_address": ctx.ip_address},
            )
            return Reject(
                SecurityError(
                    "BLK-SEC-003",
                    detail="malicious payload in CSV",
                    findings=result.security_threats,
                )
            )

        if not result.success:
            errors = [e.to_dict() for e in result.errors[:MAX_REPORTED_ERRORS]]
            await self.audit.log_event(
                AuditEventType.BULK_VALIDATION_FAILURE,
                action="parse",
                outcome="failure",
                details={"errors": errors, "summary": result.summary},
                **ctx.audit_fields(),
            )
            return Reject(
                ValidationError(
                    "BLK-VAL-002",
                    detail=f"{len(result.errors)} validation error(s)",
                    details={"errors": errors, "error_count": len(result.errors)},
                )
            )

        ctx.rows = list(result.rows)
        return Pass()


class AuthorizeStage:
    """Precise re-authorization against the real order value and item count."""

    name = "authorize"

    def __init__(self, authorizer: B2BAuthorizationService):
        self.authorizer = authorizer

    async def run(self, ctx: UploadContext) -> StageResult:
        decision = await self.authorizer.authorize(
            ctx.identity,
            BulkOperationRequest(
                type=OperationType.CREATE,
                order_value=ctx.order_value,
                item_count=len(ctx.rows),
            ),
            ip_address=ctx.ip_address,
        )
        if decision.allowed:
            return Pass()
        return Reject(decision.to_error())


class SkuPatternStage:
    name = "sku_patterns"

    def __init__(self, authorizer: B2BAuthorizationService, alerts: SecurityAlertService):
        self.authorizer = authorizer
        self.alerts = alerts

    async def run(self, ctx: UploadContext) -> StageResult:
        result = await self.authorizer.validate_sku_patterns(
            ctx.identity,
            [row.sku for row in ctx.rows],
            ip_address=ctx.ip_address,
        )
        if result.valid:
            return Pass()

        await self.alerts.raise_alert(
            AlertCategory.SKU_POLICY_VIOLATION,
            Severity.HIGH,
            source=self.name,
            description=result.reason or "SKU policy violation",
            evidence={
                "user_id": ctx.identity.user_id,
                "account_id": ctx.identity.account_id,
                "invalid_skus": result.invalid_skus[:20],
            },
        )
        return Reject(
            AuthorizationError(
                "BLK-AUTH-008",
                detail=result.reason,
                details={"invalid_skus": result.invalid_skus[:MAX_REPORTED_ERRORS], "reason": result.reason},
            )
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ValidationPipeline:
    def __init__(self, stages: Sequence[ValidationStage]):
        self.stages = list(stages)

    async def run(self, ctx: UploadContext) -> StageResult:
        for stage in self.stages:
            result = await stage.run(ctx)
            if isinstance(result, Reject):
                logger.warning(
                    "SECURITY_AUDIT: upload rejected at %s",
                    stage.name,
                    extra={
                        "stage": stage.name,
                        "code": result.error.code,
                        "user_id": ctx.identity.user_id,
                        "account_id": ctx.identity.account_id,
                        "filename": ctx.upload.client.filename,
                    },
                )
                return result
            logger.debug("validation stage %s passed", stage.name)
        return Pass()


def build_validation_pipeline(
    scanner: ContentSecurityScanner,
    parser: SecureCSVParser,
    authorizer: B2BAuthorizationService,
    audit: AuditLogger,
    alerts: SecurityAlertService,
) -> ValidationPipeline:
    return ValidationPipeline(
        [
            FileScanStage(scanner, audit, alerts),
            MalwareScanStage(scanner, audit, alerts),
            ParseStage(parser, audit, alerts),
            AuthorizeStage(authorizer),
            SkuPatternStage(authorizer, alerts),
        ]
    )

"""
Service container.

Every service is built once per process and shared through app.state.
Routers depend on get_services(); tests either pass their own container to
create_app() or override get_services via app.dependency_overrides.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.engine import Engine

from bulkorder.config import settings
from bulkorder.core.database import get_engine
from bulkorder.services.alert_service import SecurityAlertService, build_alert_service
from bulkorder.services.audit_logger import AuditLogger
from bulkorder.services.b2b_authorization import B2BAuthorizationService, build_policy_store
from bulkorder.services.bulk_processor import BulkProcessor, build_processor
from bulkorder.services.bulk_upload_service import BulkUploadService
from bulkorder.services.commerce import CommerceCapabilities, build_commerce_client
from bulkorder.services.content_scanner import ContentSecurityScanner, build_content_scanner
from bulkorder.services.ingress_guard import IngressGuard
from bulkorder.services.operation_ledger import OperationLedger
from bulkorder.services.rate_limiter import UploadRateLimiter
from bulkorder.services.secure_parser import SecureCSVParser
from bulkorder.services.validation_pipeline import build_validation_pipeline

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    audit: AuditLogger
    alerts: SecurityAlertService
    limiter: UploadRateLimiter
    authorizer: B2BAuthorizationService
    scanner: ContentSecurityScanner
    parser: SecureCSVParser
    ledger: OperationLedger
    processor: BulkProcessor
    commerce: CommerceCapabilities
    uploads: BulkUploadService

    async def aclose(self) -> None:
        await self.uploads.drain()
        await self.alerts.aclose()
        for closable in (self.commerce, self.scanner.malware_scanner.provider):
            close = getattr(closable, "aclose", None)
            if close is not None:
                await close()


def build_services(
    engine: Optional[Engine] = None,
    commerce: Optional[CommerceCapabilities] = None,
    scanner: Optional[ContentSecurityScanner] = None,
    alerts: Optional[SecurityAlertService] = None,
    limiter: Optional[UploadRateLimiter] = None,
    processor: Optional[BulkProcessor] = None,
) -> ServiceContainer:
    engine = engine or get_engine()
    audit = AuditLogger(engine)
    alerts = alerts or build_alert_service()
    limiter = limiter or UploadRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_s)
    authorizer = B2BAuthorizationService(audit, build_policy_store())
    scanner = scanner or build_content_scanner()
    parser = SecureCSVParser(max_bytes=settings.max_upload_bytes, max_rows=settings.max_rows,
                             max_quantity=settings.max_quantity)
    ledger = OperationLedger(
        engine,
        audit,
        window_hours=settings.rollback_window_hours,
        reverse_timeout_s=settings.capability_timeout_s,
    )
    processor = processor or build_processor()
    commerce = commerce or build_commerce_client()

    uploads = BulkUploadService(
        guard=IngressGuard(limiter, authorizer, audit, alerts),
        pipeline=build_validation_pipeline(scanner, parser, authorizer, audit, alerts),
        ledger=ledger,
        processor=processor,
        authorizer=authorizer,
        commerce=commerce,
    )
    logger.info("Service container built")
    return ServiceContainer(
        audit=audit,
        alerts=alerts,
        limiter=limiter,
        authorizer=authorizer,
        scanner=scanner,
        parser=parser,
        ledger=ledger,
        processor=processor,
        commerce=commerce,
        uploads=uploads,
    )


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services

"""
Bulk Upload Service
===================

End-to-end orchestration of one bulk upload and of rollback.

Upload:
    admit (ingress guard) → validation pipeline → ledger.create_operation
    → detached processing task → (processor → ledger.update_progress +
    channel.emit per row) → ledger.finalize → order stats → channel.complete

The processing task is owned by this service, not by the HTTP response:
a client disconnect closes the channel and the task runs to completion.

Rollback:
    ownership + permission check → ledger.rollback_operation (atomic claim,
    reversals, audit)
"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional, Set

from bulkorder.auth.b2b_auth import B2BIdentity, Permission
from bulkorder.core.errors import (
    AuthenticationError,
    AuthorizationError,
    BulkOrderError,
    OperationNotFoundError,
)
from bulkorder.core.structured_logging import operation_id_var
from bulkorder.models.operation import OperationRecord
from bulkorder.schemas.bulk import BulkResult, ParsedRow, ProgressUpdate
from bulkorder.schemas.upload import BulkOrderRequest
from bulkorder.services.b2b_authorization import (
    B2BAuthorizationService,
    BulkOperationRequest,
    OperationType,
)
from bulkorder.services.bulk_processor import BulkProcessor
from bulkorder.services.commerce import CommerceCapabilities
from bulkorder.services.ingress_guard import Deny, IngressGuard
from bulkorder.services.operation_ledger import OperationLedger
from bulkorder.services.progress_stream import ProgressChannel
from bulkorder.services.validation_pipeline import Reject, UploadContext, ValidationPipeline

logger = logging.getLogger(__name__)


class BulkUploadService:
    def __init__(
        self,
        guard: IngressGuard,
        pipeline: ValidationPipeline,
        ledger: OperationLedger,
        processor: BulkProcessor,
        authorizer: B2BAuthorizationService,
        commerce: CommerceCapabilities,
    ):
        self.guard = guard
        self.pipeline = pipeline
        self.ledger = ledger
        self.processor = processor
        self.authorizer = authorizer
        self.commerce = commerce
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def admit(
        self,
        client_key: str,
        identity: Optional[B2BIdentity],
        credential_error: Optional[AuthenticationError] = None,
        user_agent: Optional[str] = None,
    ) -> B2BIdentity:
        """Run the ingress guard. Raises the denial's error."""
        decision = await self.guard.admit(client_key, identity, credential_error, user_agent)
        if isinstance(decision, Deny):
            raise decision.error
        return decision.identity

    async def start_upload(self, upload: BulkOrderRequest) -> ProgressChannel:
        """Validate, record and start processing. Raises on any rejection."""
        ctx = UploadContext(upload=upload)
        outcome = await self.pipeline.run(ctx)
        if isinstance(outcome, Reject):
            raise outcome.error

        identity = upload.identity
        operation_id = await self.ledger.create_operation(
            identity.user_id,
            identity.account_id,
            ctx.rows,
            metadata=upload.ledger_metadata(),
        )
        channel = ProgressChannel(operation_id, total=len(ctx.rows))
        task = asyncio.create_task(self._run(operation_id, identity, ctx.rows, channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return channel

    async def _run(
        self,
        operation_id: str,
        identity: B2BIdentity,
        rows: List[ParsedRow],
        channel: ProgressChannel,
    ) -> None:
        operation_id_var.set(operation_id)

        async def on_progress(update: ProgressUpdate) -> None:
            await self.ledger.update_progress(operation_id, update)
            await channel.emit(update)

        try:
            result = await self.processor.process(rows, self.commerce, on_progress)
            status = await self.ledger.finalize(operation_id)
        except asyncio.CancelledError:
            logger.warning("Bulk operation cancelled", extra={"operation_id": operation_id})
            await channel.error("Bulk order processing was cancelled", code="BLK-SYS-001")
            await asyncio.shield(self._fail(operation_id, "processing cancelled"))
            raise
        except Exception as exc:
            logger.exception("Bulk operation pipeline fault", extra={"operation_id": operation_id})
            code = exc.code if isinstance(exc, BulkOrderError) else "BLK-SYS-001"
            await self._fail(operation_id, f"{type(exc).__name__}: {exc}")
            await channel.error("Bulk order processing failed", code=code)
            return

        if result.total_value > Decimal("0"):
            self.authorizer.record_order(identity.account_id, result.total_value)
        await channel.complete(result.model_copy(update={"operation_id": operation_id}), status=status.value)
        logger.info(
            "Bulk operation finished",
            extra={
                "operation_id": operation_id,
                "status": status.value,
                "added": result.added,
                "failed": result.failed,
                "duration_ms": result.duration_ms,
            },
        )

    async def _fail(self, operation_id: str, reason: str) -> None:
        try:
            await self.ledger.finalize(operation_id, fault=reason)
        except Exception:
            logger.exception("Could not mark operation failed", extra={"operation_id": operation_id})

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for in-flight processing tasks, then cancel the stragglers (shutdown, tests)."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            logger.warning("Cancelling processing task still running at drain timeout: %s", task.get_name())
            task.cancel()
        if pending:
            # Cancelled tasks mark their operations failed before finishing
            await asyncio.wait(pending)

    # ------------------------------------------------------------------
    # Rollback + reads
    # ------------------------------------------------------------------

    async def owned_operation(self, identity: B2BIdentity, operation_id: str) -> OperationRecord:
        """Load an operation the caller may act on. Foreign operations look missing."""
        record = await self.ledger.get_operation(operation_id)
        if record is None or not self._may_access(identity, record):
            raise OperationNotFoundError(detail=f"operation {operation_id} not found")
        return record

    def _may_access(self, identity: B2BIdentity, record: OperationRecord) -> bool:
        if record.user_id == identity.user_id:
            return True
        return (
            record.account_id == identity.account_id
            and Permission.ACCOUNT_MANAGE.value in self.authorizer.permissions_for(identity)
        )

    async def rollback(
        self,
        identity: B2BIdentity,
        operation_id: str,
        reason: str,
        ip_address: Optional[str] = None,
    ) -> BulkResult:
        if not identity.is_b2b:
            raise AuthorizationError("BLK-AUTH-002", detail=f"account type {identity.account_type!r}")
        decision = await self.authorizer.authorize(
            identity,
            BulkOperationRequest(type=OperationType.UPDATE),
            ip_address=ip_address,
        )
        if not decision.allowed:
            raise decision.to_error()

        await self.owned_operation(identity, operation_id)
        return await self.ledger.rollback_operation(operation_id, identity.user_id, reason, self.commerce)

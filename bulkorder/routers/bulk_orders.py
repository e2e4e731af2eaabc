"""
Bulk order API.

POST /api/bulk-orders/upload                             multipart CSV → NDJSON progress stream
POST /api/bulk-orders/{operation_id}/rollback            reverse a completed operation
GET  /api/bulk-orders/history                            caller's operations, newest first
GET  /api/bulk-orders/{operation_id}                     operation detail + progress log
GET  /api/bulk-orders/{operation_id}/rollback-eligibility

Errors are raised as BulkOrderError subclasses and rendered by
bulkorder_error_handler.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from bulkorder.auth.b2b_auth import B2BIdentity, get_current_identity, resolve_identity
from bulkorder.config import settings
from bulkorder.core.errors import ValidationError
from bulkorder.core.log_middleware import client_key_for
from bulkorder.dependencies import ServiceContainer, get_services
from bulkorder.models.operation import OperationRecord, OperationStatus
from bulkorder.schemas.bulk import (
    OperationDetail,
    OperationHistory,
    OperationSummary,
    ProgressEntryOut,
    RollbackEligibility,
    RollbackRequest,
    RollbackResponse,
)
from bulkorder.schemas.upload import BulkOrderRequest, ClientMetadata
from bulkorder.services.progress_stream import NDJSON_MEDIA_TYPE

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_NOTES_LENGTH = 1000


def _summary(record: OperationRecord) -> OperationSummary:
    metadata = json.loads(record.metadata_json or "{}")
    return OperationSummary(
        operation_id=record.id,
        status=record.status,
        total_items=record.total_items,
        processed_items=record.processed_items,
        successful_items=record.successful_items,
        failed_items=record.failed_items,
        total_value=record.total_value,
        created_at=record.created_at,
        completed_at=record.completed_at,
        rollback_deadline=record.rollback_deadline,
        rolled_back_at=record.rolled_back_at,
        filename=metadata.get("filename"),
    )


# ── Upload ───────────────────────────────────────────────────────────
@router.post("/upload")
async def upload_bulk_order(
    request: Request,
    file: Optional[UploadFile] = File(None),
    notes: Optional[str] = Form(None),
    services: ServiceContainer = Depends(get_services),
):
    """Validate a CSV order file and stream per-row progress as NDJSON."""
    client_key = client_key_for(request)
    user_agent = request.headers.get("user-agent")
    identity, credential_error = await resolve_identity(request)
    identity = await services.uploads.admit(client_key, identity, credential_error, user_agent)

    if file is None:
        raise ValidationError("BLK-VAL-001", detail="multipart field 'file' missing")
    # One byte past the limit is enough for the scanner to reject oversize files
    content = await file.read(settings.max_upload_bytes + 1)
    if not content:
        raise ValidationError("BLK-VAL-001", detail="uploaded file is empty")

    upload = BulkOrderRequest(
        content=content,
        identity=identity,
        client=ClientMetadata(
            ip_address=client_key,
            user_agent=user_agent,
            filename=file.filename or "upload.csv",
            declared_mime=file.content_type,
        ),
        notes=(notes or "").strip()[:MAX_NOTES_LENGTH] or None,
    )
    channel = await services.uploads.start_upload(upload)
    logger.info(
        "bulk_upload_accepted",
        extra={"operation_id": channel.operation_id, "user_id": identity.user_id, "rows": channel.total},
    )
    return StreamingResponse(
        channel,
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Operation-Id": channel.operation_id, "Cache-Control": "no-store"},
    )


# ── Reads ────────────────────────────────────────────────────────────
@router.get("/history", response_model=OperationHistory)
async def operation_history(
    status: Optional[OperationStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    identity: B2BIdentity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
):
    records = await services.ledger.list_operations(
        identity.user_id,
        status=status.value if status else None,
        since=_as_utc(date_from),
        until=_as_utc(date_to),
        limit=limit,
    )
    operations = [_summary(r) for r in records]
    return OperationHistory(operations=operations, count=len(operations))


@router.get("/{operation_id}", response_model=OperationDetail)
async def operation_detail(
    operation_id: str,
    identity: B2BIdentity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
):
    record = await services.uploads.owned_operation(identity, operation_id)
    progress = await services.ledger.get_progress(operation_id)
    return OperationDetail(
        **_summary(record).model_dump(),
        user_id=record.user_id,
        account_id=record.account_id,
        items=json.loads(record.items_json or "[]"),
        metadata=json.loads(record.metadata_json or "{}"),
        progress=[
            ProgressEntryOut(
                row_index=p.row_index,
                sku=p.sku,
                quantity=p.quantity,
                outcome=p.outcome,
                order_ref=p.order_ref,
                error=p.error,
                reversed_at=p.reversed_at,
                reversal_error=p.reversal_error,
            )
            for p in progress
        ],
        rolled_back_by=record.rolled_back_by,
        rollback_reason=record.rollback_reason,
        reversed_items=record.reversed_items,
    )


@router.get("/{operation_id}/rollback-eligibility", response_model=RollbackEligibility)
async def rollback_eligibility(
    operation_id: str,
    identity: B2BIdentity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
):
    await services.uploads.owned_operation(identity, operation_id)
    return await services.ledger.check_rollback_eligibility(operation_id)


# ── Rollback ─────────────────────────────────────────────────────────
@router.post("/{operation_id}/rollback", response_model=RollbackResponse)
async def rollback_operation(
    operation_id: str,
    body: RollbackRequest,
    request: Request,
    identity: B2BIdentity = Depends(get_current_identity),
    services: ServiceContainer = Depends(get_services),
):
    reason = body.reason.strip()
    if not reason:
        raise ValidationError("BLK-VAL-003", detail="empty rollback reason")

    result = await services.uploads.rollback(
        identity,
        operation_id,
        reason[:MAX_NOTES_LENGTH],
        ip_address=client_key_for(request),
    )
    record = await services.ledger.get_operation(operation_id)
    status = record.status if record else OperationStatus.PARTIAL.value
    if result.success:
        message = f"Rolled back {result.reversed} item(s)"
    else:
        message = f"Rolled back {result.reversed} item(s); {result.failed} reversal(s) failed"
    return RollbackResponse(
        operation_id=operation_id,
        success=result.success,
        status=status,
        reversed_items=result.reversed,
        errors=result.errors,
        message=message,
    )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Query bounds without an offset are taken to be UTC."""
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

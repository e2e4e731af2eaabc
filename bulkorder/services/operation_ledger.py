"""
Operation History Ledger
========================

PURPOSE:
    Durable record of every accepted bulk operation, its per-row progress
    log, and the rollback window.

CONCURRENCY:
    - update_progress() is serialized per operation id by a keyed
      asyncio.Lock; the (operation_id, row_index) unique constraint is the
      backstop, so a second terminal outcome for a row is a ConcurrencyError.
    - rollback_operation() claims the operation with one conditional UPDATE
      (status, deadline and rollback_state checked in the same statement).
      Exactly one caller wins; the loser gets ConcurrencyError while the
      winner is still reversing, RollbackIneligibleError afterwards.
    - A rollback cut short after its claim (cancellation, storage error) is
      still closed: rows not confirmed reversed count as failed reversals.

State changes go through the reducers in operation_state; this module only
loads, persists and audits.
"""

import asyncio
import json
import logging
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from bulkorder.core.async_utils import call_with_timeout, run_sync
from bulkorder.core.database import get_engine, sqlite_retry
from bulkorder.core.errors import (
    BulkOrderError,
    ConcurrencyError,
    OperationNotFoundError,
    RollbackIneligibleError,
)
from bulkorder.models.operation import (
    ROLLBACK_ELIGIBLE_STATUSES,
    OperationRecord,
    OperationStatus,
    ProgressEntry,
    RollbackState,
    RowOutcome,
)
from bulkorder.models.types import utcnow
from bulkorder.schemas.bulk import (
    CENTS,
    BulkResult,
    ParsedRow,
    ProgressUpdate,
    RollbackEligibility,
    RowError,
)
from bulkorder.services.audit_logger import AuditEventType, AuditLogger
from bulkorder.services.commerce import CommerceCapabilities
from bulkorder.services.operation_state import (
    CompleteRollback,
    FailPipeline,
    Finalize,
    InvalidTransition,
    OperationState,
    RecordProgress,
    reduce_operation,
)

logger = logging.getLogger(__name__)


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex}"


INTERRUPTED_REVERSAL = "rollback interrupted before this row was confirmed reversed"


def _reversible_query(operation_id: str):
    """Successful rows of an operation that have not been reversed yet."""
    return (
        select(ProgressEntry)
        .where(
            ProgressEntry.operation_id == operation_id,
            ProgressEntry.outcome == RowOutcome.SUCCESS.value,
            col(ProgressEntry.reversed_at).is_(None),
        )
        .order_by(col(ProgressEntry.row_index))
    )


def _state_of(record: OperationRecord) -> OperationState:
    return OperationState(
        status=OperationStatus(record.status),
        total_items=record.total_items,
        processed_items=record.processed_items,
        successful_items=record.successful_items,
        failed_items=record.failed_items,
        completed_at=record.completed_at,
        rollback_state=RollbackState(record.rollback_state),
        rolled_back_at=record.rolled_back_at,
        rolled_back_by=record.rolled_back_by,
        rollback_reason=record.rollback_reason,
        reversed_items=record.reversed_items,
    )


def _apply_state(record: OperationRecord, state: OperationState, now: datetime) -> None:
    record.status = state.status.value
    record.processed_items = state.processed_items
    record.successful_items = state.successful_items
    record.failed_items = state.failed_items
    record.completed_at = state.completed_at
    record.rollback_state = state.rollback_state.value
    record.rolled_back_at = state.rolled_back_at
    record.rolled_back_by = state.rolled_back_by
    record.rollback_reason = state.rollback_reason
    record.reversed_items = state.reversed_items
    record.updated_at = now


def ineligibility_reason(record: OperationRecord, now: datetime) -> Optional[str]:
    """Why ``record`` cannot be rolled back right now, or None if it can."""
    if record.rollback_state == RollbackState.IN_PROGRESS.value:
        return "rollback already in progress"
    if record.status == OperationStatus.ROLLED_BACK.value:
        return "operation already rolled back"
    if record.rollback_state == RollbackState.DONE.value:
        return "rollback already attempted"
    if record.status == OperationStatus.PROCESSING.value:
        return "operation is still processing"
    if record.status not in ROLLBACK_ELIGIBLE_STATUSES:
        return f"operation {record.status}; nothing to roll back"
    if now >= record.rollback_deadline:
        return "rollback window has expired"
    return None


class OperationLedger:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        audit: Optional[AuditLogger] = None,
        window_hours: int = 24,
        reverse_timeout_s: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self.audit = audit or AuditLogger(engine)
        self.window = timedelta(hours=window_hours)
        self.reverse_timeout_s = reverse_timeout_s
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    # ------------------------------------------------------------------
    # Create / progress / finalize
    # ------------------------------------------------------------------

    async def create_operation(
        self,
        user_id: str,
        account_id: str,
        rows: Sequence[ParsedRow],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        operation_id = new_operation_id()
        now = self._clock()
        total_value = sum((row.line_value for row in rows), Decimal("0")).quantize(CENTS)
        record = OperationRecord(
            id=operation_id,
            user_id=user_id,
            account_id=account_id,
            status=OperationStatus.PROCESSING.value,
            total_items=len(rows),
            total_value=total_value,
            items_json=json.dumps([row.to_ledger_item() for row in rows]),
            metadata_json=json.dumps(metadata or {}, default=str),
            created_at=now,
            updated_at=now,
            rollback_deadline=now + self.window,
        )

        def _insert() -> None:
            with Session(self.engine) as session:
                session.add(record)
                session.commit()

        await run_sync(sqlite_retry, _insert)
        logger.info(
            "Bulk operation created",
            extra={"operation_id": operation_id, "user_id": user_id, "rows": len(rows)},
        )
        await self.audit.log_event(
            AuditEventType.BULK_UPLOAD_START,
            action="create_operation",
            user_id=user_id,
            account_id=account_id,
            resource=operation_id,
            ip_address=(metadata or {}).get("ip_address"),
            user_agent=(metadata or {}).get("user_agent"),
            details={"total_items": len(rows), "total_value": str(total_value)},
        )
        return operation_id

    async def update_progress(self, operation_id: str, progress: ProgressUpdate) -> OperationState:
        async with self._locks[operation_id]:
            return await run_sync(sqlite_retry, lambda: self._record_progress(operation_id, progress))

    def _record_progress(self, operation_id: str, progress: ProgressUpdate) -> OperationState:
        now = self._clock()
        with Session(self.engine) as session:
            record = session.get(OperationRecord, operation_id)
            if record is None:
                raise OperationNotFoundError(detail=f"operation {operation_id} not found")
            try:
                state = reduce_operation(_state_of(record), RecordProgress(success=progress.success))
            except InvalidTransition as exc:
                raise ConcurrencyError(
                    "BLK-CONC-002",
                    detail=str(exc),
                    context={"operation_id": operation_id, "row_index": progress.row_index},
                ) from exc

            session.add(
                ProgressEntry(
                    operation_id=operation_id,
                    row_index=progress.row_index,
                    sku=progress.sku,
                    quantity=progress.quantity,
                    outcome=progress.outcome.value,
                    order_ref=progress.order_ref,
                    error=progress.error,
                    recorded_at=now,
                )
            )
            _apply_state(record, state, now)
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConcurrencyError(
                    "BLK-CONC-002",
                    detail=f"row {progress.row_index} already has an outcome",
                    context={"operation_id": operation_id, "row_index": progress.row_index},
                ) from exc
            return state

    async def finalize(self, operation_id: str, fault: Optional[str] = None) -> OperationStatus:
        """Close an operation. ``fault`` marks it failed regardless of row outcomes."""

        def _finalize() -> OperationRecord:
            now = self._clock()
            with Session(self.engine) as session:
                record = session.get(OperationRecord, operation_id)
                if record is None:
                    raise OperationNotFoundError(detail=f"operation {operation_id} not found")
                command = FailPipeline(at=now, reason=fault) if fault else Finalize(at=now)
                _apply_state(record, reduce_operation(_state_of(record), command), now)
                session.add(record)
                session.commit()
                session.refresh(record)
                return record

        async with self._locks[operation_id]:
            record = await run_sync(sqlite_retry, _finalize)
        self._locks.pop(operation_id, None)

        status = OperationStatus(record.status)
        succeeded = status in (OperationStatus.COMPLETED, OperationStatus.PARTIAL)
        await self.audit.log_event(
            AuditEventType.BULK_UPLOAD_SUCCESS if succeeded else AuditEventType.BULK_UPLOAD_FAILURE,
            action="finalize_operation",
            outcome=status.value,
            user_id=record.user_id,
            account_id=record.account_id,
            resource=operation_id,
            details={
                "total_items": record.total_items,
                "successful_items": record.successful_items,
                "failed_items": record.failed_items,
                "fault": fault,
            },
        )
        logger.info("Bulk operation finalized", extra={"operation_id": operation_id, "status": status.value})
        return status

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def check_rollback_eligibility(self, operation_id: str) -> RollbackEligibility:
        record = await self.get_operation(operation_id)
        if record is None:
            raise OperationNotFoundError(detail=f"operation {operation_id} not found")
        now = self._clock()
        reason = ineligibility_reason(record, now)
        if reason is not None:
            return RollbackEligibility(
                operation_id=operation_id,
                eligible=False,
                reason=reason,
                deadline=record.rollback_deadline,
            )
        remaining = (record.rollback_deadline - now).total_seconds() / 3600
        return RollbackEligibility(
            operation_id=operation_id,
            eligible=True,
            deadline=record.rollback_deadline,
            hours_remaining=round(remaining, 2),
        )

    def _claim(self, operation_id: str, actor_id: str, reason: str) -> None:
        now = self._clock()
        stmt = (
            update(OperationRecord)
            .where(
                col(OperationRecord.id) == operation_id,
                col(OperationRecord.status).in_(ROLLBACK_ELIGIBLE_STATUSES),
                col(OperationRecord.rollback_state) == RollbackState.NONE.value,
                col(OperationRecord.rollback_deadline) > now,
            )
            .values(
                rollback_state=RollbackState.IN_PROGRESS.value,
                rolled_back_by=actor_id,
                rollback_reason=reason,
                updated_at=now,
            )
        )
        with self.engine.begin() as conn:
            claimed = conn.execute(stmt).rowcount

        if claimed == 1:
            return

        with Session(self.engine) as session:
            record = session.get(OperationRecord, operation_id)
        if record is None:
            raise OperationNotFoundError(detail=f"operation {operation_id} not found")
        if record.rollback_state == RollbackState.IN_PROGRESS.value:
            raise ConcurrencyError(
                "BLK-CONC-001",
                detail=f"rollback of {operation_id} already in progress",
                context={"operation_id": operation_id},
            )
        raise RollbackIneligibleError(
            ineligibility_reason(record, now) or "operation is not eligible for rollback",
            deadline=record.rollback_deadline,
            context={"operation_id": operation_id},
        )

    def _reversible_entries(self, operation_id: str) -> List[ProgressEntry]:
        with Session(self.engine) as session:
            return list(session.exec(_reversible_query(operation_id)).all())

    def _complete_rollback(
        self,
        operation_id: str,
        reversed_ids: List[int],
        failures: Dict[int, str],
        interrupted: bool = False,
    ) -> OperationRecord:
        """Persist reversal outcomes and close the rollback.

        With ``interrupted`` every reversible row not yet accounted for is
        recorded as a failed reversal, and an already closed rollback is
        left as it is.
        """
        now = self._clock()
        failures = dict(failures)
        with Session(self.engine) as session:
            record = session.get(OperationRecord, operation_id)
            if record is None:
                raise OperationNotFoundError(detail=f"operation {operation_id} not found")
            if interrupted:
                if record.rollback_state != RollbackState.IN_PROGRESS.value:
                    return record
                for entry in session.exec(_reversible_query(operation_id)).all():
                    if entry.id not in failures and entry.id not in reversed_ids:
                        failures[entry.id] = INTERRUPTED_REVERSAL
            for entry_id in reversed_ids:
                entry = session.get(ProgressEntry, entry_id)
                entry.reversed_at = now
                session.add(entry)
            for entry_id, message in failures.items():
                entry = session.get(ProgressEntry, entry_id)
                entry.reversal_error = message
                session.add(entry)
            state = reduce_operation(
                _state_of(record),
                CompleteRollback(
                    reversed_items=record.reversed_items + len(reversed_ids),
                    failed_reversals=len(failures),
                    at=now,
                ),
            )
            _apply_state(record, state, now)
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    async def rollback_operation(
        self,
        operation_id: str,
        actor_id: str,
        reason: str,
        commerce: CommerceCapabilities,
    ) -> BulkResult:
        start = time.perf_counter()
        await run_sync(sqlite_retry, lambda: self._claim(operation_id, actor_id, reason))
        logger.info("Rollback claimed", extra={"operation_id": operation_id, "actor_id": actor_id})

        entries: List[ProgressEntry] = []
        reversed_ids: List[int] = []
        failures: Dict[int, str] = {}
        errors: List[RowError] = []
        total_quantity = 0
        record: Optional[OperationRecord] = None

        try:
            entries = await run_sync(self._reversible_entries, operation_id)
            for entry in entries:
                if not entry.order_ref:
                    failures[entry.id] = "no order reference recorded"
                    errors.append(RowError(row_index=entry.row_index, sku=entry.sku, code="BLK-EXT-001",
                                           message="no order reference recorded"))
                    continue
                try:
                    await call_with_timeout(
                        "reverse",
                        lambda ref=entry.order_ref: commerce.reverse(ref),
                        self.reverse_timeout_s,
                    )
                except BulkOrderError as exc:
                    logger.warning(
                        "Reversal failed",
                        extra={"operation_id": operation_id, "row_index": entry.row_index, "code": exc.code},
                    )
                    failures[entry.id] = exc.detail or exc.code
                    errors.append(RowError(row_index=entry.row_index, sku=entry.sku, code=exc.code,
                                           message=exc.detail or exc.code))
                    continue
                reversed_ids.append(entry.id)
                total_quantity += entry.quantity

            record = await run_sync(
                sqlite_retry, lambda: self._complete_rollback(operation_id, reversed_ids, failures)
            )
        finally:
            if record is None:
                await self._settle_interrupted_rollback(operation_id, actor_id, reason, reversed_ids, failures)

        await self.audit.log_event(
            AuditEventType.BULK_OPERATION_ROLLBACK,
            action="rollback_operation",
            outcome=record.status,
            user_id=actor_id,
            account_id=record.account_id,
            resource=operation_id,
            details={
                "reason": reason,
                "reversed_items": len(reversed_ids),
                "failed_reversals": len(failures),
            },
        )
        return BulkResult(
            operation_id=operation_id,
            success=not failures,
            processed=len(entries),
            reversed=len(reversed_ids),
            failed=len(failures),
            total_quantity=total_quantity,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            errors=errors,
        )

    async def _settle_interrupted_rollback(
        self,
        operation_id: str,
        actor_id: str,
        reason: str,
        reversed_ids: List[int],
        failures: Dict[int, str],
    ) -> None:
        """Close a rollback that was cut short so it never stays in progress."""
        logger.error(
            "Rollback interrupted, settling as partial",
            extra={"operation_id": operation_id, "reversed_items": len(reversed_ids)},
        )
        try:
            record = await asyncio.shield(
                run_sync(
                    sqlite_retry,
                    lambda: self._complete_rollback(operation_id, reversed_ids, failures, interrupted=True),
                )
            )
            await self.audit.log_event(
                AuditEventType.BULK_OPERATION_ROLLBACK,
                action="rollback_operation",
                outcome="interrupted",
                user_id=actor_id,
                account_id=record.account_id,
                resource=operation_id,
                details={
                    "reason": reason,
                    "reversed_items": len(reversed_ids),
                    "status": record.status,
                },
            )
        except Exception:
            logger.exception("Could not settle interrupted rollback", extra={"operation_id": operation_id})

    # ------------------------------------------------------------------
    # Queries + retention
    # ------------------------------------------------------------------

    async def get_operation(self, operation_id: str) -> Optional[OperationRecord]:
        def _get() -> Optional[OperationRecord]:
            with Session(self.engine) as session:
                return session.get(OperationRecord, operation_id)

        return await run_sync(_get)

    async def get_progress(self, operation_id: str) -> List[ProgressEntry]:
        def _get() -> List[ProgressEntry]:
            with Session(self.engine) as session:
                stmt = (
                    select(ProgressEntry)
                    .where(ProgressEntry.operation_id == operation_id)
                    .order_by(col(ProgressEntry.row_index))
                )
                return list(session.exec(stmt).all())

        return await run_sync(_get)

    async def list_operations(
        self,
        user_id: str,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[OperationRecord]:
        def _list() -> List[OperationRecord]:
            stmt = select(OperationRecord).where(OperationRecord.user_id == user_id)
            if status:
                stmt = stmt.where(OperationRecord.status == status)
            if since:
                stmt = stmt.where(col(OperationRecord.created_at) >= since)
            if until:
                stmt = stmt.where(col(OperationRecord.created_at) <= until)
            stmt = stmt.order_by(col(OperationRecord.created_at).desc()).limit(limit)
            with Session(self.engine) as session:
                return list(session.exec(stmt).all())

        return await run_sync(_list)

    async def purge_expired(self, retention_days: int) -> int:
        """Delete closed operations older than ``retention_days``. Returns the count."""
        cutoff = self._clock() - timedelta(days=retention_days)

        def _purge() -> Tuple[int, int]:
            with Session(self.engine) as session:
                expired = select(OperationRecord.id).where(
                    col(OperationRecord.created_at) < cutoff,
                    OperationRecord.status != OperationStatus.PROCESSING.value,
                    OperationRecord.rollback_state != RollbackState.IN_PROGRESS.value,
                )
                ids = list(session.exec(expired).all())
                if not ids:
                    return 0, 0
                entries = session.exec(
                    delete(ProgressEntry).where(col(ProgressEntry.operation_id).in_(ids))
                ).rowcount
                session.exec(delete(OperationRecord).where(col(OperationRecord.id).in_(ids)))
                session.commit()
                return len(ids), entries

        operations, entries = await run_sync(sqlite_retry, _purge)
        if operations:
            logger.info(
                "Purged expired bulk operations",
                extra={"operations": operations, "progress_entries": entries, "retention_days": retention_days},
            )
        return operations

"""
Bulk Processor
==============

Executes validated rows against the injected commerce capabilities.

    rows ─► sort by priority (high, normal, low) ─► batches of batch_size
          ─► per batch: up to max_concurrent rows in flight (asyncio.Semaphore)

Per row:
    check_availability   own timeout, retried with jittered backoff,
                         guarded by the circuit breaker
    unavailable          find_alternatives best-effort → outcome "unavailable"
    available            add_to_cart(min(requested, available)), not retried
                         → outcome "success"
    any error            → outcome "failed" with the error code

Each row is reported through progress_callback exactly once. A row failure
or a callback failure never aborts the batch.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from bulkorder.config import settings
from bulkorder.core.async_utils import call_with_timeout
from bulkorder.core.errors import BulkOrderError
from bulkorder.models.operation import RowOutcome
from bulkorder.schemas.bulk import (
    CENTS,
    PRIORITY_ORDER,
    AlternativeProduct,
    BulkResult,
    CartItem,
    ParsedRow,
    ProductAvailability,
    ProgressUpdate,
    RowError,
)
from bulkorder.services.commerce import CommerceCapabilities
from bulkorder.services.retry import CircuitBreaker, RetryPolicy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]


def order_rows(rows: Sequence[ParsedRow]) -> List[ParsedRow]:
    return sorted(rows, key=lambda r: (PRIORITY_ORDER[r.priority], r.row_index))


def batched(rows: Sequence[ParsedRow], size: int) -> List[List[ParsedRow]]:
    size = max(1, size)
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


class BulkProcessor:
    def __init__(
        self,
        batch_size: int = 20,
        max_concurrent: int = 5,
        call_timeout_s: float = 10.0,
        retry: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        enable_alternatives: bool = True,
    ):
        self.batch_size = batch_size
        self.max_concurrent = max_concurrent
        self.call_timeout_s = call_timeout_s
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker("commerce")
        self.enable_alternatives = enable_alternatives

    async def process(
        self,
        rows: Sequence[ParsedRow],
        capabilities: CommerceCapabilities,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        start = time.perf_counter()
        semaphore = asyncio.Semaphore(max(1, self.max_concurrent))
        reported: Set[int] = set()
        outcomes: List[Tuple[ProgressUpdate, Decimal]] = []

        async def run_row(row: ParsedRow) -> None:
            async with semaphore:
                update, value = await self._process_row(row, capabilities)
            if row.row_index in reported:
                logger.warning("Row %d already reported, dropping second outcome", row.row_index)
                return
            reported.add(row.row_index)
            outcomes.append((update, value))
            if progress_callback is not None:
                try:
                    await progress_callback(update)
                except Exception:
                    logger.exception(
                        "Progress callback failed",
                        extra={"row_index": row.row_index, "sku": row.sku},
                    )

        for batch in batched(order_rows(rows), self.batch_size):
            await asyncio.gather(*(run_row(row) for row in batch))

        return self._summarize(outcomes, start)

    # ------------------------------------------------------------------
    # Per row
    # ------------------------------------------------------------------

    async def _process_row(
        self, row: ParsedRow, capabilities: CommerceCapabilities
    ) -> Tuple[ProgressUpdate, Decimal]:
        try:
            availability = await self._check_availability(row.sku, capabilities)
            if not availability.available or availability.quantity_available <= 0:
                alternatives = await self._alternatives(row, capabilities)
                return (
                    ProgressUpdate(
                        row_index=row.row_index,
                        sku=row.sku,
                        quantity=0,
                        outcome=RowOutcome.UNAVAILABLE,
                        error=f"{row.sku} is not available",
                        error_code="BLK-EXT-004",
                        alternatives=alternatives,
                    ),
                    Decimal("0"),
                )

            quantity = min(row.quantity, availability.quantity_available)
            unit_price = row.unit_price if row.unit_price is not None else availability.unit_price
            item = CartItem(
                sku=row.sku,
                quantity=quantity,
                unit_price=unit_price,
                reference=row.reference,
                notes=row.notes,
            )
            reference = await self.breaker.call(
                lambda: call_with_timeout(
                    "add_to_cart", lambda: capabilities.add_to_cart([item]), self.call_timeout_s
                )
            )
            note = None
            if quantity < row.quantity:
                note = f"partial fill: {quantity} of {row.quantity} available"
                logger.info("Partial fill", extra={"row_index": row.row_index, "sku": row.sku, "added": quantity})
            value = (Decimal(quantity) * (unit_price or Decimal("0"))).quantize(CENTS)
            return (
                ProgressUpdate(
                    row_index=row.row_index,
                    sku=row.sku,
                    quantity=quantity,
                    outcome=RowOutcome.SUCCESS,
                    order_ref=reference or f"cart-line:{row.sku}:{quantity}",
                    error=note,
                ),
                value,
            )
        except BulkOrderError as exc:
            logger.warning(
                "Row failed",
                extra={"row_index": row.row_index, "sku": row.sku, "code": exc.code, "detail": exc.detail},
            )
            return self._failed(row, exc.code, exc.detail or exc.code), Decimal("0")
        except Exception as exc:
            logger.exception("Unexpected row failure", extra={"row_index": row.row_index, "sku": row.sku})
            return self._failed(row, "BLK-EXT-001", f"{type(exc).__name__}: {exc}"), Decimal("0")

    async def _check_availability(self, sku: str, capabilities: CommerceCapabilities) -> ProductAvailability:
        return await self.retry.run(
            "check_availability",
            lambda: self.breaker.call(
                lambda: call_with_timeout(
                    "check_availability", lambda: capabilities.check_availability(sku), self.call_timeout_s
                )
            ),
        )

    async def _alternatives(self, row: ParsedRow, capabilities: CommerceCapabilities) -> List[AlternativeProduct]:
        if not self.enable_alternatives:
            return []
        try:
            return list(
                await call_with_timeout(
                    "find_alternatives",
                    lambda: capabilities.find_alternatives(row.sku, row.quantity),
                    self.call_timeout_s,
                )
            )
        except BulkOrderError as exc:
            logger.warning("Alternatives lookup failed for %s: %s", row.sku, exc.code)
            return []

    @staticmethod
    def _failed(row: ParsedRow, code: str, message: str) -> ProgressUpdate:
        return ProgressUpdate(
            row_index=row.row_index,
            sku=row.sku,
            quantity=0,
            outcome=RowOutcome.FAILED,
            error=message,
            error_code=code,
        )

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    @staticmethod
    def _summarize(outcomes: List[Tuple[ProgressUpdate, Decimal]], start: float) -> BulkResult:
        added = [u for u, _ in outcomes if u.success]
        errors = [
            RowError(row_index=u.row_index, sku=u.sku, code=u.error_code or "BLK-EXT-001", message=u.error or "")
            for u, _ in outcomes
            if not u.success
        ]
        alternatives: Dict[str, List[AlternativeProduct]] = {
            u.sku: u.alternatives for u, _ in outcomes if u.alternatives
        }
        return BulkResult(
            success=bool(outcomes) and not errors,
            processed=len(outcomes),
            added=len(added),
            failed=len(errors),
            total_quantity=sum(u.quantity for u in added),
            total_value=sum((v for _, v in outcomes), Decimal("0")).quantize(CENTS),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            errors=sorted(errors, key=lambda e: e.row_index or 0),
            alternatives=alternatives,
        )


def build_processor() -> BulkProcessor:
    return BulkProcessor(
        batch_size=settings.batch_size,
        max_concurrent=settings.max_concurrent,
        call_timeout_s=settings.capability_timeout_s,
        retry=RetryPolicy(
            attempts=settings.retry_attempts,
            initial_delay_s=settings.retry_initial_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        ),
        breaker=CircuitBreaker(
            "commerce",
            failure_threshold=settings.circuit_failure_threshold,
            reset_s=settings.circuit_reset_s,
        ),
        enable_alternatives=settings.enable_alternatives,
    )

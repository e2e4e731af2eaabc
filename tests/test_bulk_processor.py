"""
Tests for the bulk processor: priority order, concurrency, partial fills,
unavailable rows, timeouts, circuit breaking, progress reporting.
"""

import asyncio
from decimal import Decimal

import pytest

from bulkorder.models.operation import RowOutcome
from bulkorder.schemas.bulk import AlternativeProduct, Priority
from bulkorder.services.bulk_processor import BulkProcessor, batched, order_rows
from bulkorder.services.retry import CircuitBreaker, RetryPolicy

NO_WAIT = RetryPolicy(attempts=2, initial_delay_s=0, max_delay_s=0)


@pytest.fixture
def processor():
    return BulkProcessor(batch_size=10, max_concurrent=3, call_timeout_s=0.2, retry=NO_WAIT)


class Recorder:
    def __init__(self):
        self.updates = []

    async def __call__(self, update):
        self.updates.append(update)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

class TestOrdering:
    def test_order_rows_by_priority_then_position(self, make_row):
        rows = [
            make_row(1, "L1", 1, priority=Priority.LOW),
            make_row(2, "N1", 1),
            make_row(3, "H1", 1, priority=Priority.HIGH),
            make_row(4, "H2", 1, priority=Priority.HIGH),
        ]
        assert [r.sku for r in order_rows(rows)] == ["H1", "H2", "N1", "L1"]

    def test_batched(self, make_row):
        rows = [make_row(i, f"S{i}", 1) for i in range(1, 6)]
        assert [len(b) for b in batched(rows, 2)] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_high_priority_rows_execute_first(self, commerce, make_row):
        commerce.inventory.update({"L1": 5, "N1": 5, "H1": 5})
        rows = [
            make_row(1, "L1", 1, priority=Priority.LOW),
            make_row(2, "N1", 1),
            make_row(3, "H1", 1, priority=Priority.HIGH),
        ]
        processor = BulkProcessor(batch_size=1, max_concurrent=1, retry=NO_WAIT)
        await processor.process(rows, commerce)
        assert [c[1] for c in commerce.calls_to("add_to_cart")] == ["H1", "N1", "L1"]


# ---------------------------------------------------------------------------
# Row outcomes
# ---------------------------------------------------------------------------

class TestRowOutcomes:
    @pytest.mark.asyncio
    async def test_all_available(self, processor, commerce, make_row):
        rows = [make_row(1, "A1", 5, "10"), make_row(2, "C3", 2, "2.50")]
        result = await processor.process(rows, commerce)

        assert result.success
        assert result.processed == 2
        assert result.added == 2
        assert result.total_quantity == 7
        assert result.total_value == Decimal("55.00")
        assert [(i.sku, i.quantity) for i in sorted(commerce.cart, key=lambda i: i.sku)] == [("A1", 5), ("C3", 2)]

    @pytest.mark.asyncio
    async def test_unavailable_row_with_alternatives(self, processor, commerce, make_row):
        commerce.alternatives["B2"] = [AlternativeProduct(sku="B2-ALT", quantity_available=10)]
        recorder = Recorder()
        rows = [make_row(1, "A1", 5, "10"), make_row(2, "B2", 3, "20")]

        result = await processor.process(rows, commerce, recorder)

        assert not result.success
        assert result.added == 1
        assert result.failed == 1
        assert result.errors[0].code == "BLK-EXT-004"
        assert [a.sku for a in result.alternatives["B2"]] == ["B2-ALT"]
        assert [(i.sku, i.quantity) for i in commerce.cart] == [("A1", 5)]

        b2 = next(u for u in recorder.updates if u.sku == "B2")
        assert b2.outcome == RowOutcome.UNAVAILABLE
        assert b2.order_ref is None

    @pytest.mark.asyncio
    async def test_alternatives_lookup_is_best_effort(self, processor, commerce, make_row):
        commerce.alternatives_fail = True
        result = await processor.process([make_row(1, "B2", 3)], commerce)
        assert result.errors[0].code == "BLK-EXT-004"
        assert result.alternatives == {}
        assert commerce.calls_to("find_alternatives") == [("find_alternatives", "B2")]

    @pytest.mark.asyncio
    async def test_alternatives_disabled(self, commerce, make_row):
        processor = BulkProcessor(retry=NO_WAIT, enable_alternatives=False)
        await processor.process([make_row(1, "B2", 3)], commerce)
        assert commerce.calls_to("find_alternatives") == []

    @pytest.mark.asyncio
    async def test_partial_availability_adds_what_is_available(self, processor, commerce, make_row):
        commerce.inventory["A1"] = 3
        recorder = Recorder()
        result = await processor.process([make_row(1, "A1", 5, "10")], commerce, recorder)

        assert result.success
        assert result.total_quantity == 3
        assert result.total_value == Decimal("30.00")
        assert commerce.cart[0].quantity == 3
        assert recorder.updates[0].error == "partial fill: 3 of 5 available"

    @pytest.mark.asyncio
    async def test_backend_error_fails_only_that_row(self, processor, commerce, make_row):
        commerce.failing_skus.add("D4")
        result = await processor.process([make_row(1, "A1", 1), make_row(2, "D4", 1)], commerce)

        assert result.added == 1
        assert result.errors[0].row_index == 2
        assert result.errors[0].code == "BLK-EXT-001"
        assert len(commerce.calls_to("check_availability")) == 3

    @pytest.mark.asyncio
    async def test_timeout_fails_only_that_row(self, processor, commerce, make_row):
        commerce.slow_skus.add("D4")
        result = await processor.process([make_row(1, "A1", 1), make_row(2, "D4", 1)], commerce)

        assert result.added == 1
        assert result.errors[0].code == "BLK-EXT-002"

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, commerce, make_row):
        commerce.failing_skus.update({"A1", "C3"})
        processor = BulkProcessor(
            batch_size=1,
            max_concurrent=1,
            retry=NO_WAIT,
            breaker=CircuitBreaker("commerce", failure_threshold=2, reset_s=60),
        )
        result = await processor.process([make_row(1, "A1", 1), make_row(2, "C3", 1)], commerce)

        assert [e.code for e in result.errors] == ["BLK-EXT-001", "BLK-EXT-003"]
        assert len(commerce.calls_to("check_availability")) == 2

    @pytest.mark.asyncio
    async def test_empty_batch_is_not_success(self, processor, commerce):
        result = await processor.process([], commerce)
        assert not result.success
        assert result.processed == 0


# ---------------------------------------------------------------------------
# Progress reporting + concurrency
# ---------------------------------------------------------------------------

class TestProgress:
    @pytest.mark.asyncio
    async def test_every_row_reported_exactly_once(self, processor, commerce, make_row):
        commerce.inventory.update({f"S{i}": 1 for i in range(1, 26)})
        recorder = Recorder()
        rows = [make_row(i, f"S{i}", 1) for i in range(1, 26)]
        await processor.process(rows, commerce, recorder)
        assert sorted(u.row_index for u in recorder.updates) == list(range(1, 26))

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_abort(self, processor, commerce, make_row):
        async def broken(update):
            raise RuntimeError("ledger unavailable")

        result = await processor.process([make_row(1, "A1", 1), make_row(2, "C3", 1)], commerce, broken)
        assert result.added == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, commerce, make_row):
        in_flight = 0
        peak = 0
        check = commerce.check_availability

        async def tracking_check(sku):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            try:
                return await check(sku)
            finally:
                in_flight -= 1

        commerce.check_availability = tracking_check
        commerce.inventory.update({f"S{i}": 1 for i in range(1, 13)})
        processor = BulkProcessor(batch_size=12, max_concurrent=3, retry=NO_WAIT)
        await processor.process([make_row(i, f"S{i}", 1) for i in range(1, 13)], commerce)
        assert peak == 3

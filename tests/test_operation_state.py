"""
Tests for the operation lifecycle reducers (pure, no storage).
"""

from dataclasses import replace
from datetime import datetime

import pytest

from bulkorder.models.operation import OperationStatus, RollbackState
from bulkorder.services.operation_state import (
    CompleteRollback,
    FailPipeline,
    Finalize,
    InvalidTransition,
    OperationState,
    RecordProgress,
    reduce_operation,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _processing(total: int = 3) -> OperationState:
    return OperationState(status=OperationStatus.PROCESSING, total_items=total)


def _record(state: OperationState, *outcomes: bool) -> OperationState:
    for success in outcomes:
        state = reduce_operation(state, RecordProgress(success=success))
    return state


# ---------------------------------------------------------------------------
# Progress counters
# ---------------------------------------------------------------------------

class TestProgress:
    def test_counts_successes_and_failures(self):
        state = _record(_processing(), True, False, True)
        assert state.processed_items == 3
        assert state.successful_items == 2
        assert state.failed_items == 1

    def test_rejects_more_outcomes_than_rows(self):
        state = _record(_processing(total=1), True)
        with pytest.raises(InvalidTransition):
            reduce_operation(state, RecordProgress(success=True))

    def test_rejects_progress_after_finalize(self):
        state = reduce_operation(_record(_processing(total=1), True), Finalize(at=NOW))
        with pytest.raises(InvalidTransition):
            reduce_operation(state, RecordProgress(success=True))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestFinalize:
    def test_all_rows_succeeded_is_completed(self):
        state = reduce_operation(_record(_processing(2), True, True), Finalize(at=NOW))
        assert state.status == OperationStatus.COMPLETED
        assert state.completed_at == NOW

    def test_some_rows_succeeded_is_partial(self):
        state = reduce_operation(_record(_processing(2), True, False), Finalize(at=NOW))
        assert state.status == OperationStatus.PARTIAL

    def test_no_rows_succeeded_is_failed(self):
        state = reduce_operation(_record(_processing(2), False, False), Finalize(at=NOW))
        assert state.status == OperationStatus.FAILED

    def test_pipeline_fault_is_failed_even_with_successes(self):
        state = reduce_operation(_record(_processing(2), True, True), FailPipeline(at=NOW, reason="boom"))
        assert state.status == OperationStatus.FAILED

    def test_cannot_finalize_twice(self):
        state = reduce_operation(_record(_processing(1), True), Finalize(at=NOW))
        with pytest.raises(InvalidTransition):
            reduce_operation(state, Finalize(at=NOW))


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

class TestRollback:
    def _claimed(self) -> OperationState:
        completed = reduce_operation(_record(_processing(2), True, True), Finalize(at=NOW))
        return replace(completed, rollback_state=RollbackState.IN_PROGRESS, rolled_back_by="u1")

    def test_complete_without_failures_is_rolled_back(self):
        state = reduce_operation(self._claimed(), CompleteRollback(reversed_items=2, failed_reversals=0, at=NOW))
        assert state.status == OperationStatus.ROLLED_BACK
        assert state.rollback_state == RollbackState.DONE
        assert state.reversed_items == 2
        assert state.rolled_back_at == NOW
        assert state.rolled_back_by == "u1"

    def test_failed_reversal_leaves_partial(self):
        state = reduce_operation(self._claimed(), CompleteRollback(reversed_items=1, failed_reversals=1, at=NOW))
        assert state.status == OperationStatus.PARTIAL
        assert state.rollback_state == RollbackState.DONE

    def test_second_complete_rejected(self):
        state = reduce_operation(self._claimed(), CompleteRollback(reversed_items=2, failed_reversals=0, at=NOW))
        with pytest.raises(InvalidTransition):
            reduce_operation(state, CompleteRollback(reversed_items=0, failed_reversals=0, at=NOW))

    def test_complete_requires_claim(self):
        completed = reduce_operation(_record(_processing(2), True, True), Finalize(at=NOW))
        with pytest.raises(InvalidTransition):
            reduce_operation(completed, CompleteRollback(reversed_items=0, failed_reversals=0, at=NOW))

"""
Operation State Reducers
========================

Pure ``(state, command) -> state`` functions for the operation lifecycle.
The ledger loads an OperationState, applies a command, and persists the
result; nothing here touches storage.

STATE MACHINE:
    processing → completed | partial | failed          (Finalize / FailPipeline)
    completed | partial → rollback in_progress          (conditional UPDATE claim in the ledger)
    in_progress → rolled_back | partial, rollback done  (CompleteRollback)

Three independent sub-reducers (progress counters, lifecycle, rollback)
are composed by reduce_operation(); each ignores commands it does not own.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Tuple, Union

from bulkorder.models.operation import OperationStatus, RollbackState


class InvalidTransition(ValueError):
    """A command is not valid for the current state."""


@dataclass(frozen=True)
class OperationState:
    status: OperationStatus
    total_items: int
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    completed_at: Optional[datetime] = None
    rollback_state: RollbackState = RollbackState.NONE
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None
    rollback_reason: Optional[str] = None
    reversed_items: int = 0


# ── Commands ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RecordProgress:
    success: bool


@dataclass(frozen=True)
class Finalize:
    at: datetime


@dataclass(frozen=True)
class FailPipeline:
    at: datetime
    reason: str


@dataclass(frozen=True)
class CompleteRollback:
    reversed_items: int
    failed_reversals: int
    at: datetime


OperationCommand = Union[RecordProgress, Finalize, FailPipeline, CompleteRollback]


# ── Sub-reducers ──────────────────────────────────────────────────────

def reduce_progress(state: OperationState, command: OperationCommand) -> OperationState:
    if not isinstance(command, RecordProgress):
        return state
    if state.status != OperationStatus.PROCESSING:
        raise InvalidTransition(f"cannot record progress while {state.status.value}")
    if state.processed_items >= state.total_items:
        raise InvalidTransition("every row already has an outcome")
    return replace(
        state,
        processed_items=state.processed_items + 1,
        successful_items=state.successful_items + (1 if command.success else 0),
        failed_items=state.failed_items + (0 if command.success else 1),
    )


def _finalized_status(state: OperationState) -> OperationStatus:
    if state.total_items > 0 and state.successful_items == state.total_items:
        return OperationStatus.COMPLETED
    if state.successful_items > 0:
        return OperationStatus.PARTIAL
    return OperationStatus.FAILED


def reduce_lifecycle(state: OperationState, command: OperationCommand) -> OperationState:
    if isinstance(command, Finalize):
        if state.status != OperationStatus.PROCESSING:
            raise InvalidTransition(f"cannot finalize a {state.status.value} operation")
        return replace(state, status=_finalized_status(state), completed_at=command.at)
    if isinstance(command, FailPipeline):
        if state.status != OperationStatus.PROCESSING:
            raise InvalidTransition(f"cannot fail a {state.status.value} operation")
        return replace(state, status=OperationStatus.FAILED, completed_at=command.at)
    return state


def reduce_rollback(state: OperationState, command: OperationCommand) -> OperationState:
    if isinstance(command, CompleteRollback):
        if state.rollback_state != RollbackState.IN_PROGRESS:
            raise InvalidTransition("no rollback in progress")
        status = OperationStatus.ROLLED_BACK if command.failed_reversals == 0 else OperationStatus.PARTIAL
        return replace(
            state,
            status=status,
            rollback_state=RollbackState.DONE,
            rolled_back_at=command.at,
            reversed_items=command.reversed_items,
        )
    return state


_REDUCERS: Tuple[Callable[[OperationState, OperationCommand], OperationState], ...] = (
    reduce_progress,
    reduce_lifecycle,
    reduce_rollback,
)


def reduce_operation(state: OperationState, command: OperationCommand) -> OperationState:
    for reducer in _REDUCERS:
        state = reducer(state, command)
    return state

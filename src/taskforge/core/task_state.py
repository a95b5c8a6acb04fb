"""Task state machine for the kanban board.

A task lives in exactly one of four (status, column) pairs:

    (todo, research) -> (in_progress, building) -> (review, testing) -> (done, done)

with a revert edge (review, testing) -> (todo, research) when a pull request is
closed without merging. Every transition here is a pure function of the current
state and an event. Unknown inputs return the state unchanged, so re-delivered
or out-of-order events are harmless.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskColumn(str, Enum):
    """Kanban board column."""

    RESEARCH = "research"
    BUILDING = "building"
    TESTING = "testing"
    DONE = "done"


class BuildStatus(str, Enum):
    """State of the task's latest build."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class Trigger(str, Enum):
    """Side effect requested by a user move."""

    NONE = "none"
    START_GENERATION = "start_generation"
    MERGE = "merge"


COLUMN_FOR_STATUS: dict[TaskStatus, TaskColumn] = {
    TaskStatus.TODO: TaskColumn.RESEARCH,
    TaskStatus.IN_PROGRESS: TaskColumn.BUILDING,
    TaskStatus.REVIEW: TaskColumn.TESTING,
    TaskStatus.DONE: TaskColumn.DONE,
}

STATUS_FOR_COLUMN: dict[TaskColumn, TaskStatus] = {
    column: status for status, column in COLUMN_FOR_STATUS.items()
}


@dataclass(frozen=True)
class TaskState:
    """Snapshot of the mutable board fields of a task."""

    status: TaskStatus
    build_status: BuildStatus = BuildStatus.PENDING
    completed_at: Optional[datetime] = None

    @property
    def column(self) -> TaskColumn:
        return COLUMN_FOR_STATUS[self.status]

    @classmethod
    def from_values(
        cls,
        status: str,
        build_status: str = BuildStatus.PENDING.value,
        completed_at: Optional[datetime] = None,
    ) -> Optional["TaskState"]:
        """Build a state from stored strings; None if they are not recognized."""
        try:
            return cls(
                status=TaskStatus(status),
                build_status=BuildStatus(build_status),
                completed_at=completed_at,
            )
        except ValueError:
            return None


def is_valid_pair(status: str, column: str) -> bool:
    """Check whether a (status, column) pair may be written."""
    try:
        return COLUMN_FOR_STATUS[TaskStatus(status)] == TaskColumn(column)
    except ValueError:
        return False


def _move(
    state: TaskState,
    status: TaskStatus,
    build_status: Optional[BuildStatus] = None,
) -> TaskState:
    return replace(
        state,
        status=status,
        build_status=build_status if build_status is not None else state.build_status,
    )


def pull_request_event(
    state: TaskState,
    action: Optional[str],
    merged: bool,
    now: datetime,
) -> TaskState:
    """Apply a pull request webhook action to a task.

    closed+merged       -> (done, done), build ready, completed_at set
    closed, not merged  -> (todo, research), build pending
    reopened            -> (review, testing), build ready
    ready_for_review    -> (review, testing), build unchanged
    anything else       -> unchanged
    """
    if action == "closed":
        if merged:
            if state.status == TaskStatus.DONE and state.build_status == BuildStatus.READY:
                return state
            return replace(
                state,
                status=TaskStatus.DONE,
                build_status=BuildStatus.READY,
                completed_at=state.completed_at or now,
            )
        return _move(state, TaskStatus.TODO, BuildStatus.PENDING)

    if action == "reopened":
        return _move(state, TaskStatus.REVIEW, BuildStatus.READY)

    if action == "ready_for_review":
        return _move(state, TaskStatus.REVIEW)

    return state


def generation_started(state: TaskState) -> TaskState:
    """A generation was started for the task; its build is pending again."""
    if state.status == TaskStatus.DONE:
        return state
    return replace(state, build_status=BuildStatus.PENDING)


def generation_completed(state: TaskState) -> TaskState:
    """A generation finished for a task that is being built."""
    if state.status != TaskStatus.IN_PROGRESS:
        return state
    return _move(state, TaskStatus.REVIEW, BuildStatus.READY)


def generation_failed(state: TaskState) -> TaskState:
    """A generation failed for a task that is being built."""
    if state.status != TaskStatus.IN_PROGRESS:
        return state
    return replace(state, build_status=BuildStatus.FAILED)


def user_move(state: TaskState, column: str) -> tuple[TaskState, Trigger]:
    """Apply a drag-and-drop of the task card onto ``column``.

    Moving into building starts a generation; moving into done requests a merge.
    """
    try:
        target = TaskColumn(column)
    except ValueError:
        return state, Trigger.NONE

    if target == state.column:
        return state, Trigger.NONE

    status = STATUS_FOR_COLUMN[target]
    if target == TaskColumn.BUILDING:
        return _move(state, status, BuildStatus.PENDING), Trigger.START_GENERATION
    if target == TaskColumn.DONE:
        return _move(state, status), Trigger.MERGE
    return _move(state, status), Trigger.NONE

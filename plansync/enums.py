"""Enumerations shared across the plan-sync engine."""

from enum import Enum


class ResourceKind(str, Enum):
    """Kinds of remote resources a plan is synchronized into."""

    LABEL = "label"
    MILESTONE = "milestone"
    ISSUE = "issue"

    def __str__(self) -> str:
        return self.value


class Outcome(str, Enum):
    """Terminal outcome of reconciling one desired resource."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class ResourceState(str, Enum):
    """Transient per-resource control-flow state inside the reconciler.

    The happy paths are:
    PENDING -> ALREADY_EXISTS (found in the snapshot)
    PENDING -> CHECKING -> CREATE_ATTEMPTED -> CREATED
    """

    PENDING = "pending"
    CHECKING = "checking"
    CREATE_ATTEMPTED = "create_attempted"
    ALREADY_EXISTS = "already_exists"
    CREATED = "created"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ResourceState.ALREADY_EXISTS, ResourceState.CREATED, ResourceState.FAILED)


class BoardStatus(str, Enum):
    """Values of the board's Status field.

    The engine only ever sets TODO, on issues it has just created.
    """

    TODO = "Todo"
    IN_PROGRESS = "In Progress"
    TESTING = "Testing"
    REVIEW = "Review"
    DONE = "Done"

    def __str__(self) -> str:
        return self.value

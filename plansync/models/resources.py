"""
Resource models for one synchronization run.

These objects live only for the duration of a run: the reconciler derives
DesiredResource entries from the plan, resolves RemoteResourceRef values
against the tracker, and emits one ReconciliationResult per desired
resource. Nothing here is cached across runs.

All models are frozen; a retried or patched resource produces a new result
object instead of mutating the previous one.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from plansync.enums import Outcome, ResourceKind

NaturalKey = tuple[ResourceKind, str]


@dataclass(frozen=True)
class RemoteResourceRef:
    """Reference to a resource that exists on the tracker."""

    kind: ResourceKind
    key: str
    """Natural key: label name, milestone title or issue title."""

    remote_id: int | None = None
    """Database identifier assigned by the tracker, once known."""

    number: int | None = None
    """Human-facing number (issue #, milestone number), if the kind has one."""

    node_id: str | None = None
    """Global node identifier used by the board API."""

    url: str | None = None

    @property
    def natural_key(self) -> NaturalKey:
        return (self.kind, self.key)


@dataclass(frozen=True)
class DesiredResource:
    """A resource the plan requires to exist on the tracker.

    The payload holds the kind-specific creation fields (color and
    description for labels, due date for milestones, body, labels and
    milestone for issues).
    """

    kind: ResourceKind
    key: str
    sprint: int | None = None
    node_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def natural_key(self) -> NaturalKey:
        return (self.kind, self.key)

    def describe(self) -> str:
        return f"{self.kind.value}:{self.key}"


@dataclass(frozen=True)
class ReconciliationResult:
    """Terminal outcome of one desired resource."""

    kind: ResourceKind
    key: str
    outcome: Outcome
    sprint: int | None = None
    node_id: str | None = None
    ref: RemoteResourceRef | None = None
    attempts: int = 0
    reason: str | None = None
    """Failure reason; only set when outcome is FAILED."""

    notes: tuple[str, ...] = ()
    """Non-fatal follow-up problems (board status, cross-reference patching)."""

    @property
    def remote_id(self) -> int | None:
        return self.ref.remote_id if self.ref else None

    @property
    def natural_key(self) -> NaturalKey:
        return (self.kind, self.key)

    @classmethod
    def for_resource(
        cls,
        resource: DesiredResource,
        outcome: Outcome,
        ref: RemoteResourceRef | None = None,
        attempts: int = 0,
        reason: str | None = None,
    ) -> "ReconciliationResult":
        return cls(
            kind=resource.kind,
            key=resource.key,
            outcome=outcome,
            sprint=resource.sprint,
            node_id=resource.node_id,
            ref=ref,
            attempts=attempts,
            reason=reason,
        )


@dataclass(frozen=True)
class SyncRun:
    """Everything a synchronization run produced.

    Iterating a SyncRun yields its results in reporting order.
    """

    results: tuple[ReconciliationResult, ...] = ()
    aborted: str | None = None
    """Abort reason when a systemic failure stopped the run early."""

    cancelled: bool = False
    not_attempted: tuple[DesiredResource, ...] = ()
    """Desired resources never attempted because of an abort or cancellation."""

    def __iter__(self) -> Iterator[ReconciliationResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def by_outcome(self, outcome: Outcome) -> list[ReconciliationResult]:
        return [result for result in self.results if result.outcome == outcome]

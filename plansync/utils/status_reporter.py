"""Status reporting for synchronization runs."""

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from plansync.enums import Outcome
from plansync.models.resources import ReconciliationResult, SyncRun

_ICONS = {
    Outcome.CREATED: "✅",
    Outcome.ALREADY_EXISTS: "⏭",
    Outcome.FAILED: "❌",
}


@dataclass(frozen=True)
class FailureDetail:
    kind: str
    key: str
    reason: str
    attempts: int
    sprint: int | None = None


@dataclass(frozen=True)
class SyncSummary:
    """Aggregated outcome of a run.

    Attributes:
        totals: Count per outcome
        by_kind: Outcome counts per resource kind
        by_sprint: Outcome counts per sprint number (None for plan-wide labels)
        failures: Every failed resource with its reason
        notes: (key, note) pairs for non-fatal follow-up problems
        aborted: Abort reason, if the run stopped on a systemic failure
        cancelled: Whether the run was cancelled
        not_attempted: Natural keys ("kind:key") never attempted
    """

    totals: dict[str, int]
    by_kind: dict[str, dict[str, int]]
    by_sprint: dict[int | None, dict[str, int]]
    failures: tuple[FailureDetail, ...] = ()
    notes: tuple[tuple[str, str], ...] = ()
    aborted: str | None = None
    cancelled: bool = False
    not_attempted: tuple[str, ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return sum(self.totals.values())

    @property
    def ok(self) -> bool:
        return not self.failures and self.aborted is None and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable representation."""
        return {
            "total": self.total,
            "totals": dict(self.totals),
            "by_kind": {kind: dict(counts) for kind, counts in self.by_kind.items()},
            "by_sprint": {
                ("none" if sprint is None else str(sprint)): dict(counts) for sprint, counts in self.by_sprint.items()
            },
            "failures": [
                {
                    "kind": failure.kind,
                    "key": failure.key,
                    "sprint": failure.sprint,
                    "reason": failure.reason,
                    "attempts": failure.attempts,
                }
                for failure in self.failures
            ],
            "notes": [{"key": key, "note": note} for key, note in self.notes],
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "not_attempted": list(self.not_attempted),
        }

    def render_table(self) -> str:
        """Plain-text report for terminals."""
        outcomes = list(Outcome)
        header = f"{'':<12}" + "".join(f"{_ICONS[outcome] + ' ' + outcome.value:>16}" for outcome in outcomes)
        lines = [header]
        for kind, counts in self.by_kind.items():
            lines.append(f"{kind:<12}" + "".join(f"{counts.get(o.value, 0):>16}" for o in outcomes))
        lines.append(f"{'total':<12}" + "".join(f"{self.totals.get(o.value, 0):>16}" for o in outcomes))

        if self.failures:
            lines.append("")
            lines.append(f"{_ICONS[Outcome.FAILED]} Failures:")
            for failure in self.failures:
                lines.append(f"  - {failure.kind}:{failure.key} ({failure.attempts} attempts): {failure.reason}")
        if self.notes:
            lines.append("")
            lines.append("Notes:")
            lines.extend(f"  - {key}: {note}" for key, note in self.notes)
        if self.aborted:
            lines.append("")
            lines.append(f"Run aborted: {self.aborted}")
        if self.cancelled:
            lines.append("")
            lines.append("Run cancelled")
        if self.not_attempted:
            lines.append(f"Not attempted ({len(self.not_attempted)}):")
            lines.extend(f"  - {key}" for key in self.not_attempted)
        return "\n".join(lines)


def summarize(results: SyncRun | Iterable[ReconciliationResult]) -> SyncSummary:
    """Aggregate reconciliation results.

    Accepts a full SyncRun or any iterable of results; abort, cancel and
    not-attempted information is only available from a SyncRun.
    """
    run = results if isinstance(results, SyncRun) else SyncRun(results=tuple(results))

    totals: Counter[str] = Counter({outcome.value: 0 for outcome in Outcome})
    by_kind: dict[str, Counter[str]] = {}
    by_sprint: dict[int | None, Counter[str]] = {}
    failures = []
    notes = []

    for result in run:
        outcome = result.outcome.value
        totals[outcome] += 1
        by_kind.setdefault(result.kind.value, Counter())[outcome] += 1
        by_sprint.setdefault(result.sprint, Counter())[outcome] += 1
        if result.outcome == Outcome.FAILED:
            failures.append(
                FailureDetail(
                    kind=result.kind.value,
                    key=result.key,
                    reason=result.reason or "unknown",
                    attempts=result.attempts,
                    sprint=result.sprint,
                )
            )
        notes.extend((f"{result.kind.value}:{result.key}", note) for note in result.notes)

    return SyncSummary(
        totals=dict(totals),
        by_kind={kind: dict(counts) for kind, counts in by_kind.items()},
        by_sprint={sprint: dict(counts) for sprint, counts in by_sprint.items()},
        failures=tuple(failures),
        notes=tuple(notes),
        aborted=run.aborted,
        cancelled=run.cancelled,
        not_attempted=tuple(resource.describe() for resource in run.not_attempted),
    )

"""
Remote state snapshot.

The snapshot is the idempotency baseline of a synchronization run: it holds
what the tracker reported before any mutation, and is augmented in memory
with every resource the run itself creates. A resource created earlier in
the same run is therefore treated as existing without a second remote read,
which makes the engine immune to the tracker's eventual consistency.

The snapshot is the only mutable state shared between workers. Every access
goes through one asyncio lock, and creation rights are handed out through
``claim``: a natural key can be claimed by at most one worker at a time, so
two workers never create the same resource concurrently.

Example:
    >>> snapshot = await fetch_existing(tracker, [d.natural_key for d in desired])
    >>> claim = await snapshot.claim(ResourceKind.LABEL, "sprint-0")
    >>> if claim.existing is None:
    ...     ref = await tracker.create(ResourceKind.LABEL, payload)
    ...     await snapshot.record(ref)
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from plansync.enums import ResourceKind
from plansync.models.resources import NaturalKey, RemoteResourceRef
from plansync.providers.base import TrackerClient
from plansync.utils.retry import RetryPolicy, call_with_retry

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Claim:
    """Result of claiming a natural key.

    Exactly one of the fields is meaningful: ``existing`` when the key is
    already known to exist, ``granted`` when the caller now owns creation.
    ``granted`` is False with no ``existing`` ref only when another worker
    owns the key and it finished without creating it.
    """

    existing: RemoteResourceRef | None = None
    granted: bool = False


class RemoteSnapshot:
    """In-memory view of which natural keys exist on the tracker.

    Attributes:
        baseline_size: Number of refs loaded from the tracker at start-up
    """

    def __init__(self, refs: Iterable[RemoteResourceRef] = ()) -> None:
        self._refs: dict[NaturalKey, RemoteResourceRef] = {ref.natural_key: ref for ref in refs}
        self._in_flight: dict[NaturalKey, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self.baseline_size = len(self._refs)

    def __contains__(self, natural_key: object) -> bool:
        return natural_key in self._refs

    def __len__(self) -> int:
        return len(self._refs)

    def get(self, kind: ResourceKind, key: str) -> RemoteResourceRef | None:
        return self._refs.get((kind, key))

    def refs(self) -> dict[NaturalKey, RemoteResourceRef]:
        """Copy of every known ref."""
        return dict(self._refs)

    def issue_numbers(self) -> dict[str, int]:
        """Issue numbers by issue title."""
        return {
            ref.key: ref.number
            for ref in self._refs.values()
            if ref.kind == ResourceKind.ISSUE and ref.number is not None
        }

    async def claim(self, kind: ResourceKind, key: str) -> Claim:
        """Take ownership of creating a natural key.

        If another worker is currently creating the same key, waits for it
        to finish and then reports its outcome instead of granting a second
        creation.
        """
        natural_key = (kind, key)
        while True:
            async with self._lock:
                existing = self._refs.get(natural_key)
                if existing is not None:
                    return Claim(existing=existing)
                pending = self._in_flight.get(natural_key)
                if pending is None:
                    self._in_flight[natural_key] = asyncio.Event()
                    return Claim(granted=True)

            log.debug("claim_waiting", kind=kind.value, key=key)
            await pending.wait()

            async with self._lock:
                existing = self._refs.get(natural_key)
                if existing is not None:
                    return Claim(existing=existing)
                if natural_key not in self._in_flight:
                    # The owner gave up; one more claim round decides who tries next
                    continue

    async def record(self, ref: RemoteResourceRef) -> None:
        """Remember a resource created (or discovered) during this run and release its claim."""
        async with self._lock:
            self._refs[ref.natural_key] = ref
            event = self._in_flight.pop(ref.natural_key, None)
        if event is not None:
            event.set()

    async def release(self, kind: ResourceKind, key: str) -> None:
        """Give up a claim without recording a resource."""
        async with self._lock:
            event = self._in_flight.pop((kind, key), None)
        if event is not None:
            event.set()


async def fetch_existing(
    tracker: TrackerClient,
    keys: Iterable[NaturalKey],
    policy: RetryPolicy | None = None,
) -> RemoteSnapshot:
    """Query the tracker for which of the desired natural keys already exist.

    One listing per resource kind that appears in ``keys``; only refs whose
    natural key was asked for are kept. Issue titles must match exactly.

    Args:
        tracker: Connected tracker
        keys: Natural keys of the desired resources
        policy: Retry policy for the listing calls

    Returns:
        Snapshot seeded with the existing refs

    Raises:
        TrackerError: If a listing still fails after retries. Synchronizing
            without a baseline could duplicate resources, so this is fatal.
    """
    policy = policy or RetryPolicy()
    wanted: dict[ResourceKind, set[str]] = {}
    for kind, key in keys:
        wanted.setdefault(kind, set()).add(key)

    found: list[RemoteResourceRef] = []
    for kind in ResourceKind:
        if kind not in wanted:
            continue
        refs = await call_with_retry(
            lambda kind=kind: tracker.list_resources(kind),
            policy,
            operation=f"list_{kind.value}s",
        )
        matching = [ref for ref in refs if ref.key in wanted[kind]]
        log.debug("snapshot_kind_loaded", kind=kind.value, remote=len(refs), matching=len(matching))
        found.extend(matching)

    snapshot = RemoteSnapshot(found)
    log.info("snapshot_fetched", existing=len(snapshot), desired=sum(len(v) for v in wanted.values()))
    return snapshot

"""In-memory tracker.

A tracker "with memory": resources created through it stay visible to later
listings, so two synchronization runs against the same instance behave like
two runs against a real tracker. Used for local dry runs
(``provider_type: memory``) and as the test double for the engine.

Fault injection:
    ``inject(kind, key, *errors)`` queues errors raised by successive create
    calls for that natural key; ``fail_all_creates(error)`` makes every
    create raise the same error (e.g. rejected credentials).
"""

import asyncio
from collections import defaultdict
from collections.abc import Mapping
from typing import Any

import structlog

from plansync.enums import BoardStatus, ResourceKind
from plansync.exceptions import DuplicateResourceError, TrackerError, UnknownTrackerError
from plansync.models.resources import NaturalKey, RemoteResourceRef
from plansync.providers.base import TrackerClient

log = structlog.get_logger(__name__)

_KEY_FIELDS = {
    ResourceKind.LABEL: "name",
    ResourceKind.MILESTONE: "title",
    ResourceKind.ISSUE: "title",
}


class InMemoryTracker(TrackerClient):
    """Tracker backed by dictionaries.

    Attributes:
        resources: Stored payloads by natural key
        refs: Remote references by natural key
        board: Board status per issue number
        create_calls: Natural keys passed to create, in call order
        update_calls: (natural key, payload) pairs passed to update
    """

    def __init__(self, latency: float = 0.0, has_board: bool = True) -> None:
        """Initialize an empty tracker.

        Args:
            latency: Seconds each remote call sleeps, to force interleaving
            has_board: Whether the tracker exposes a board
        """
        self.latency = latency
        self.has_board = has_board
        self.resources: dict[NaturalKey, dict[str, Any]] = {}
        self.refs: dict[NaturalKey, RemoteResourceRef] = {}
        self.board: dict[int, BoardStatus] = {}
        self.create_calls: list[NaturalKey] = []
        self.update_calls: list[tuple[NaturalKey, dict[str, Any]]] = []
        self._faults: dict[NaturalKey, list[TrackerError]] = defaultdict(list)
        self._fail_all: TrackerError | None = None
        self._next_id = 1
        self._next_number: dict[ResourceKind, int] = defaultdict(lambda: 1)

    def inject(self, kind: ResourceKind, key: str, *errors: TrackerError) -> None:
        """Queue errors for successive create calls on one natural key."""
        self._faults[(kind, key)].extend(errors)

    def fail_all_creates(self, error: TrackerError | None) -> None:
        """Make every create call raise ``error`` (None clears it)."""
        self._fail_all = error

    def seed(self, kind: ResourceKind, key: str, **payload: Any) -> RemoteResourceRef:
        """Store a pre-existing resource without recording a create call."""
        payload.setdefault(_KEY_FIELDS[kind], key)
        return self._store(kind, key, payload)

    def created_keys(self) -> list[NaturalKey]:
        """Natural keys of every resource that currently exists."""
        return list(self.refs)

    async def list_resources(self, kind: ResourceKind) -> list[RemoteResourceRef]:
        await self._pause()
        return [ref for (ref_kind, _key), ref in self.refs.items() if ref_kind == kind]

    async def create(self, kind: ResourceKind, payload: Mapping[str, Any]) -> RemoteResourceRef:
        key = str(payload[_KEY_FIELDS[kind]])
        natural_key = (kind, key)
        self.create_calls.append(natural_key)
        await self._pause()

        if self._fail_all is not None:
            raise self._fail_all
        if self._faults.get(natural_key):
            raise self._faults[natural_key].pop(0)
        if natural_key in self.refs:
            raise DuplicateResourceError(f"{kind.value} already exists", kind=kind.value, key=key, status_code=422)

        ref = self._store(kind, key, dict(payload))
        log.debug("memory_resource_created", kind=kind.value, key=key, number=ref.number)
        return ref

    async def update(self, ref: RemoteResourceRef, payload: Mapping[str, Any]) -> RemoteResourceRef:
        natural_key = ref.natural_key
        self.update_calls.append((natural_key, dict(payload)))
        await self._pause()

        if natural_key not in self.resources:
            raise UnknownTrackerError(f"{ref.kind.value} not found", kind=ref.kind.value, key=ref.key, status_code=404)
        self.resources[natural_key].update(payload)
        return self.refs[natural_key]

    async def set_board_status(self, ref: RemoteResourceRef, status: BoardStatus) -> None:
        await self._pause()
        if ref.number is None:
            raise UnknownTrackerError("Issue has no number", kind=ref.kind.value, key=ref.key)
        self.board[ref.number] = status

    def _store(self, kind: ResourceKind, key: str, payload: dict[str, Any]) -> RemoteResourceRef:
        number = None
        if kind != ResourceKind.LABEL:
            number = self._next_number[kind]
            self._next_number[kind] += 1

        ref = RemoteResourceRef(
            kind=kind,
            key=key,
            remote_id=self._next_id,
            number=number,
            node_id=f"{kind.value.upper()}_{self._next_id}",
        )
        self._next_id += 1
        self.resources[(kind, key)] = payload
        self.refs[(kind, key)] = ref
        return ref

    async def _pause(self) -> None:
        # Always yield so concurrent workers interleave even without latency
        await asyncio.sleep(self.latency)

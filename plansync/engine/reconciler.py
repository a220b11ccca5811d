"""
Plan reconciliation.

The reconciler converges a tracker towards the resources a plan requires.
It never updates or duplicates a resource that already exists under the same
natural key; it only creates what is missing and reports one terminal
outcome per desired resource.

Run structure:
    1. Every desired resource found in the snapshot is reported as
       ALREADY_EXISTS without any remote call.
    2. Labels and milestones are created, then issues (an issue payload
       refers to its milestone, which must exist first). Each phase runs
       in worker pools partitioned by sprint range; issues are queued in
       topological order.
    3. Newly created issues are put on the board with status Todo.
    4. A finishing pass re-renders the bodies of issues created in this run
       with the issue numbers now known, and updates those that changed.

Failure handling:
    Per-resource failures are isolated and recorded with their reason. An
    authentication failure aborts the run: no new work is started, in-flight
    work completes, the finishing pass is skipped and every resource never
    attempted is listed in ``SyncRun.not_attempted``. Cancellation behaves
    the same way except that the finishing pass still runs for whatever was
    created.

Per-resource state machine::

    PENDING -> ALREADY_EXISTS
    PENDING -> CHECKING -> ALREADY_EXISTS
    PENDING -> CHECKING -> CREATE_ATTEMPTED (n times) -> CREATED | ALREADY_EXISTS | FAILED

Terminal states never transition again.
"""

import asyncio
import dataclasses
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, TypeVar

import structlog

from plansync.config.settings import SprintDefinition, SyncOptions, SyncSettings
from plansync.engine.snapshot import RemoteSnapshot, fetch_existing
from plansync.engine.worker_pool import UnitResult, WorkUnit, pace, run_partitioned
from plansync.enums import BoardStatus, Outcome, ResourceKind, ResourceState
from plansync.exceptions import AuthFailedError, DuplicateResourceError, InvalidTransitionError, TrackerError
from plansync.models.plan import Plan
from plansync.models.resources import (
    DesiredResource,
    NaturalKey,
    ReconciliationResult,
    RemoteResourceRef,
    SyncRun,
)
from plansync.planning.dependency import DependencyGraph
from plansync.planning.desired import derive_desired_resources
from plansync.providers.base import TrackerClient
from plansync.rendering.engine import IssueBodyRenderer
from plansync.utils.retry import RetryPolicy, call_with_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.PENDING: frozenset({ResourceState.CHECKING, ResourceState.ALREADY_EXISTS, ResourceState.FAILED}),
    ResourceState.CHECKING: frozenset(
        {ResourceState.CREATE_ATTEMPTED, ResourceState.ALREADY_EXISTS, ResourceState.FAILED}
    ),
    ResourceState.CREATE_ATTEMPTED: frozenset(
        {
            ResourceState.CREATE_ATTEMPTED,
            ResourceState.CREATED,
            ResourceState.ALREADY_EXISTS,
            ResourceState.FAILED,
        }
    ),
}

# Fields consumed by the engine only, never sent to the tracker
_LOCAL_PAYLOAD_FIELDS = frozenset({"context"})


class ResourceStateMachine:
    """Control-flow state of every desired resource in one run."""

    def __init__(self, resources: Sequence[DesiredResource]) -> None:
        self._states: dict[NaturalKey, ResourceState] = {
            resource.natural_key: ResourceState.PENDING for resource in resources
        }

    def __getitem__(self, natural_key: NaturalKey) -> ResourceState:
        return self._states[natural_key]

    def advance(self, resource: DesiredResource, state: ResourceState) -> None:
        current = self._states[resource.natural_key]
        if state not in _TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(
                f"{resource.describe()}: cannot move from {current.value} to {state.value}"
            )
        self._states[resource.natural_key] = state

    def pending(self) -> list[NaturalKey]:
        return [key for key, state in self._states.items() if state == ResourceState.PENDING]


class Reconciler:
    """Create the missing resources of one plan on one tracker.

    Attributes:
        tracker: Connected tracker client
        snapshot: Remote state snapshot, augmented as resources are created
        options: Concurrency, pacing and retry options
        policy: Retry policy derived from the options
    """

    def __init__(
        self,
        tracker: TrackerClient,
        snapshot: RemoteSnapshot,
        options: SyncOptions | None = None,
        cancel_event: asyncio.Event | None = None,
        renderer: IssueBodyRenderer | None = None,
    ) -> None:
        self.tracker = tracker
        self.snapshot = snapshot
        self.options = options or SyncOptions()
        self.policy = RetryPolicy.from_options(self.options)
        self.cancel_event = cancel_event or asyncio.Event()
        self.abort_event = asyncio.Event()
        self.renderer = renderer or IssueBodyRenderer()
        self._abort_reason: str | None = None
        self._states: ResourceStateMachine | None = None

    @property
    def aborted(self) -> str | None:
        return self._abort_reason

    async def run(self, desired: Sequence[DesiredResource]) -> SyncRun:
        """Reconcile every desired resource.

        Args:
            desired: Desired resources in reporting order, unique by natural key

        Returns:
            The run's results, in the order of ``desired``
        """
        run_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(run_id=run_id)
        try:
            return await self._run(desired)
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

    async def _run(self, desired: Sequence[DesiredResource]) -> SyncRun:
        self._states = ResourceStateMachine(desired)
        results: dict[NaturalKey, ReconciliationResult] = {}

        log.info(
            "sync_started",
            desired=len(desired),
            known=len(self.snapshot),
            concurrency=self.options.concurrency,
            partitions=self.options.partitions,
        )

        to_create: list[DesiredResource] = []
        for resource in desired:
            ref = self.snapshot.get(resource.kind, resource.key)
            if ref is None:
                to_create.append(resource)
                continue
            self._states.advance(resource, ResourceState.ALREADY_EXISTS)
            results[resource.natural_key] = ReconciliationResult.for_resource(
                resource, Outcome.ALREADY_EXISTS, ref=ref
            )
            log.info("resource_exists", kind=resource.kind.value, key=resource.key)

        structural = [r for r in to_create if r.kind != ResourceKind.ISSUE]
        issues = [r for r in to_create if r.kind == ResourceKind.ISSUE]

        for phase, batch in (("structure", structural), ("issues", issues)):
            if not batch or self._stopped:
                continue
            results.update(await self._create_phase(phase, batch))

        if self._abort_reason is None:
            results = await self._finish_cross_references(desired, results)
        else:
            log.warning("finishing_pass_skipped", reason=self._abort_reason)

        ordered = tuple(results[r.natural_key] for r in desired if r.natural_key in results)
        not_attempted = tuple(r for r in desired if r.natural_key not in results)
        cancelled = self.cancel_event.is_set()

        log.info(
            "sync_finished",
            created=sum(1 for r in ordered if r.outcome == Outcome.CREATED),
            already_exists=sum(1 for r in ordered if r.outcome == Outcome.ALREADY_EXISTS),
            failed=sum(1 for r in ordered if r.outcome == Outcome.FAILED),
            not_attempted=len(not_attempted),
            aborted=self._abort_reason,
            cancelled=cancelled,
        )
        return SyncRun(
            results=ordered,
            aborted=self._abort_reason,
            cancelled=cancelled,
            not_attempted=not_attempted,
        )

    @property
    def _stopped(self) -> bool:
        return self.cancel_event.is_set() or self.abort_event.is_set()

    async def _create_phase(
        self, phase: str, resources: Sequence[DesiredResource]
    ) -> dict[NaturalKey, ReconciliationResult]:
        by_id = {resource.describe(): resource for resource in resources}
        units = [
            WorkUnit(id=resource.describe(), func=self._unit_for(resource), sprint=resource.sprint)
            for resource in resources
        ]
        channel: asyncio.Queue[UnitResult | None] = asyncio.Queue()
        results: dict[NaturalKey, ReconciliationResult] = {}

        async def collect() -> None:
            while True:
                item = await channel.get()
                if item is None:
                    return
                resource = by_id[item.unit.id]
                if item.success:
                    results[resource.natural_key] = item.result
                else:
                    # Unexpected exception escaped the unit; never drop the resource
                    self._settle(resource, ResourceState.FAILED)
                    results[resource.natural_key] = ReconciliationResult.for_resource(
                        resource, Outcome.FAILED, reason=f"Unexpected error: {item.error}"
                    )

        collector = asyncio.create_task(collect())
        try:
            not_started = await run_partitioned(
                units,
                channel,
                concurrency=self.options.concurrency,
                partitions=self.options.partitions,
                pacing_interval=self.options.pacing_interval,
                cancel_event=self.cancel_event,
                abort_event=self.abort_event,
                name=phase,
            )
        finally:
            await channel.put(None)
            await collector

        if not_started:
            log.warning("resources_not_attempted", phase=phase, count=len(not_started))
        return results

    def _unit_for(self, resource: DesiredResource):
        async def unit() -> ReconciliationResult:
            return await self._reconcile(resource)

        return unit

    def _settle(self, resource: DesiredResource, state: ResourceState) -> None:
        if not self._states[resource.natural_key].is_terminal:
            self._states.advance(resource, state)

    async def _reconcile(self, resource: DesiredResource) -> ReconciliationResult:
        """Create one resource unless it is (or becomes) known to exist."""
        states = self._states
        states.advance(resource, ResourceState.CHECKING)

        claim = await self.snapshot.claim(resource.kind, resource.key)
        if claim.existing is not None:
            states.advance(resource, ResourceState.ALREADY_EXISTS)
            log.info("resource_exists", kind=resource.kind.value, key=resource.key)
            return ReconciliationResult.for_resource(resource, Outcome.ALREADY_EXISTS, ref=claim.existing)

        attempts = 0

        def on_attempt(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt
            states.advance(resource, ResourceState.CREATE_ATTEMPTED)

        payload = _remote_payload(resource.payload)
        try:
            ref = await call_with_retry(
                _paced(lambda: self.tracker.create(resource.kind, payload)),
                self.policy,
                operation=f"create_{resource.kind.value}",
                on_attempt=on_attempt,
            )
            await self.snapshot.record(ref)
        except DuplicateResourceError:
            return await self._adopt_duplicate(resource, attempts)
        except AuthFailedError as e:
            self._abort(f"Authentication rejected by tracker: {e.message}")
            states.advance(resource, ResourceState.FAILED)
            log.error("resource_failed", kind=resource.kind.value, key=resource.key, error=str(e))
            return ReconciliationResult.for_resource(resource, Outcome.FAILED, attempts=attempts, reason=str(e))
        except TrackerError as e:
            states.advance(resource, ResourceState.FAILED)
            log.error(
                "resource_failed",
                kind=resource.kind.value,
                key=resource.key,
                attempts=attempts,
                error=str(e),
            )
            return ReconciliationResult.for_resource(resource, Outcome.FAILED, attempts=attempts, reason=str(e))
        finally:
            await self.snapshot.release(resource.kind, resource.key)

        states.advance(resource, ResourceState.CREATED)
        log.info("resource_created", kind=resource.kind.value, key=resource.key, attempts=attempts, number=ref.number)

        result = ReconciliationResult.for_resource(resource, Outcome.CREATED, ref=ref, attempts=attempts)
        if resource.kind == ResourceKind.ISSUE:
            result = await self._set_initial_status(result, ref)
        return result

    async def _adopt_duplicate(self, resource: DesiredResource, attempts: int) -> ReconciliationResult:
        """Treat a duplicate-key rejection as an existing resource."""
        self._states.advance(resource, ResourceState.ALREADY_EXISTS)
        notes: tuple[str, ...] = ()
        try:
            ref = await call_with_retry(
                _paced(lambda: self.tracker.exists(resource.kind, resource.key)),
                self.policy,
                operation=f"lookup_{resource.kind.value}",
            )
        except TrackerError as e:
            ref = None
            notes = (f"Existing resource could not be looked up: {e}",)

        if ref is not None:
            await self.snapshot.record(ref)
        log.info("resource_exists", kind=resource.kind.value, key=resource.key, detected="duplicate")
        result = ReconciliationResult.for_resource(resource, Outcome.ALREADY_EXISTS, ref=ref, attempts=attempts)
        return dataclasses.replace(result, notes=notes) if notes else result

    async def _set_initial_status(self, result: ReconciliationResult, ref: RemoteResourceRef) -> ReconciliationResult:
        if not (self.options.set_board_status and self.tracker.has_board):
            return result
        try:
            await call_with_retry(
                _paced(lambda: self.tracker.set_board_status(ref, BoardStatus.TODO)),
                self.policy,
                operation="set_board_status",
            )
        except TrackerError as e:
            log.warning("board_status_failed", key=ref.key, error=str(e))
            return _with_note(result, f"Board status not set: {e}")
        except Exception as e:
            # The issue exists remotely; its outcome stays CREATED whatever the follow-up raises
            log.exception("board_status_failed", key=ref.key, error=str(e))
            return _with_note(result, f"Board status not set: {type(e).__name__}: {e}")
        return result

    def _abort(self, reason: str) -> None:
        if self._abort_reason is None:
            self._abort_reason = reason
            log.error("sync_aborted", reason=reason)
        self.abort_event.set()

    async def _finish_cross_references(
        self,
        desired: Sequence[DesiredResource],
        results: dict[NaturalKey, ReconciliationResult],
    ) -> dict[NaturalKey, ReconciliationResult]:
        """Rewrite dependency links of issues created in this run."""
        references: dict[str, int] = {}
        for resource in desired:
            if resource.kind != ResourceKind.ISSUE or resource.node_id is None:
                continue
            ref = self.snapshot.get(resource.kind, resource.key)
            if ref is not None and ref.number is not None:
                references[resource.node_id] = ref.number

        pending: list[tuple[DesiredResource, RemoteResourceRef, str]] = []
        for resource in desired:
            result = results.get(resource.natural_key)
            if result is None or result.outcome != Outcome.CREATED or resource.kind != ResourceKind.ISSUE:
                continue
            context = resource.payload.get("context")
            if context is None or result.ref is None:
                continue
            body = self.renderer.render(context, references)
            if body != resource.payload.get("body"):
                pending.append((resource, result.ref, body))

        if not pending:
            return results

        log.info("finishing_pass_started", issues=len(pending), known_numbers=len(references))
        by_id = {resource.describe(): resource for resource, _ref, _body in pending}
        units = [
            WorkUnit(id=resource.describe(), func=self._patch_unit(ref, body), sprint=resource.sprint)
            for resource, ref, body in pending
        ]
        channel: asyncio.Queue[UnitResult] = asyncio.Queue()
        not_started = await run_partitioned(
            units,
            channel,
            concurrency=self.options.concurrency,
            pacing_interval=self.options.pacing_interval,
            abort_event=self.abort_event,
            name="finishing",
        )

        updated = dict(results)
        while not channel.empty():
            item = channel.get_nowait()
            if item.success:
                continue
            resource = by_id[item.unit.id]
            log.warning("cross_references_not_updated", key=resource.key, error=str(item.error))
            updated[resource.natural_key] = _with_note(
                updated[resource.natural_key], f"Cross-references not updated: {item.error}"
            )
        for unit in not_started:
            resource = by_id[unit.id]
            updated[resource.natural_key] = _with_note(
                updated[resource.natural_key], "Cross-references not updated: run aborted"
            )
        return updated

    def _patch_unit(self, ref: RemoteResourceRef, body: str):
        async def unit() -> RemoteResourceRef:
            try:
                return await call_with_retry(
                    _paced(lambda: self.tracker.update(ref, {"body": body})),
                    self.policy,
                    operation="update_issue_body",
                )
            except AuthFailedError as e:
                self._abort(f"Authentication rejected by tracker: {e.message}")
                raise

        return unit


def _paced(func: Callable[[], Awaitable[T]]) -> Callable[[], Awaitable[T]]:
    """Wrap a remote call so each attempt waits for the worker's pacing slot."""

    async def call() -> T:
        await pace()
        return await func()

    return call


def _remote_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {field: value for field, value in payload.items() if field not in _LOCAL_PAYLOAD_FIELDS}


def _with_note(result: ReconciliationResult, note: str) -> ReconciliationResult:
    return dataclasses.replace(result, notes=(*result.notes, note))


async def synchronize(
    plan: Plan,
    snapshot: RemoteSnapshot,
    tracker: TrackerClient,
    concurrency_budget: int | None = None,
    options: SyncOptions | None = None,
    sprint_definitions: Sequence[SprintDefinition] = (),
    cancel_event: asyncio.Event | None = None,
    graph: DependencyGraph | None = None,
) -> SyncRun:
    """Reconcile a plan against a tracker.

    Args:
        plan: Parsed plan
        snapshot: Existing remote state (see ``fetch_existing``)
        tracker: Connected tracker client
        concurrency_budget: Overrides ``options.concurrency`` when given
        options: Sync options
        sprint_definitions: Milestone metadata per sprint
        cancel_event: Set to stop scheduling new creations
        graph: Pre-resolved dependency graph

    Returns:
        One result per attempted desired resource, plus abort/cancel status
    """
    options = options or SyncOptions()
    if concurrency_budget is not None:
        options = options.model_copy(update={"concurrency": concurrency_budget})

    desired = derive_desired_resources(plan, graph=graph, options=options, sprint_definitions=sprint_definitions)
    reconciler = Reconciler(tracker, snapshot, options=options, cancel_event=cancel_event)
    return await reconciler.run(desired)


async def sync_plan(
    plan: Plan,
    tracker: TrackerClient,
    settings: SyncSettings,
    cancel_event: asyncio.Event | None = None,
    graph: DependencyGraph | None = None,
) -> SyncRun:
    """Fetch the remote snapshot for a plan, then synchronize it.

    Raises:
        TrackerError: If the snapshot cannot be fetched
    """
    options = settings.sync
    desired = derive_desired_resources(
        plan, graph=graph, options=options, sprint_definitions=settings.sprint_definitions
    )
    snapshot = await fetch_existing(
        tracker, [resource.natural_key for resource in desired], RetryPolicy.from_options(options)
    )
    reconciler = Reconciler(tracker, snapshot, options=options, cancel_event=cancel_event)
    return await reconciler.run(desired)

"""Tests for plansync.engine.reconciler.

Every scenario runs against the in-memory tracker, which keeps what it
creates, so a second run sees the first run's resources.
"""

import asyncio

import pytest

from plansync.engine.reconciler import Reconciler, ResourceStateMachine, sync_plan, synchronize
from plansync.engine.snapshot import RemoteSnapshot, fetch_existing
from plansync.enums import BoardStatus, Outcome, ResourceKind, ResourceState
from plansync.exceptions import AuthFailedError, InvalidTransitionError, RateLimitedError, UnknownTrackerError
from plansync.models.resources import DesiredResource
from plansync.planning.desired import derive_desired_resources
from plansync.providers.memory import InMemoryTracker


async def run_once(plan, tracker, options, **kwargs):
    desired = derive_desired_resources(plan, options=options)
    snapshot = await fetch_existing(tracker, [resource.natural_key for resource in desired])
    return await synchronize(plan, snapshot, tracker, options=options, **kwargs)


class CancellingTracker(InMemoryTracker):
    """Requests cancellation as soon as the first resource is created."""

    def __init__(self, cancel_event: asyncio.Event) -> None:
        super().__init__()
        self.cancel_event = cancel_event

    async def create(self, kind, payload):
        ref = await super().create(kind, payload)
        self.cancel_event.set()
        return ref


class BrokenBoardTracker(InMemoryTracker):
    async def set_board_status(self, ref, status):
        raise UnknownTrackerError("Project not found", key=ref.key)


class TimedTracker(InMemoryTracker):
    """Records when each issue create and board call reaches the tracker."""

    def __init__(self) -> None:
        super().__init__()
        self.issue_calls: list[float] = []

    async def create(self, kind, payload):
        if kind == ResourceKind.ISSUE:
            self.issue_calls.append(asyncio.get_running_loop().time())
        return await super().create(kind, payload)

    async def set_board_status(self, ref, status):
        self.issue_calls.append(asyncio.get_running_loop().time())
        await super().set_board_status(ref, status)


class MalformedBoardTracker(InMemoryTracker):
    """Board calls fail with a non-tracker exception, as on an unparseable response."""

    async def set_board_status(self, ref, status):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_first_run_creates_nine_resources(self, sample_plan, memory_tracker, fast_options):
        run = await run_once(sample_plan, memory_tracker, fast_options)

        assert len(run) == 9
        assert [result.outcome for result in run] == [Outcome.CREATED] * 9
        assert run.aborted is None
        assert run.cancelled is False
        assert run.not_attempted == ()

    @pytest.mark.asyncio
    async def test_second_run_finds_everything(self, sample_plan, memory_tracker, fast_options):
        await run_once(sample_plan, memory_tracker, fast_options)
        calls_after_first_run = len(memory_tracker.create_calls)

        run = await run_once(sample_plan, memory_tracker, fast_options)

        assert [result.outcome for result in run] == [Outcome.ALREADY_EXISTS] * 9
        assert len(memory_tracker.create_calls) == calls_after_first_run
        assert all(result.attempts == 0 for result in run)

    @pytest.mark.asyncio
    async def test_existing_resources_are_never_updated(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.seed(ResourceKind.ISSUE, "[0.1] Set up repository", body="hand-written")

        run = await run_once(sample_plan, memory_tracker, fast_options)

        result = next(r for r in run if r.node_id == "0.1")
        assert result.outcome == Outcome.ALREADY_EXISTS
        assert memory_tracker.resources[(ResourceKind.ISSUE, "[0.1] Set up repository")]["body"] == "hand-written"
        assert (ResourceKind.ISSUE, "[0.1] Set up repository") not in [key for key, _ in memory_tracker.update_calls]

    @pytest.mark.asyncio
    async def test_results_follow_desired_order(self, sample_plan, fast_options):
        tracker = InMemoryTracker(latency=0.001)
        desired = derive_desired_resources(sample_plan, options=fast_options)

        run = await run_once(sample_plan, tracker, fast_options, concurrency_budget=8)

        assert [result.natural_key for result in run] == [resource.natural_key for resource in desired]


class TestConcurrency:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("partitions", [1, 2])
    async def test_same_keys_regardless_of_budget(self, sample_plan, fast_options, partitions):
        options = fast_options.model_copy(update={"partitions": partitions})
        sequential = InMemoryTracker(latency=0.001)
        parallel = InMemoryTracker(latency=0.001)

        await run_once(sample_plan, sequential, options, concurrency_budget=1)
        await run_once(sample_plan, parallel, options, concurrency_budget=8)

        assert set(sequential.created_keys()) == set(parallel.created_keys())
        assert sorted(sequential.create_calls) == sorted(parallel.create_calls)

    @pytest.mark.asyncio
    async def test_each_key_created_once(self, sample_plan, fast_options):
        tracker = InMemoryTracker(latency=0.001)

        await run_once(sample_plan, tracker, fast_options, concurrency_budget=8)

        assert len(tracker.create_calls) == len(set(tracker.create_calls)) == 9

    @pytest.mark.asyncio
    async def test_sequential_issue_numbering(self, sample_plan, memory_tracker, fast_options):
        run = await run_once(sample_plan, memory_tracker, fast_options, concurrency_budget=1)

        numbers = {result.node_id: result.ref.number for result in run if result.kind == ResourceKind.ISSUE}
        assert numbers == {"0.1": 1, "0.2": 2, "0.G": 3, "1.1": 4, "1.G": 5}


class TestTrackerErrors:
    @pytest.mark.asyncio
    async def test_rate_limited_then_created(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.inject(ResourceKind.ISSUE, "[0.2] Configure CI", RateLimitedError("slow down"))

        run = await run_once(sample_plan, memory_tracker, fast_options)

        result = next(r for r in run if r.key == "[0.2] Configure CI")
        assert result.outcome == Outcome.CREATED
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_fails_only_that_resource(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.inject(ResourceKind.LABEL, "sprint-1", *[RateLimitedError("slow down")] * 3)

        run = await run_once(sample_plan, memory_tracker, fast_options)

        failed = run.by_outcome(Outcome.FAILED)
        assert [result.key for result in failed] == ["sprint-1"]
        assert failed[0].attempts == 3
        assert "slow down" in failed[0].reason
        assert len(run.by_outcome(Outcome.CREATED)) == 8

    @pytest.mark.asyncio
    async def test_unknown_error_retried_once(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.inject(ResourceKind.MILESTONE, "Sprint 1: Core Features", UnknownTrackerError("boom"))

        run = await run_once(sample_plan, memory_tracker, fast_options)

        result = next(r for r in run if r.key == "Sprint 1: Core Features")
        assert result.outcome == Outcome.CREATED
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_duplicate_maps_to_already_exists(self, sample_plan, memory_tracker, fast_options):
        desired = derive_desired_resources(sample_plan, options=fast_options)
        snapshot = await fetch_existing(memory_tracker, [resource.natural_key for resource in desired])
        # Created by someone else after the snapshot was taken
        seeded = memory_tracker.seed(ResourceKind.LABEL, "sprint-0")

        run = await synchronize(sample_plan, snapshot, memory_tracker, options=fast_options)

        result = next(r for r in run if r.key == "sprint-0")
        assert result.outcome == Outcome.ALREADY_EXISTS
        assert result.ref == seeded
        assert result.attempts == 1
        assert len(run.by_outcome(Outcome.CREATED)) == 8

    @pytest.mark.asyncio
    async def test_auth_failure_aborts_run(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.fail_all_creates(AuthFailedError("Bad credentials", status_code=401))

        run = await run_once(sample_plan, memory_tracker, fast_options, concurrency_budget=1)

        assert len(run) < 9
        assert run.aborted is not None
        assert "Authentication rejected" in run.aborted
        assert [result.outcome for result in run] == [Outcome.FAILED]
        assert len(run) + len(run.not_attempted) == 9
        assert memory_tracker.update_calls == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.inject(ResourceKind.LABEL, "sprint-0", ValueError("bug"))

        run = await run_once(sample_plan, memory_tracker, fast_options)

        result = next(r for r in run if r.key == "sprint-0")
        assert result.outcome == Outcome.FAILED
        assert "Unexpected error" in result.reason
        assert len(run) == 9


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, sample_plan, memory_tracker, fast_options):
        memory_tracker.seed(ResourceKind.LABEL, "sprint-0")
        cancel = asyncio.Event()
        cancel.set()

        run = await run_once(sample_plan, memory_tracker, fast_options, cancel_event=cancel)

        assert run.cancelled is True
        assert [(r.key, r.outcome) for r in run] == [("sprint-0", Outcome.ALREADY_EXISTS)]
        assert len(run.not_attempted) == 8
        assert memory_tracker.create_calls == []

    @pytest.mark.asyncio
    async def test_in_flight_work_is_recorded(self, sample_plan, fast_options):
        cancel = asyncio.Event()
        tracker = CancellingTracker(cancel)

        run = await run_once(sample_plan, tracker, fast_options, concurrency_budget=1, cancel_event=cancel)

        assert run.cancelled is True
        assert run.aborted is None
        assert [(r.key, r.outcome) for r in run] == [("sprint-0", Outcome.CREATED)]
        assert tracker.created_keys() == [(ResourceKind.LABEL, "sprint-0")]


class TestFinishingPass:
    @pytest.mark.asyncio
    async def test_bodies_reference_issue_numbers(self, sample_plan, memory_tracker, fast_options):
        await run_once(sample_plan, memory_tracker, fast_options, concurrency_budget=1)

        body = memory_tracker.resources[(ResourceKind.ISSUE, "[0.2] Configure CI")]["body"]
        assert "**Depends on:** #1 (Task 0.1)" in body
        assert "**Blocks:** #3 (Sprint 0 Gate)" in body
        assert len(memory_tracker.update_calls) == 5

    @pytest.mark.asyncio
    async def test_references_to_existing_issues(self, sample_plan, memory_tracker, fast_options):
        existing = memory_tracker.seed(ResourceKind.ISSUE, "[0.1] Set up repository")

        await run_once(sample_plan, memory_tracker, fast_options)

        body = memory_tracker.resources[(ResourceKind.ISSUE, "[0.2] Configure CI")]["body"]
        assert f"#{existing.number} (Task 0.1)" in body

    @pytest.mark.asyncio
    async def test_update_failure_becomes_note(self, sample_plan, fast_options):
        class FailingUpdates(InMemoryTracker):
            async def update(self, ref, payload):
                raise UnknownTrackerError("edit rejected")

        tracker = FailingUpdates()

        run = await run_once(sample_plan, tracker, fast_options)

        issues = [r for r in run if r.kind == ResourceKind.ISSUE]
        assert all(r.outcome == Outcome.CREATED for r in issues)
        assert all(any("Cross-references not updated" in note for note in r.notes) for r in issues)

    @pytest.mark.asyncio
    async def test_local_context_is_not_sent(self, sample_plan, memory_tracker, fast_options):
        await run_once(sample_plan, memory_tracker, fast_options)

        payload = memory_tracker.resources[(ResourceKind.ISSUE, "[1.1] Build API")]
        assert "context" not in payload
        assert payload["milestone"] == "Sprint 1: Core Features"


class TestBoardStatus:
    @pytest.mark.asyncio
    async def test_created_issues_start_in_todo(self, sample_plan, memory_tracker, fast_options):
        await run_once(sample_plan, memory_tracker, fast_options)

        assert sorted(memory_tracker.board) == [1, 2, 3, 4, 5]
        assert set(memory_tracker.board.values()) == {BoardStatus.TODO}

    @pytest.mark.asyncio
    async def test_skipped_without_board(self, sample_plan, fast_options):
        tracker = InMemoryTracker(has_board=False)

        await run_once(sample_plan, tracker, fast_options)

        assert tracker.board == {}

    @pytest.mark.asyncio
    async def test_skipped_when_disabled(self, sample_plan, memory_tracker, fast_options):
        options = fast_options.model_copy(update={"set_board_status": False})

        await run_once(sample_plan, memory_tracker, options)

        assert memory_tracker.board == {}

    @pytest.mark.asyncio
    async def test_board_failure_is_a_note(self, sample_plan, fast_options):
        run = await run_once(sample_plan, BrokenBoardTracker(), fast_options)

        issue = next(r for r in run if r.node_id == "1.1")
        assert issue.outcome == Outcome.CREATED
        assert any("Board status not set" in note for note in issue.notes)

    @pytest.mark.asyncio
    async def test_unexpected_board_error_keeps_issue_created(self, sample_plan, fast_options):
        tracker = MalformedBoardTracker()

        run = await run_once(sample_plan, tracker, fast_options)

        issues = [result for result in run if result.kind == ResourceKind.ISSUE]
        assert len(issues) == 5
        assert {result.outcome for result in issues} == {Outcome.CREATED}
        assert all(any("ValueError" in note for note in result.notes) for result in issues)
        assert tracker.update_calls


class TestPacing:
    @pytest.mark.asyncio
    async def test_every_remote_call_of_a_worker_is_spaced(self, sample_plan, fast_options):
        tracker = TimedTracker()
        options = fast_options.model_copy(update={"concurrency": 1, "pacing_interval": 0.02})

        await run_once(sample_plan, tracker, options)

        # five issue creates, each followed by its board call
        assert len(tracker.issue_calls) == 10
        gaps = [later - earlier for earlier, later in zip(tracker.issue_calls, tracker.issue_calls[1:], strict=False)]
        assert all(gap >= 0.015 for gap in gaps)


class TestStateMachine:
    def make_resource(self):
        return DesiredResource(kind=ResourceKind.LABEL, key="sprint-0")

    def test_happy_path(self):
        resource = self.make_resource()
        states = ResourceStateMachine([resource])

        for state in (
            ResourceState.CHECKING,
            ResourceState.CREATE_ATTEMPTED,
            ResourceState.CREATE_ATTEMPTED,
            ResourceState.CREATED,
        ):
            states.advance(resource, state)

        assert states[resource.natural_key] == ResourceState.CREATED

    def test_terminal_states_are_final(self):
        resource = self.make_resource()
        states = ResourceStateMachine([resource])
        states.advance(resource, ResourceState.ALREADY_EXISTS)

        with pytest.raises(InvalidTransitionError, match="cannot move"):
            states.advance(resource, ResourceState.CHECKING)

    def test_cannot_skip_create_attempt(self):
        resource = self.make_resource()
        states = ResourceStateMachine([resource])

        with pytest.raises(InvalidTransitionError):
            states.advance(resource, ResourceState.CREATED)

    def test_pending(self):
        resource = self.make_resource()

        assert ResourceStateMachine([resource]).pending() == [resource.natural_key]


@pytest.mark.asyncio
async def test_reconciler_with_prefilled_snapshot(sample_plan, memory_tracker, fast_options):
    desired = derive_desired_resources(sample_plan, options=fast_options)
    first = await Reconciler(memory_tracker, RemoteSnapshot(), options=fast_options).run(desired)
    known = RemoteSnapshot(result.ref for result in first)

    second = await Reconciler(memory_tracker, known, options=fast_options).run(desired)

    assert [result.outcome for result in second] == [Outcome.ALREADY_EXISTS] * 9


@pytest.mark.asyncio
async def test_sync_plan_fetches_snapshot(sample_plan, memory_settings):
    tracker = InMemoryTracker()

    first = await sync_plan(sample_plan, tracker, memory_settings)
    second = await sync_plan(sample_plan, tracker, memory_settings)

    assert len(first.by_outcome(Outcome.CREATED)) == 11
    assert len(second.by_outcome(Outcome.ALREADY_EXISTS)) == 11

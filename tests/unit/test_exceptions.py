"""Tests for the plansync exception hierarchy."""

import pytest

from plansync.exceptions import (
    AuthFailedError,
    ConfigurationError,
    CycleDetectedError,
    DependencyError,
    DuplicateResourceError,
    InvalidTransitionError,
    PlanParseError,
    PlanSyncError,
    RateLimitedError,
    SyncAbortedError,
    TrackerError,
    UnknownTrackerError,
)


@pytest.mark.parametrize(
    "error",
    [
        ConfigurationError("bad config"),
        PlanParseError(["no sprints"]),
        CycleDetectedError(["a", "b", "a"]),
        RateLimitedError("slow down"),
        SyncAbortedError("auth"),
        InvalidTransitionError("label:sprint-0: cannot move from created to checking"),
    ],
)
def test_everything_is_a_plansync_error(error):
    assert isinstance(error, PlanSyncError)


def test_tracker_error_message_includes_status():
    error = TrackerError("Not Found", kind="issue", key="[0.1] A", status_code=404)

    assert str(error) == "Not Found (HTTP 404)"
    assert error.message == "Not Found"
    assert error.kind == "issue"
    assert error.key == "[0.1] A"


def test_tracker_error_without_status():
    assert str(TrackerError("boom")) == "boom"


@pytest.mark.parametrize(
    ("error_class", "retryable"),
    [
        (RateLimitedError, True),
        (UnknownTrackerError, True),
        (DuplicateResourceError, False),
        (AuthFailedError, False),
    ],
)
def test_retryable_classification(error_class, retryable):
    assert error_class("x").retryable is retryable


def test_rate_limited_keeps_retry_after():
    error = RateLimitedError("slow down", retry_after=12.5, status_code=429)

    assert error.retry_after == 12.5
    assert isinstance(error, TrackerError)


def test_plan_parse_error_lists_every_violation():
    error = PlanParseError(["first problem", "second problem"], warnings=["minor"])

    assert error.violations == ("first problem", "second problem")
    assert error.warnings == ("minor",)
    assert str(error).splitlines() == [
        "Plan is invalid (2 violations)",
        "  - first problem",
        "  - second problem",
    ]


def test_plan_parse_error_singular():
    assert str(PlanParseError(["only one"])).startswith("Plan is invalid (1 violation)")


def test_cycle_path():
    error = CycleDetectedError(["0.1", "0.2", "0.1"])

    assert isinstance(error, DependencyError)
    assert error.path == ("0.1", "0.2", "0.1")
    assert "0.1 -> 0.2 -> 0.1" in str(error)


def test_sync_aborted_reason():
    error = SyncAbortedError("Authentication rejected by tracker: Bad credentials")

    assert error.reason.startswith("Authentication rejected")
    assert error.message == "Synchronization aborted: Authentication rejected by tracker: Bad credentials"

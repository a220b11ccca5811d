"""Custom exception hierarchy for plan-sync.

This module defines a structured exception hierarchy that separates fatal
plan problems (caught before any remote mutation) from per-resource tracker
errors (isolated by the reconciler) and run-wide aborts.

Exception Hierarchy:
    PlanSyncError (base)
    ├── ConfigurationError
    ├── PlanParseError
    ├── DependencyError
    │   └── CycleDetectedError
    ├── TrackerError
    │   ├── RateLimitedError
    │   ├── DuplicateResourceError
    │   ├── AuthFailedError
    │   └── UnknownTrackerError
    ├── InvalidTransitionError
    └── SyncAbortedError

Example Usage:
    >>> from plansync.exceptions import PlanParseError
    >>> try:
    ...     plan = parse_plan(text)
    ... except PlanParseError as e:
    ...     for violation in e.violations:
    ...         print(violation)
"""

from collections.abc import Sequence


class PlanSyncError(Exception):
    """Base exception for all plan-sync errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(PlanSyncError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing organization/repository identifiers
    """

    pass


class PlanParseError(PlanSyncError):
    """The planning document could not be turned into a valid plan.

    All violations found during extraction and validation are collected
    before raising, so a single error describes every problem in the
    document.

    Attributes:
        violations: Fatal problems, one human-readable line each
        warnings: Non-fatal findings collected alongside the violations
    """

    def __init__(self, violations: Sequence[str], warnings: Sequence[str] = ()) -> None:
        """Initialize exception.

        Args:
            violations: Fatal validation problems
            warnings: Non-fatal findings
        """
        self.violations = tuple(violations)
        self.warnings = tuple(warnings)

        count = len(self.violations)
        header = f"Plan is invalid ({count} violation{'s' if count != 1 else ''})"
        lines = [header] + [f"  - {violation}" for violation in self.violations]
        super().__init__("\n".join(lines))


class DependencyError(PlanSyncError):
    """The dependency graph is malformed (e.g. an edge to an unknown node)."""

    pass


class CycleDetectedError(DependencyError):
    """The dependency graph contains a cycle.

    Plans produced by the parser never contain cycles, so this error
    indicates a contract violation between parser and resolver.

    Attributes:
        path: Node identifiers forming the cycle, first node repeated at the end
    """

    def __init__(self, path: Sequence[str]) -> None:
        """Initialize exception.

        Args:
            path: Cycle as a list of node identifiers
        """
        self.path = tuple(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


class TrackerError(PlanSyncError):
    """Remote tracker communication errors.

    Providers translate client-library exceptions into subclasses of this
    error so the reconciler can decide between retry, skip and abort.

    Attributes:
        kind: Resource kind involved, if known
        key: Natural key involved, if known
        status_code: HTTP status code, if applicable
    """

    retryable = False

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        key: str | None = None,
        status_code: int | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            kind: Resource kind (label, milestone, issue)
            key: Natural key of the resource
            status_code: HTTP status code
        """
        self.kind = kind
        self.key = key
        self.status_code = status_code

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class RateLimitedError(TrackerError):
    """The tracker throttled the request. Retryable.

    Attributes:
        retry_after: Seconds the tracker asked us to wait, if it said so
    """

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        kind: str | None = None,
        key: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, kind=kind, key=key, status_code=status_code)


class DuplicateResourceError(TrackerError):
    """A resource with the same natural key already exists remotely."""

    pass


class AuthFailedError(TrackerError):
    """The tracker rejected our credentials. Aborts the whole run."""

    pass


class UnknownTrackerError(TrackerError):
    """Any other tracker failure. Retried once before giving up."""

    retryable = True


class InvalidTransitionError(PlanSyncError):
    """A resource would leave a terminal state or skip a reconciliation step.

    Indicates a bug in the reconciler, never a tracker problem.
    """

    pass


class SyncAbortedError(PlanSyncError):
    """A synchronization run stopped before attempting every resource.

    Attributes:
        reason: Why the run was aborted
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Synchronization aborted: {reason}")

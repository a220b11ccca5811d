"""
Abstract base class for tracker providers.

This module defines the contract the synchronization engine needs from a
remote project tracker: list what exists, create a resource, update a
resource, and put an issue on the board.

Providers translate their client library's failures into the tracker error
taxonomy from ``plansync.exceptions``:

    ======================  =========================================
    Error                   Engine behavior
    ======================  =========================================
    RateLimitedError        retried with backoff, then Failed
    DuplicateResourceError  treated as AlreadyExists
    AuthFailedError         aborts the whole run
    UnknownTrackerError     retried once, then Failed
    ======================  =========================================
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from plansync.enums import BoardStatus, ResourceKind
from plansync.models.resources import RemoteResourceRef


class TrackerClient(ABC):
    """Abstract base class for tracker implementations.

    Resource payloads are plain mappings produced by
    ``plansync.planning.desired``:

    - label: ``name``, ``color``, ``description``
    - milestone: ``title``, ``description``, ``due_on``
    - issue: ``title``, ``body``, ``labels``, ``milestone``

    For issues, ``milestone`` is the milestone *title*; providers resolve it
    to whatever their API expects.

    All methods are async to support non-blocking I/O.
    """

    has_board: bool = False
    """Whether set_board_status has a board to act on."""

    async def connect(self) -> None:
        """Open connections. Default implementation does nothing."""

    async def disconnect(self) -> None:
        """Release connections. Default implementation does nothing."""

    async def __aenter__(self) -> "TrackerClient":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    @abstractmethod
    async def list_resources(self, kind: ResourceKind) -> list[RemoteResourceRef]:
        """List every existing resource of a kind.

        Issues are listed regardless of state (open and closed), so closed
        issues still count as existing.

        Raises:
            TrackerError: If the listing fails
        """
        pass

    async def exists(self, kind: ResourceKind, key: str) -> RemoteResourceRef | None:
        """Look up one resource by natural key.

        Default implementation scans list_resources; providers with a cheaper
        lookup may override it.
        """
        for ref in await self.list_resources(kind):
            if ref.key == key:
                return ref
        return None

    @abstractmethod
    async def create(self, kind: ResourceKind, payload: Mapping[str, Any]) -> RemoteResourceRef:
        """Create a resource.

        Raises:
            RateLimitedError: If the tracker throttled the call
            DuplicateResourceError: If the natural key is already taken
            AuthFailedError: If credentials were rejected
            UnknownTrackerError: For any other failure
        """
        pass

    @abstractmethod
    async def update(self, ref: RemoteResourceRef, payload: Mapping[str, Any]) -> RemoteResourceRef:
        """Update fields of an existing resource.

        Raises:
            TrackerError: If the update fails
        """
        pass

    @abstractmethod
    async def set_board_status(self, ref: RemoteResourceRef, status: BoardStatus) -> None:
        """Add an issue to the board (if needed) and set its status field.

        Raises:
            TrackerError: If the board update fails
        """
        pass

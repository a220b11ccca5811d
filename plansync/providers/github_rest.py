"""GitHub tracker implementation using PyGithub and the GraphQL API.

Labels, milestones and issues go through PyGithub (run in a thread pool so
the event loop never blocks). Board status uses the Projects (v2) GraphQL
API through httpx, since PyGithub does not cover it.
"""

import asyncio
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import httpx
import structlog
from github import (  # type: ignore[import-not-found]
    BadCredentialsException,
    Github,
    GithubException,
    RateLimitExceededException,
)
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from plansync.enums import BoardStatus, ResourceKind
from plansync.exceptions import (
    AuthFailedError,
    DuplicateResourceError,
    RateLimitedError,
    TrackerError,
    UnknownTrackerError,
)
from plansync.models.resources import RemoteResourceRef
from plansync.providers.base import TrackerClient

log = structlog.get_logger(__name__)

T = TypeVar("T")

PROJECT_QUERY = """
query($login: String!, $number: Int!) {
  organization(login: $login) {
    projectV2(number: $number) {
      id
      field(name: "Status") {
        ... on ProjectV2SingleSelectField { id options { id name } }
      }
    }
  }
}
"""

ADD_ITEM_MUTATION = """
mutation($project: ID!, $content: ID!) {
  addProjectV2ItemById(input: {projectId: $project, contentId: $content}) { item { id } }
}
"""

SET_STATUS_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!, $option: String!) {
  updateProjectV2ItemFieldValue(
    input: {projectId: $project, itemId: $item, fieldId: $field, value: {singleSelectOptionId: $option}}
  ) { projectV2Item { id } }
}
"""


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


def translate_github_error(e: GithubException, kind: ResourceKind | None = None, key: str | None = None) -> TrackerError:
    """Map a PyGithub exception onto the tracker error taxonomy."""
    status = getattr(e, "status", None)
    data = getattr(e, "data", None)
    headers = getattr(e, "headers", None) or {}
    message = data.get("message", str(e)) if isinstance(data, dict) else str(e)
    kind_value = kind.value if kind else None

    if isinstance(e, RateLimitExceededException) or (status in (403, 429) and "rate limit" in message.lower()):
        retry_after = None
        raw_retry_after = {name.lower(): value for name, value in headers.items()}.get("retry-after")
        if raw_retry_after is not None:
            try:
                retry_after = float(raw_retry_after)
            except ValueError:
                retry_after = None
        return RateLimitedError(message, retry_after=retry_after, kind=kind_value, key=key, status_code=status)

    if isinstance(e, BadCredentialsException) or status in (401, 403):
        return AuthFailedError(message, kind=kind_value, key=key, status_code=status)

    if status == 422 and "already_exists" in str(data):
        return DuplicateResourceError(message, kind=kind_value, key=key, status_code=status)

    return UnknownTrackerError(message, kind=kind_value, key=key, status_code=status)


def graphql_url(base_url: str) -> str:
    """GraphQL endpoint for a REST base URL (github.com or Enterprise /api/v3)."""
    base = base_url.rstrip("/")
    if base.endswith("/v3"):
        return f"{base[:-3]}/graphql"
    return f"{base}/graphql"


class GitHubTracker(TrackerClient):
    """GitHub implementation using PyGithub library."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
        project_number: int | None = None,
    ):
        """Initialize GitHub tracker.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: GitHub API base URL (for GitHub Enterprise)
            project_number: Organization project number for board status
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self.project_number = project_number
        self.has_board = project_number is not None
        self._client: Github | None = None
        self._repo: GHRepository | None = None
        self._http: httpx.AsyncClient | None = None
        self._milestone_numbers: dict[str, int] = {}
        self._board: dict[str, Any] | None = None
        self._board_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize GitHub clients."""

        def _connect() -> tuple[Github, GHRepository]:
            # Retries are owned by the reconciler's policy
            client = Github(self.token, base_url=self.base_url, retry=None)
            repo = client.get_repo(f"{self.owner}/{self.repo}")
            return client, repo

        try:
            self._client, self._repo = await _run_sync(_connect)
        except GithubException as e:
            log.error("github_connect_failed", owner=self.owner, repo=self.repo, error=str(e))
            raise translate_github_error(e) from e

        if self.has_board:
            self._http = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=30.0,
            )
        log.info("github_connected", base_url=self.base_url, owner=self.owner, repo=self.repo)

    async def disconnect(self) -> None:
        """Close GitHub clients."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None
        if self._http:
            await self._http.aclose()
            self._http = None

    @property
    def repository(self) -> GHRepository:
        if self._repo is None:
            raise UnknownTrackerError("GitHub tracker is not connected")
        return self._repo

    async def list_resources(self, kind: ResourceKind) -> list[RemoteResourceRef]:
        """List labels, milestones or issues (open and closed, pull requests excluded)."""
        log.info("list_resources", kind=kind.value)
        repo = self.repository

        def _list() -> list[RemoteResourceRef]:
            if kind == ResourceKind.LABEL:
                return [self._label_ref(label) for label in repo.get_labels()]
            if kind == ResourceKind.MILESTONE:
                return [self._milestone_ref(milestone) for milestone in repo.get_milestones(state="all")]
            return [
                self._issue_ref(issue) for issue in repo.get_issues(state="all") if issue.pull_request is None
            ]

        try:
            refs = await _run_sync(_list)
        except GithubException as e:
            log.error("github_list_failed", kind=kind.value, error=str(e))
            raise translate_github_error(e, kind) from e

        if kind == ResourceKind.MILESTONE:
            self._milestone_numbers.update({ref.key: ref.number for ref in refs if ref.number is not None})
        return refs

    async def create(self, kind: ResourceKind, payload: Mapping[str, Any]) -> RemoteResourceRef:
        """Create a label, milestone or issue."""
        repo = self.repository

        if kind == ResourceKind.LABEL:
            key = payload["name"]
            log.info("create_label", name=key)

            def _create() -> RemoteResourceRef:
                label = repo.create_label(
                    name=payload["name"],
                    color=payload.get("color", "ededed"),
                    description=payload.get("description") or "",
                )
                return self._label_ref(label)

        elif kind == ResourceKind.MILESTONE:
            key = payload["title"]
            log.info("create_milestone", title=key)

            def _create() -> RemoteResourceRef:
                kwargs: dict[str, Any] = {"title": payload["title"]}
                if payload.get("description"):
                    kwargs["description"] = payload["description"]
                if payload.get("due_on"):
                    kwargs["due_on"] = payload["due_on"]
                return self._milestone_ref(repo.create_milestone(**kwargs))

        else:
            key = payload["title"]
            milestone_number = await self._milestone_number(payload.get("milestone"))
            log.info("create_issue", title=key, labels=payload.get("labels"), milestone=milestone_number)

            def _create() -> RemoteResourceRef:
                kwargs: dict[str, Any] = {
                    "title": payload["title"],
                    "body": payload.get("body", ""),
                    "labels": list(payload.get("labels") or []),
                }
                if milestone_number is not None:
                    kwargs["milestone"] = repo.get_milestone(milestone_number)
                return self._issue_ref(repo.create_issue(**kwargs))

        try:
            ref = await _run_sync(_create)
        except GithubException as e:
            log.error("github_create_failed", kind=kind.value, key=key, error=str(e))
            raise translate_github_error(e, kind, key) from e

        if kind == ResourceKind.MILESTONE and ref.number is not None:
            self._milestone_numbers[ref.key] = ref.number
        return ref

    async def update(self, ref: RemoteResourceRef, payload: Mapping[str, Any]) -> RemoteResourceRef:
        """Update an existing resource's editable fields."""
        log.info("update_resource", kind=ref.kind.value, key=ref.key)
        repo = self.repository

        def _update() -> RemoteResourceRef:
            if ref.kind == ResourceKind.LABEL:
                label = repo.get_label(ref.key)
                label.edit(
                    name=payload.get("name", label.name),
                    color=payload.get("color", label.color),
                    description=payload.get("description", label.description or ""),
                )
                return self._label_ref(label)
            if ref.kind == ResourceKind.MILESTONE:
                milestone = repo.get_milestone(ref.number)
                kwargs = {"title": payload.get("title", milestone.title)}
                if payload.get("description"):
                    kwargs["description"] = payload["description"]
                milestone.edit(**kwargs)
                return self._milestone_ref(milestone)
            issue = repo.get_issue(ref.number)
            issue.edit(**{field: payload[field] for field in ("title", "body") if field in payload})
            return self._issue_ref(issue)

        try:
            return await _run_sync(_update)
        except GithubException as e:
            log.error("github_update_failed", kind=ref.kind.value, key=ref.key, error=str(e))
            raise translate_github_error(e, ref.kind, ref.key) from e

    async def set_board_status(self, ref: RemoteResourceRef, status: BoardStatus) -> None:
        """Add the issue to the organization project and set its Status field."""
        if not self.has_board:
            raise UnknownTrackerError("No project configured for board status")
        if ref.node_id is None:
            raise UnknownTrackerError("Issue has no node id", kind=ref.kind.value, key=ref.key)

        board = await self._load_board()
        option_id = board["options"].get(status.value.lower())
        if option_id is None:
            raise UnknownTrackerError(f"Board has no '{status.value}' status option", key=ref.key)

        added = await self._graphql(ADD_ITEM_MUTATION, {"project": board["project_id"], "content": ref.node_id})
        try:
            item_id = added["addProjectV2ItemById"]["item"]["id"]
        except (KeyError, TypeError) as e:
            raise UnknownTrackerError("Malformed GraphQL response: missing project item id", key=ref.key) from e
        await self._graphql(
            SET_STATUS_MUTATION,
            {"project": board["project_id"], "item": item_id, "field": board["field_id"], "option": option_id},
        )
        log.info("board_status_set", key=ref.key, status=status.value)

    async def _load_board(self) -> dict[str, Any]:
        async with self._board_lock:
            if self._board is None:
                data = await self._graphql(PROJECT_QUERY, {"login": self.owner, "number": self.project_number})
                project = (data.get("organization") or {}).get("projectV2")
                if not project or not project.get("field"):
                    raise UnknownTrackerError(f"Project {self.project_number} or its Status field not found")
                try:
                    self._board = {
                        "project_id": project["id"],
                        "field_id": project["field"]["id"],
                        "options": {option["name"].lower(): option["id"] for option in project["field"]["options"]},
                    }
                except (KeyError, TypeError, AttributeError) as e:
                    raise UnknownTrackerError("Malformed GraphQL response: incomplete project data") from e
            return self._board

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        if self._http is None:
            raise UnknownTrackerError("GitHub tracker is not connected")

        try:
            response = await self._http.post(graphql_url(self.base_url), json={"query": query, "variables": variables})
        except httpx.HTTPError as e:
            raise UnknownTrackerError(f"GraphQL request failed: {e}") from e

        if response.status_code == 401:
            raise AuthFailedError("GraphQL request rejected", status_code=401)
        if response.status_code in (403, 429):
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(
                "GraphQL rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                status_code=response.status_code,
            )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UnknownTrackerError("GraphQL request failed", status_code=response.status_code) from e

        try:
            body = response.json()
        except ValueError as e:
            raise UnknownTrackerError("Malformed GraphQL response: body is not JSON") from e
        if not isinstance(body, dict):
            raise UnknownTrackerError("Malformed GraphQL response: expected a JSON object")

        errors = body.get("errors")
        if errors:
            if any(error.get("type") == "RATE_LIMITED" for error in errors):
                raise RateLimitedError("GraphQL rate limit exceeded")
            raise UnknownTrackerError(f"GraphQL error: {errors[0].get('message', errors[0])}")
        return body.get("data") or {}

    async def _milestone_number(self, title: str | None) -> int | None:
        if not title:
            return None
        if title not in self._milestone_numbers:
            await self.list_resources(ResourceKind.MILESTONE)
        number = self._milestone_numbers.get(title)
        if number is None:
            log.warning("milestone_not_found", title=title)
        return number

    @staticmethod
    def _label_ref(label: Any) -> RemoteResourceRef:
        return RemoteResourceRef(
            kind=ResourceKind.LABEL,
            key=label.name,
            remote_id=getattr(label, "id", None),
            node_id=getattr(label, "node_id", None),
            url=getattr(label, "url", None),
        )

    @staticmethod
    def _milestone_ref(milestone: Any) -> RemoteResourceRef:
        return RemoteResourceRef(
            kind=ResourceKind.MILESTONE,
            key=milestone.title,
            remote_id=milestone.id,
            number=milestone.number,
            url=getattr(milestone, "html_url", None),
        )

    @staticmethod
    def _issue_ref(issue: Any) -> RemoteResourceRef:
        return RemoteResourceRef(
            kind=ResourceKind.ISSUE,
            key=issue.title,
            remote_id=issue.id,
            number=issue.number,
            node_id=issue.node_id,
            url=issue.html_url,
        )

"""
Plan graph models.

A parsed planning document becomes an immutable tree of Plan -> Sprint ->
(Task, Gate). Every model is a frozen dataclass built from tuples and
frozensets, so two parses of the same text compare equal and nothing
downstream can mutate the graph.

Identifiers:
    Task: ``"<sprint>.<index>"`` (e.g. ``"0.1"``)
    Gate: ``"<sprint>.G"`` (e.g. ``"0.G"``)

Example:
    Walking every node of a plan in document order::

        for sprint in plan.sprints:
            for task in sprint.tasks:
                print(task.id, task.name, sorted(task.depends_on))
            print(sprint.gate.id, sorted(sprint.gate.depends_on))
"""

from collections.abc import Iterator
from dataclasses import dataclass, field


def task_id(sprint: int, index: int) -> str:
    """Build the identifier of a task."""
    return f"{sprint}.{index}"


def gate_id(sprint: int) -> str:
    """Build the identifier of a sprint's gate."""
    return f"{sprint}.G"


@dataclass(frozen=True)
class AgentAssignment:
    """Agent capability mapped onto a task by the plan's agent table."""

    agent: str
    skill_path: str | None = None


@dataclass(frozen=True)
class Task:
    """A unit of work inside a sprint."""

    id: str
    """Identifier ``"<sprint>.<index>"``, unique within the plan."""

    sprint: int
    """Number of the sprint this task belongs to."""

    index: int
    """Position declared in the document (list number or explicit id)."""

    name: str
    description: str = ""
    steps: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()

    agent: str | None = None
    """Agent capability tag, if the document assigns one."""

    skill_path: str | None = None
    """Path of the skill reference handed to the agent, if any."""

    depends_on: frozenset[str] = field(default_factory=frozenset)
    """Task/Gate identifiers this task depends on."""

    blocks: frozenset[str] = field(default_factory=frozenset)
    """Task/Gate identifiers that depend on this task."""


@dataclass(frozen=True)
class Gate:
    """Synthetic terminal node verifying a sprint's completion.

    Depends on every task of its sprint and blocks the first task of the
    next sprint, if there is one.
    """

    id: str
    sprint: int
    requirements: tuple[str, ...] = ()
    depends_on: frozenset[str] = field(default_factory=frozenset)
    blocks: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Sprint:
    """A numbered sprint with its tasks, acceptance criteria and gate."""

    number: int
    name: str
    gate: Gate
    description: str = ""
    duration: str | None = None
    tasks: tuple[Task, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()


@dataclass(frozen=True)
class Plan:
    """Root aggregate of a parsed planning document."""

    title: str
    sprints: tuple[Sprint, ...] = ()
    warnings: tuple[str, ...] = ()

    def sprint(self, number: int) -> Sprint:
        """Get a sprint by number.

        Raises:
            KeyError: If the plan has no such sprint
        """
        for sprint in self.sprints:
            if sprint.number == number:
                return sprint
        raise KeyError(f"Sprint {number} not found")

    def tasks(self) -> Iterator[Task]:
        """Iterate over every task in document order."""
        for sprint in self.sprints:
            yield from sprint.tasks

    def gates(self) -> Iterator[Gate]:
        """Iterate over every gate in sprint order."""
        for sprint in self.sprints:
            yield sprint.gate

    def nodes(self) -> Iterator[Task | Gate]:
        """Iterate over tasks and gates, each sprint's gate after its tasks."""
        for sprint in self.sprints:
            yield from sprint.tasks
            yield sprint.gate

    def node(self, node_id: str) -> Task | Gate:
        """Look up a task or gate by identifier.

        Raises:
            KeyError: If no node has this identifier
        """
        for candidate in self.nodes():
            if candidate.id == node_id:
                return candidate
        raise KeyError(f"Node {node_id} not found")

    @property
    def terminal_gate(self) -> Gate | None:
        """The last sprint's gate, or None for an empty plan."""
        if not self.sprints:
            return None
        return self.sprints[-1].gate

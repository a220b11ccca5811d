"""Desired-resource derivation.

Maps a plan graph onto the set of tracker resources it requires, each
identified by a deterministic natural key:

    =================  ==================================
    Resource           Natural key
    =================  ==================================
    Sprint label       ``sprint-<n>``
    Category label     configured name (``task``, ``gate``)
    Milestone          ``Sprint <n>: <name>``
    Task issue         ``[<s>.<i>] <task name>``
    Gate issue         ``[<s>.G] Sprint <s> Gate: <name>``
    =================  ==================================

The same plan always yields the same keys in the same order, which is what
makes re-running a synchronization idempotent.
"""

from collections.abc import Sequence
from typing import Any

from plansync.config.settings import SprintDefinition, SyncOptions
from plansync.enums import ResourceKind
from plansync.models.plan import Gate, Plan, Sprint, Task
from plansync.models.resources import DesiredResource
from plansync.planning.dependency import DependencyGraph, resolve
from plansync.rendering.engine import IssueBodyRenderer

SPRINT_LABEL_COLOR = "1d76db"
CATEGORY_LABEL_COLORS = ("0e8a16", "5319e7")


def sprint_label_name(number: int) -> str:
    return f"sprint-{number}"


def milestone_title(sprint: Sprint) -> str:
    return f"Sprint {sprint.number}: {sprint.name}"


def task_issue_title(task: Task) -> str:
    return f"[{task.id}] {task.name}"


def gate_issue_title(sprint: Sprint) -> str:
    return f"[{sprint.gate.id}] Sprint {sprint.number} Gate: {sprint.name}"


def _task_context(task: Task, sprint: Sprint) -> dict[str, Any]:
    return {
        "node_type": "task",
        "id": task.id,
        "name": task.name,
        "sprint": sprint.number,
        "sprint_name": sprint.name,
        "description": task.description,
        "steps": list(task.steps),
        "acceptance_criteria": list(task.acceptance_criteria),
        "agent": task.agent,
        "skill_path": task.skill_path,
        "depends_on": sorted(task.depends_on),
        "blocks": sorted(task.blocks),
    }


def _gate_context(gate: Gate, sprint: Sprint) -> dict[str, Any]:
    return {
        "node_type": "gate",
        "id": gate.id,
        "sprint": sprint.number,
        "sprint_name": sprint.name,
        "requirements": list(gate.requirements),
        "acceptance_criteria": list(sprint.acceptance_criteria),
        "depends_on": sorted(gate.depends_on),
        "blocks": sorted(gate.blocks),
    }


def derive_desired_resources(
    plan: Plan,
    graph: DependencyGraph | None = None,
    options: SyncOptions | None = None,
    sprint_definitions: Sequence[SprintDefinition] = (),
    renderer: IssueBodyRenderer | None = None,
) -> list[DesiredResource]:
    """Derive every resource the plan needs, in reporting order.

    Order: category labels, sprint labels, milestones, then issues in
    topological order of the dependency graph.

    Args:
        plan: Parsed plan
        graph: Resolved dependency graph (resolved from the plan when omitted)
        options: Sync options providing the category labels
        sprint_definitions: Optional milestone metadata per sprint
        renderer: Issue body renderer

    Returns:
        Desired resources with unique natural keys
    """
    options = options or SyncOptions()
    graph = graph or resolve(plan)
    renderer = renderer or IssueBodyRenderer()
    definitions = {definition.number: definition for definition in sprint_definitions}

    resources: list[DesiredResource] = []

    for label, color in zip(options.category_labels, CATEGORY_LABEL_COLORS, strict=False):
        resources.append(
            DesiredResource(
                kind=ResourceKind.LABEL,
                key=label,
                payload={"name": label, "color": color, "description": f"Plan {label} issues"},
            )
        )

    for sprint in plan.sprints:
        name = sprint_label_name(sprint.number)
        resources.append(
            DesiredResource(
                kind=ResourceKind.LABEL,
                key=name,
                sprint=sprint.number,
                payload={
                    "name": name,
                    "color": SPRINT_LABEL_COLOR,
                    "description": f"Sprint {sprint.number}: {sprint.name}",
                },
            )
        )

    for sprint in plan.sprints:
        definition = definitions.get(sprint.number)
        description = sprint.description
        if definition and definition.description:
            description = definition.description
        title = milestone_title(sprint)
        resources.append(
            DesiredResource(
                kind=ResourceKind.MILESTONE,
                key=title,
                sprint=sprint.number,
                payload={
                    "title": title,
                    "description": description,
                    "due_on": definition.due_on if definition else None,
                },
            )
        )

    sprints = {sprint.number: sprint for sprint in plan.sprints}
    for node_id in graph.topological_order():
        node = plan.node(node_id)
        sprint = sprints[node.sprint]
        labels = [sprint_label_name(sprint.number)]

        if isinstance(node, Task):
            title = task_issue_title(node)
            context = _task_context(node, sprint)
            if options.task_label:
                labels.append(options.task_label)
        else:
            title = gate_issue_title(sprint)
            context = _gate_context(node, sprint)
            if options.gate_label:
                labels.append(options.gate_label)

        resources.append(
            DesiredResource(
                kind=ResourceKind.ISSUE,
                key=title,
                sprint=sprint.number,
                node_id=node_id,
                payload={
                    "title": title,
                    "body": renderer.render(context),
                    "labels": labels,
                    "milestone": milestone_title(sprint),
                    "context": context,
                },
            )
        )

    return resources

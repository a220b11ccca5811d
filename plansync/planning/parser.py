"""Planning document parser.

Turns a semi-structured Markdown planning document into an immutable,
validated Plan graph.

Recognized structure:
    Sprint headers:
        - ``## Sprint 0: Foundation (1 week)``
        - ``Sprint 1 - Core features``

    Tasks (inside a sprint):
        - ``1. **Set up repository**: optional inline description``
        - ``### Task 0.2: Configure CI``

    Task content:
        - bullet lines and indented numbered lines are steps
        - ``Agent: backend-dev`` / ``Skill: skills/backend.md`` lines
        - anything else is description text

    Labeled sections holding checkbox lines (``- [ ] criterion``):
        - ``**Acceptance Criteria:**`` / ``#### Acceptance Criteria``
        - ``**Sprint Gate:**`` / ``Gate Criteria:`` / ``Quality Gate:``

    Agent mapping table (anywhere in the document)::

        | Sprint | Task | Agent       | Skill              |
        |--------|------|-------------|--------------------|
        | 0      | 1    | backend-dev | skills/backend.md  |

Validation happens after extraction and reports every violation at once
through a single PlanParseError. Non-fatal findings are kept on
``Plan.warnings``.

Key Exports:
    PlanParser: Stateless parser class.
    parse_plan: Convenience wrapper around ``PlanParser().parse``.

Example:
    >>> from plansync.planning.parser import parse_plan
    >>> plan = parse_plan(document_text)
    >>> [sprint.number for sprint in plan.sprints]
    [0, 1, 2]
    >>> plan.sprint(1).tasks[0].depends_on
    frozenset({'0.G'})

Thread Safety:
    PlanParser keeps all per-parse state in local builders, so one instance
    can be shared freely.
"""

import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from plansync.exceptions import PlanParseError
from plansync.models.plan import AgentAssignment, Gate, Plan, Sprint, Task, gate_id, task_id

log = structlog.get_logger(__name__)

DEFAULT_TITLE = "Untitled Plan"

# Headings are matched after bold markers have been removed from the line
HEADING_PATTERN = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<text>.*?)\s*#*\s*$")

# Sprint 0: Foundation (2 weeks)
SPRINT_PATTERN = re.compile(
    r"^Sprint\s+(?P<number>\d+)\s*[:\-–—]\s*(?P<name>.+?)\s*$",
    re.IGNORECASE,
)
DURATION_PATTERN = re.compile(r"^(?P<name>.*?)\s*\((?P<duration>[^()]+)\)$")

# Task 0.1: Set up repository
TASK_HEADER_PATTERN = re.compile(
    r"^Task\s+(?P<sprint>\d+)\.(?P<index>\d+)\s*[:\-–—]\s*(?P<name>.+?)\s*$",
    re.IGNORECASE,
)

# 1. **Set up repository**: description
NUMBERED_TASK_PATTERN = re.compile(
    r"^(?P<indent>\s*)(?P<index>\d+)[.)]\s+\*\*(?P<name>[^*]+?)\*\*\s*(?:[:\-–—]\s*(?P<rest>.*))?$"
)

LABEL_PATTERN = re.compile(
    r"^(?:Sprint\s+\d+\s+)?(?P<label>acceptance\s+criteria|sprint\s+gate|gate\s+criteria|"
    r"gate\s+requirements|quality\s+gate|gate|steps|description)\s*(?::\s*(?P<rest>.*))?$",
    re.IGNORECASE,
)

CHECKBOX_PATTERN = re.compile(r"^\s*[-*+]\s*\[(?P<mark>[ xX])\]\s*(?P<text>.+?)\s*$")
BULLET_PATTERN = re.compile(r"^\s*[-*+]\s+(?P<text>.+?)\s*$")
NUMBERED_STEP_PATTERN = re.compile(r"^\s*\d+[.)]\s+(?P<text>.+?)\s*$")
AGENT_PATTERN = re.compile(r"^\s*(?:[-*+]\s*)?agent\s*:\s*(?P<value>.+?)\s*$", re.IGNORECASE)
SKILL_PATTERN = re.compile(r"^\s*(?:[-*+]\s*)?skill(?:\s*path)?\s*:\s*(?P<value>.+?)\s*$", re.IGNORECASE)
TABLE_SEPARATOR_PATTERN = re.compile(r"^\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?$")

SECTION_ACCEPTANCE = "acceptance"
SECTION_GATE = "gate"
SECTION_STEPS = "steps"
SECTION_DESCRIPTION = "description"


def _section_for_label(label: str) -> str:
    label = " ".join(label.lower().split())
    if label == "acceptance criteria":
        return SECTION_ACCEPTANCE
    if label == "steps":
        return SECTION_STEPS
    if label == "description":
        return SECTION_DESCRIPTION
    return SECTION_GATE


def _unique(items: list[str]) -> tuple[str, ...]:
    """Drop duplicates while keeping first-seen order."""
    return tuple(dict.fromkeys(items))


def _gaps(numbers: Iterable[int]) -> list[str]:
    """Numbers absent from 0..max(numbers), as single values or "a-b" runs."""
    gaps: list[str] = []
    expected = 0
    for number in sorted(set(numbers)):
        if number > expected:
            last = number - 1
            gaps.append(str(expected) if last == expected else f"{expected}-{last}")
        expected = number + 1
    return gaps


@dataclass
class _TaskDraft:
    sprint: int
    index: int
    name: str
    lineno: int
    heading_level: int | None = None
    description: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    agent: str | None = None
    skill_path: str | None = None

    @property
    def id(self) -> str:
        return task_id(self.sprint, self.index)


@dataclass
class _SprintDraft:
    number: int
    name: str
    lineno: int
    duration: str | None = None
    description: list[str] = field(default_factory=list)
    tasks: list[_TaskDraft] = field(default_factory=list)
    acceptance: list[str] = field(default_factory=list)
    gate: list[str] = field(default_factory=list)


@dataclass
class _ParseState:
    title: str | None = None
    sprints: list[_SprintDraft] = field(default_factory=list)
    sprint: _SprintDraft | None = None
    task: _TaskDraft | None = None
    section: str | None = None
    section_owner: str | None = None  # "task" or "sprint"
    table_columns: dict[str, int] | None = None
    in_table: bool = False
    assignments: dict[tuple[int, int], tuple[AgentAssignment, int]] = field(default_factory=dict)
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def close_task(self) -> None:
        self.task = None
        self.section = None
        self.section_owner = None


class PlanParser:
    """Parser for Markdown planning documents.

    Example:
        >>> parser = PlanParser()
        >>> plan = parser.parse(Path("PLAN.md").read_text())
        >>> plan.title
        'Payments Platform'
    """

    def parse(self, text: str) -> Plan:
        """Parse and validate a planning document.

        Args:
            text: Raw document text

        Returns:
            Immutable Plan with implicit dependencies applied

        Raises:
            PlanParseError: With every violation found, if the plan is invalid
        """
        state = _ParseState()

        for lineno, raw_line in enumerate(text.splitlines(), start=1):
            self._consume_line(state, lineno, raw_line.rstrip())

        self._validate(state)
        if state.violations:
            log.warning(
                "plan_parse_failed",
                violations=len(state.violations),
                warnings=len(state.warnings),
            )
            raise PlanParseError(state.violations, state.warnings)

        plan = self._build(state)
        log.info(
            "plan_parsed",
            title=plan.title,
            sprints=len(plan.sprints),
            tasks=sum(len(sprint.tasks) for sprint in plan.sprints),
            warnings=len(plan.warnings),
        )
        return plan

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _consume_line(self, state: _ParseState, lineno: int, line: str) -> None:
        if not line.strip():
            state.in_table = False
            state.table_columns = None
            return

        if line.lstrip().startswith("|"):
            self._consume_table_row(state, lineno, line)
            return
        state.in_table = False
        state.table_columns = None

        plain = line.replace("**", "")
        heading = HEADING_PATTERN.match(plain)
        level = len(heading.group("hashes")) if heading else None
        text = heading.group("text") if heading else plain.strip()

        sprint_match = SPRINT_PATTERN.match(text)
        if sprint_match:
            self._start_sprint(state, lineno, sprint_match)
            return

        task_match = TASK_HEADER_PATTERN.match(text)
        if task_match:
            self._start_explicit_task(state, lineno, task_match, level)
            return

        numbered = NUMBERED_TASK_PATTERN.match(line)
        if numbered and len(numbered.group("indent").expandtabs(4)) < 2 and not heading:
            self._start_numbered_task(state, lineno, numbered)
            return

        if heading and level == 1 and state.title is None and state.sprint is None:
            state.title = text
            return

        label = LABEL_PATTERN.match(text)
        if label:
            self._open_section(state, label, level)
            return

        if heading:
            if state.task is not None and (state.task.heading_level is None or level <= state.task.heading_level):
                state.close_task()
            state.section = None
            state.section_owner = None
            return

        self._consume_content(state, line)

    def _start_sprint(self, state: _ParseState, lineno: int, match: re.Match[str]) -> None:
        name = match.group("name").strip()
        duration = None
        duration_match = DURATION_PATTERN.match(name)
        if duration_match and duration_match.group("name"):
            name = duration_match.group("name").strip()
            duration = duration_match.group("duration").strip()

        sprint = _SprintDraft(number=int(match.group("number")), name=name, lineno=lineno, duration=duration)
        state.sprints.append(sprint)
        state.sprint = sprint
        state.close_task()

    def _start_explicit_task(
        self,
        state: _ParseState,
        lineno: int,
        match: re.Match[str],
        level: int | None,
    ) -> None:
        declared_sprint = int(match.group("sprint"))
        index = int(match.group("index"))
        name = match.group("name").strip()

        if state.sprint is None:
            state.violations.append(f"Line {lineno}: Task {declared_sprint}.{index} appears outside of any sprint")
            state.close_task()
            return
        if declared_sprint != state.sprint.number:
            state.violations.append(
                f"Line {lineno}: Task {declared_sprint}.{index} is declared under Sprint {state.sprint.number}"
            )

        self._add_task(
            state,
            _TaskDraft(sprint=state.sprint.number, index=index, name=name, lineno=lineno, heading_level=level),
        )

    def _start_numbered_task(self, state: _ParseState, lineno: int, match: re.Match[str]) -> None:
        index = int(match.group("index"))
        name = match.group("name").strip().rstrip(":").strip()

        if state.sprint is None:
            state.violations.append(f"Line {lineno}: Task '{name}' appears outside of any sprint")
            state.close_task()
            return

        draft = _TaskDraft(sprint=state.sprint.number, index=index, name=name, lineno=lineno)
        rest = (match.group("rest") or "").strip()
        if rest:
            draft.description.append(rest)
        self._add_task(state, draft)

    def _add_task(self, state: _ParseState, draft: _TaskDraft) -> None:
        assert state.sprint is not None
        state.sprint.tasks.append(draft)
        state.task = draft
        state.section = None
        state.section_owner = None

    def _open_section(self, state: _ParseState, match: re.Match[str], level: int | None) -> None:
        section = _section_for_label(match.group("label"))

        if level is not None:
            # A heading label belongs to the open task only when it nests below the task heading
            task = state.task
            if task is None or task.heading_level is None or level <= task.heading_level:
                state.close_task()

        if section in (SECTION_STEPS, SECTION_DESCRIPTION) and state.task is None:
            # Steps and descriptions only mean something inside a task
            section = SECTION_DESCRIPTION

        state.section = section
        state.section_owner = "task" if state.task is not None else "sprint"

        rest = (match.group("rest") or "").strip()
        if rest:
            self._consume_content(state, rest)

    def _consume_content(self, state: _ParseState, line: str) -> None:
        checkbox = CHECKBOX_PATTERN.match(line)
        bullet = BULLET_PATTERN.match(line)

        if state.section in (SECTION_ACCEPTANCE, SECTION_GATE) and (checkbox or bullet):
            item = (checkbox or bullet).group("text")  # type: ignore[union-attr]
            self._add_criterion(state, item)
            return

        task = state.task
        if task is not None:
            plain = line.replace("**", "")
            agent = AGENT_PATTERN.match(plain)
            if agent:
                task.agent = agent.group("value").strip("`").strip()
                return
            skill = SKILL_PATTERN.match(plain)
            if skill:
                task.skill_path = skill.group("value").strip("`").strip()
                return

            if state.section == SECTION_DESCRIPTION:
                task.description.append(line.strip())
                return

            step = checkbox or bullet or NUMBERED_STEP_PATTERN.match(line)
            if step:
                task.steps.append(step.group("text"))
            else:
                task.description.append(line.strip())
            return

        if state.sprint is not None:
            state.sprint.description.append(line.strip())

    def _add_criterion(self, state: _ParseState, item: str) -> None:
        if state.section_owner == "task" and state.task is not None:
            if state.section == SECTION_ACCEPTANCE:
                state.task.acceptance.append(item)
            else:
                # Gate requirements written inside a task still belong to the sprint gate
                assert state.sprint is not None
                state.sprint.gate.append(item)
            return

        if state.sprint is None:
            return
        if state.section == SECTION_ACCEPTANCE:
            state.sprint.acceptance.append(item)
        else:
            state.sprint.gate.append(item)

    def _consume_table_row(self, state: _ParseState, lineno: int, line: str) -> None:
        stripped = line.strip()
        if TABLE_SEPARATOR_PATTERN.match(stripped):
            return

        cells = [cell.strip() for cell in stripped.strip("|").split("|")]

        if not state.in_table:
            state.in_table = True
            state.table_columns = self._agent_table_columns(cells)
            return

        columns = state.table_columns
        if columns is None:
            return

        try:
            task_cell = cells[columns["task"]].strip("`").strip()
            agent = cells[columns["agent"]].strip("`").strip()
            if "." in task_cell:
                sprint_part, index_part = task_cell.split(".", 1)
                sprint_number, index = int(sprint_part), int(index_part)
            else:
                sprint_number = int(cells[columns["sprint"]].strip("`").strip())
                index = int(task_cell)
        except (IndexError, ValueError):
            state.warnings.append(f"Line {lineno}: ignoring malformed agent table row")
            return

        if not agent:
            return

        skill_path = None
        if "skill" in columns and columns["skill"] < len(cells):
            skill_path = cells[columns["skill"]].strip("`").strip() or None

        state.assignments[(sprint_number, index)] = (AgentAssignment(agent=agent, skill_path=skill_path), lineno)

    @staticmethod
    def _agent_table_columns(header: list[str]) -> dict[str, int] | None:
        columns: dict[str, int] = {}
        for position, cell in enumerate(header):
            name = cell.lower()
            if "sprint" in name and "sprint" not in columns:
                columns["sprint"] = position
            elif "task" in name and "task" not in columns:
                columns["task"] = position
            elif "agent" in name and "agent" not in columns:
                columns["agent"] = position
            elif "skill" in name and "skill" not in columns:
                columns["skill"] = position

        if {"sprint", "task", "agent"} <= columns.keys():
            return columns
        return None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, state: _ParseState) -> None:
        if not state.sprints:
            state.violations.append("No sprints found; expected headers like 'Sprint 0: <name>'")
            return

        lines_by_number: dict[int, list[int]] = defaultdict(list)
        for sprint in state.sprints:
            lines_by_number[sprint.number].append(sprint.lineno)

        for number in sorted(lines_by_number):
            lines = lines_by_number[number]
            if len(lines) > 1:
                state.violations.append(
                    f"Duplicate sprint number {number} (lines {', '.join(str(line) for line in lines)})"
                )

        missing = _gaps(lines_by_number)
        if missing:
            state.violations.append(
                f"Sprint numbers must form a contiguous range starting at 0; missing: {', '.join(missing)}"
            )

        task_lines: dict[str, list[int]] = defaultdict(list)
        for sprint in state.sprints:
            for task in sprint.tasks:
                task_lines[task.id].append(task.lineno)

        for identifier, lines in sorted(task_lines.items()):
            if len(lines) > 1:
                listed = ", ".join(str(line) for line in lines)
                state.violations.append(f"Duplicate task identifier {identifier} (lines {listed})")

        for sprint in state.sprints:
            if not sprint.tasks:
                state.warnings.append(f"Sprint {sprint.number} has no tasks")
            if not sprint.acceptance:
                state.warnings.append(f"Sprint {sprint.number} has no acceptance criteria")
            if not sprint.gate:
                state.warnings.append(f"Sprint {sprint.number} has no gate requirements")

        for (sprint_number, index), (_assignment, lineno) in sorted(state.assignments.items()):
            if task_id(sprint_number, index) not in task_lines:
                state.warnings.append(
                    f"Line {lineno}: agent table references unknown task {task_id(sprint_number, index)}"
                )

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def _build(self, state: _ParseState) -> Plan:
        drafts = sorted(state.sprints, key=lambda draft: draft.number)

        depends_on: dict[str, set[str]] = {}
        order: list[str] = []
        for position, draft in enumerate(drafts):
            previous_gate = gate_id(drafts[position - 1].number) if position > 0 else None
            for task_position, task in enumerate(draft.tasks):
                deps: set[str] = set()
                if task_position > 0:
                    deps.add(draft.tasks[task_position - 1].id)
                elif previous_gate is not None:
                    deps.add(previous_gate)
                depends_on[task.id] = deps
                order.append(task.id)

            gate_deps = {task.id for task in draft.tasks}
            if not gate_deps and previous_gate is not None:
                # An empty sprint still keeps the sprint chain ordered
                gate_deps.add(previous_gate)
            depends_on[gate_id(draft.number)] = gate_deps
            order.append(gate_id(draft.number))

        blocks: dict[str, set[str]] = {node: set() for node in order}
        for node, deps in depends_on.items():
            for dependency in deps:
                blocks[dependency].add(node)

        sprints = []
        for draft in drafts:
            tasks = []
            for task in draft.tasks:
                assignment = state.assignments.get((task.sprint, task.index))
                agent = assignment[0].agent if assignment else task.agent
                skill_path = assignment[0].skill_path if assignment and assignment[0].skill_path else task.skill_path
                tasks.append(
                    Task(
                        id=task.id,
                        sprint=task.sprint,
                        index=task.index,
                        name=task.name,
                        description="\n".join(task.description),
                        steps=tuple(task.steps),
                        acceptance_criteria=_unique(task.acceptance),
                        agent=agent,
                        skill_path=skill_path,
                        depends_on=frozenset(depends_on[task.id]),
                        blocks=frozenset(blocks[task.id]),
                    )
                )

            identifier = gate_id(draft.number)
            gate = Gate(
                id=identifier,
                sprint=draft.number,
                requirements=_unique(draft.gate),
                depends_on=frozenset(depends_on[identifier]),
                blocks=frozenset(blocks[identifier]),
            )
            sprints.append(
                Sprint(
                    number=draft.number,
                    name=draft.name,
                    gate=gate,
                    description="\n".join(draft.description),
                    duration=draft.duration,
                    tasks=tuple(tasks),
                    acceptance_criteria=_unique(draft.acceptance),
                )
            )

        return Plan(
            title=state.title or DEFAULT_TITLE,
            sprints=tuple(sprints),
            warnings=tuple(state.warnings),
        )


def parse_plan(text: str) -> Plan:
    """Parse a planning document. See PlanParser.parse."""
    return PlanParser().parse(text)


def parse_plan_file(path: str | Path) -> Plan:
    """Read and parse a planning document from disk.

    Raises:
        PlanParseError: If the document is invalid
        OSError: If the file cannot be read
    """
    return parse_plan(Path(path).read_text(encoding="utf-8"))

"""Issue body rendering.

Issue bodies are rendered from Jinja2 templates in a sandboxed environment
with StrictUndefined, so a missing context value fails loudly instead of
producing an empty section.

Cross-references to other plan nodes are rendered twice: once at creation
time, when remote issue numbers may not be known yet, and again in the
reconciler's finishing pass with every number collected during the run.

Example:
    >>> renderer = IssueBodyRenderer()
    >>> body = renderer.render(context)                    # "Depends on: Task 0.1"
    >>> body = renderer.render(context, {"0.1": 12})       # "Depends on: #12 (Task 0.1)"
"""

from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from plansync.exceptions import PlanSyncError

TASK_TEMPLATE = """\
## Task {{ id }}: {{ name }}

**Sprint:** {{ sprint }} ({{ sprint_name }})
{% if agent %}
**Agent:** {{ agent }}
{% endif %}
{% if skill_path %}
**Skill:** `{{ skill_path }}`
{% endif %}
{% if description %}

{{ description }}
{% endif %}
{% if steps %}

### Steps
{% for step in steps %}
{{ loop.index }}. {{ step }}
{% endfor %}
{% endif %}
{% if acceptance_criteria %}

### Acceptance Criteria
{% for criterion in acceptance_criteria %}
- [ ] {{ criterion }}
{% endfor %}
{% endif %}

### Dependencies
**Depends on:** {{ depends_on_links | join(", ") if depends_on_links else "none" }}
**Blocks:** {{ blocks_links | join(", ") if blocks_links else "none" }}
"""

GATE_TEMPLATE = """\
## Sprint {{ sprint }} Gate: {{ sprint_name }}

Verification that every task of Sprint {{ sprint }} is complete.
{% if requirements %}

### Gate Requirements
{% for requirement in requirements %}
- [ ] {{ requirement }}
{% endfor %}
{% endif %}
{% if acceptance_criteria %}

### Sprint Acceptance Criteria
{% for criterion in acceptance_criteria %}
- [ ] {{ criterion }}
{% endfor %}
{% endif %}

### Dependencies
**Depends on:** {{ depends_on_links | join(", ") if depends_on_links else "none" }}
**Blocks:** {{ blocks_links | join(", ") if blocks_links else "none" }}
"""


def describe_node(node_id: str) -> str:
    """Human-readable name of a plan node identifier."""
    if node_id.endswith(".G"):
        return f"Sprint {node_id[:-2]} Gate"
    return f"Task {node_id}"


class IssueBodyRenderer:
    """Render task and gate issue bodies.

    Attributes:
        env: Sandboxed Jinja2 environment holding both templates
    """

    def __init__(self) -> None:
        self.env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._templates = {
            "task": self.env.from_string(TASK_TEMPLATE),
            "gate": self.env.from_string(GATE_TEMPLATE),
        }

    def render(self, context: Mapping[str, Any], references: Mapping[str, int] | None = None) -> str:
        """Render an issue body.

        Args:
            context: Template context; ``context["node_type"]`` selects the template
            references: Known issue numbers by plan node identifier

        Returns:
            Rendered Markdown body

        Raises:
            PlanSyncError: If the context is incomplete or the template fails
        """
        known = dict(references or {})

        def node_link(node_id: str) -> str:
            number = known.get(node_id)
            if number is None:
                return describe_node(node_id)
            return f"#{number} ({describe_node(node_id)})"

        try:
            template = self._templates[context["node_type"]]
        except KeyError as e:
            raise PlanSyncError(f"Unknown issue template for context: {context.get('node_type')!r}") from e

        try:
            return template.render(
                **context,
                depends_on_links=[node_link(node_id) for node_id in context["depends_on"]],
                blocks_links=[node_link(node_id) for node_id in context["blocks"]],
            )
        except (KeyError, TemplateError) as e:
            raise PlanSyncError(f"Failed to render issue body for {context.get('id')}: {e}") from e

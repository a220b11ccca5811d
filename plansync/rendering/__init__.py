"""Issue body rendering."""

from plansync.rendering.engine import IssueBodyRenderer, describe_node

__all__ = ["IssueBodyRenderer", "describe_node"]

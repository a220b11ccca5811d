"""Plan parsing, dependency resolution and desired-resource derivation."""

from plansync.planning.dependency import DependencyGraph, resolve
from plansync.planning.desired import derive_desired_resources
from plansync.planning.parser import PlanParser, parse_plan, parse_plan_file

__all__ = [
    "DependencyGraph",
    "PlanParser",
    "derive_desired_resources",
    "parse_plan",
    "parse_plan_file",
    "resolve",
]

"""Plan graph and synchronization run models."""

from plansync.models.plan import AgentAssignment, Gate, Plan, Sprint, Task, gate_id, task_id
from plansync.models.resources import (
    DesiredResource,
    NaturalKey,
    ReconciliationResult,
    RemoteResourceRef,
    SyncRun,
)

__all__ = [
    "AgentAssignment",
    "DesiredResource",
    "Gate",
    "NaturalKey",
    "Plan",
    "ReconciliationResult",
    "RemoteResourceRef",
    "Sprint",
    "SyncRun",
    "Task",
    "gate_id",
    "task_id",
]

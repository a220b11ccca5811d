"""Synchronization engine: remote snapshot, worker pools and reconciler."""

from plansync.engine.reconciler import Reconciler, ResourceStateMachine, sync_plan, synchronize
from plansync.engine.snapshot import RemoteSnapshot, fetch_existing
from plansync.engine.worker_pool import WorkerPool, WorkUnit, run_partitioned

__all__ = [
    "Reconciler",
    "RemoteSnapshot",
    "ResourceStateMachine",
    "WorkUnit",
    "WorkerPool",
    "fetch_existing",
    "run_partitioned",
    "sync_plan",
    "synchronize",
]

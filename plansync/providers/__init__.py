"""Tracker providers."""

from plansync.providers.base import TrackerClient
from plansync.providers.factory import create_tracker
from plansync.providers.memory import InMemoryTracker

__all__ = ["InMemoryTracker", "TrackerClient", "create_tracker"]

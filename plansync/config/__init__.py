"""Configuration for plan-sync runs."""

from plansync.config.settings import SprintDefinition, SyncOptions, SyncSettings, TrackerConfig

__all__ = ["SprintDefinition", "SyncOptions", "SyncSettings", "TrackerConfig"]

"""plan-sync: idempotent synchronization of sprint plans into issue trackers."""

__version__ = "0.1.0"

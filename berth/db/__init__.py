"""Persistence layer."""

from berth.db.snapshot import SnapshotData, SnapshotFile

__all__ = ["SnapshotData", "SnapshotFile"]

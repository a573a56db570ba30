"""Auto-recovery and file sync."""

from berth.managers.recovery.recovery import RecoveryController

__all__ = ["RecoveryController"]

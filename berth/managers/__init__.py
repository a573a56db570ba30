"""Managers - session, shell, web preview and recovery orchestration."""

"""Command execution channel."""

from berth.managers.shell.channel import CommandChannel, CommandResult

__all__ = ["CommandChannel", "CommandResult"]

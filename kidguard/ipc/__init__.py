"""Inbound command channel."""

from kidguard.ipc.command_server import CommandConfig, CommandServer, send_command

__all__ = ["CommandConfig", "CommandServer", "send_command"]

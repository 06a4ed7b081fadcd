"""
Exception taxonomy for step execution.

Configuration errors are raised before anything is spawned and are never
retried. Command failures carry the captured result of the last attempt.
The executor turns all of them into a failure event plus a checkpoint.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from lxcmanager.execution.models import CommandResult


class ExecutionError(Exception):
    """Base class for errors that stop a pipeline."""


class ConfigurationError(ExecutionError):
    """A step cannot be dispatched (missing vm_id, unknown target kind)."""


class HostDiscoveryError(ConfigurationError):
    """A ``host:<name>`` target could not be located or verified."""

    def __init__(self, hostname: str, reason: str) -> None:
        self.hostname = hostname
        self.reason = reason
        super().__init__(f"Host discovery failed for '{hostname}': {reason}")


class CommandFailedError(ExecutionError):
    """A command exited with a non-zero exit code."""

    def __init__(self, result: "CommandResult", context: str = "") -> None:
        self.result = result
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = []
        if self.context:
            parts.append(self.context)
        parts.append(f"Exit code: {self.result.exit_code}")
        if self.result.stderr:
            parts.append(f"Error: {self.result.stderr.strip()}")
        return "\n".join(parts)


class ConnectionFailedError(CommandFailedError):
    """Connection-level failures persisted through every retry."""


class CommandTimeoutError(CommandFailedError):
    """An attempt did not finish within its timeout."""


class OutputParseError(ExecutionError):
    """Command stdout is not valid JSON or matches no output shape."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        self.raw = raw
        super().__init__(message)

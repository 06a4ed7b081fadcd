"""
Checkpoint file management for resumable runs.

The executor only produces :class:`RestartInfo` values; persisting them is
the caller's job. This module is that caller-side persistence, supporting:
- Resume mode: reload the last checkpoint and continue after it
- Atomic updates: temporary file + rename to prevent corruption
- Restricted permissions: checkpoints may contain secrets from outputs

Checkpoints are stored as JSON, by default at ~/.lxcmanager/checkpoint.json
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from lxcmanager.execution.models import RestartInfo

logger = logging.getLogger(__name__)

__all__ = ["CheckpointFile", "format_checkpoint"]


class CheckpointFile:
    """
    Stores one :class:`RestartInfo` on disk with atomic updates.

    The file wraps the checkpoint with a save timestamp::

        {"saved_at": "...", "checkpoint": {...}}
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize checkpoint file manager.

        Args:
            path: Path to the checkpoint file
        """
        self.path = Path(path)

    def exists(self) -> bool:
        """Check if checkpoint file exists."""
        return self.path.exists()

    def load(self) -> Optional[RestartInfo]:
        """
        Load the checkpoint from disk.

        Returns:
            RestartInfo, or None when the file is missing or unreadable.
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return RestartInfo.model_validate(data["checkpoint"])
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring corrupted checkpoint {self.path}: {e}")
            return None

    def save(self, checkpoint: RestartInfo) -> None:
        """
        Save ``checkpoint`` to disk atomically.

        Uses temporary file + rename for atomic update to prevent corruption.
        Sets file permissions to 600 (owner read/write only).
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "checkpoint": checkpoint.model_dump(mode="json"),
        }

        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".checkpoint-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug(
            f"Saved checkpoint at step {checkpoint.last_successful_index} to {self.path}"
        )

    def clear(self) -> bool:
        """Remove the checkpoint file. Returns True if a file was removed."""
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


def format_checkpoint(checkpoint: RestartInfo, step_count: Optional[int] = None) -> str:
    """Human-readable summary of a checkpoint."""
    position = checkpoint.last_successful_index + 1
    progress = f"{position}/{step_count}" if step_count is not None else str(position)
    lines = [
        "lxc-manager checkpoint",
        "=" * 40,
        f"Steps completed: {progress}",
        f"Container: {checkpoint.vm_id if checkpoint.vm_id is not None else '-'}",
        "",
        "Outputs:",
    ]
    if checkpoint.outputs:
        for key, value in sorted(checkpoint.outputs.items()):
            lines.append(f"  {key} = {value}")
    else:
        lines.append("  (none)")
    return "\n".join(lines)

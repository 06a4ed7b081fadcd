"""
Host registry backends.

Containers created by a fresh run are registered under their hostname so
that later pipelines can target them as ``host:<hostname>``. The runner
only needs ``lookup()``; callers use ``register()`` with the terminal
:class:`ContainerContext` handed out by the executor.

Data layout of the file backend:
    ~/.lxcmanager/hosts.json
    {
      "<hostname>": {"hostname": ..., "ve_host": ..., "vm_id": ..., "outputs": {...}}
    }
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from lxcmanager.execution.models import ContainerContext

logger = logging.getLogger(__name__)


class InMemoryHostRegistry:
    """Registry kept in process memory. Useful for tests and embedding."""

    def __init__(self, entries: Optional[List[ContainerContext]] = None):
        self._entries: Dict[str, ContainerContext] = {}
        for entry in entries or []:
            self.register(entry)

    def lookup(self, hostname: str) -> Optional[ContainerContext]:
        return self._entries.get(hostname)

    def register(self, context: ContainerContext) -> None:
        self._entries[context.hostname] = context

    def remove(self, hostname: str) -> bool:
        return self._entries.pop(hostname, None) is not None

    def list(self) -> List[ContainerContext]:
        return list(self._entries.values())


class FileHostRegistry:
    """
    JSON file backed registry.

    Every ``register()`` rewrites the whole file atomically; the file is
    re-read on each lookup so concurrent CLI invocations see each other.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> Dict[str, ContainerContext]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
            return {k: ContainerContext.model_validate(v) for k, v in data.items()}
        except (json.JSONDecodeError, AttributeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable host registry {self.path}: {e}")
            return {}

    def _save(self, entries: Dict[str, ContainerContext]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".hosts-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(
                    {k: v.model_dump(mode="json") for k, v in entries.items()}, f, indent=2
                )
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def lookup(self, hostname: str) -> Optional[ContainerContext]:
        return self._load().get(hostname)

    def register(self, context: ContainerContext) -> None:
        entries = self._load()
        entries[context.hostname] = context
        self._save(entries)
        logger.info(
            f"Registered {context.hostname} as container {context.vm_id} on {context.ve_host}"
        )

    def remove(self, hostname: str) -> bool:
        entries = self._load()
        if entries.pop(hostname, None) is None:
            return False
        self._save(entries)
        return True

    def list(self) -> List[ContainerContext]:
        return list(self._load().values())

"""
Output protocol codec.

A remote step prints nothing, or a single JSON value in one of three shapes:

- ``{"id": "x", "value": 1, "default": 0}`` (single record)
- ``[{"id": "x", "value": 1}, ...]`` (record list)
- ``[{"name": "label", "value": "v"}, ...]`` (name/value list)

The shape is decided once here and carried as :class:`OutputShape`, so
callers never probe raw JSON keys themselves.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from lxcmanager.execution.errors import OutputParseError
from lxcmanager.execution.models import ScopeValue
from lxcmanager.execution.variables import Scopes, VariableResolver
from lxcmanager.timeouts import EMPTY_RESULT, LOCAL_FILE_PREFIX

logger = logging.getLogger(__name__)

_INLINE_OBJECT = re.compile(r"\{[^{}]*\}")


class OutputShape(str, Enum):
    """Which of the protocol shapes a step printed."""
    EMPTY = "empty"
    RECORD = "record"
    RECORD_LIST = "record_list"
    NAME_VALUE_LIST = "name_value_list"


@dataclass(frozen=True)
class OutputUpdate:
    """Scope mutations decoded from one step's stdout."""
    shape: OutputShape
    outputs: Dict[str, ScopeValue] = field(default_factory=dict)
    defaults: Dict[str, ScopeValue] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.outputs and not self.defaults

    @property
    def result(self) -> Optional[str]:
        """Canonical result text for silently successful steps."""
        return EMPTY_RESULT if self.shape is OutputShape.EMPTY else None

    def apply(self, scopes: Scopes) -> None:
        scopes.outputs.update(self.outputs)
        scopes.defaults.update(self.defaults)


def strip_marker(raw: str, marker: Optional[str]) -> str:
    """Drop everything up to and including ``marker`` (login banners, MOTD)."""
    if not marker:
        return raw
    pos = raw.find(marker)
    if pos < 0:
        return raw
    return raw[pos + len(marker):]


class OutputCodec:
    """
    Parses command stdout into an :class:`OutputUpdate`.

    Args:
        resolver: Used to substitute tokens inside ``local:`` paths
        local_mode: Replace ``local:`` values with base64 file contents
        local_root: Base directory for relative ``local:`` paths
    """

    def __init__(
        self,
        resolver: Optional[VariableResolver] = None,
        local_mode: bool = False,
        local_root: Optional[Union[str, Path]] = None,
    ):
        self.resolver = resolver
        self.local_mode = local_mode
        self.local_root = Path(local_root) if local_root else None

    def parse(self, raw_stdout: str, unique_marker: Optional[str] = None) -> OutputUpdate:
        """
        Decode ``raw_stdout``.

        Raises:
            OutputParseError: Malformed JSON or an unrecognised shape
        """
        text = strip_marker(raw_stdout or "", unique_marker).strip()
        if not text:
            return OutputUpdate(shape=OutputShape.EMPTY)

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise OutputParseError(f"Step output is not valid JSON: {e}", raw=text) from e

        if isinstance(data, dict):
            if "id" not in data:
                raise OutputParseError("JSON object output must contain an 'id' key", raw=text)
            outputs: Dict[str, ScopeValue] = {}
            defaults: Dict[str, ScopeValue] = {}
            self._collect_record(data, outputs, defaults, text)
            return OutputUpdate(OutputShape.RECORD, outputs, defaults)

        if isinstance(data, list):
            return self._parse_list(data, text)

        raise OutputParseError(
            f"Step output must be a JSON object or array, got {type(data).__name__}",
            raw=text,
        )

    def _parse_list(self, data: List[Any], text: str) -> OutputUpdate:
        if not all(isinstance(item, dict) for item in data):
            raise OutputParseError("Every element of an output array must be an object", raw=text)

        outputs: Dict[str, ScopeValue] = {}
        defaults: Dict[str, ScopeValue] = {}

        if all("id" in item for item in data):
            for item in data:
                self._collect_record(item, outputs, defaults, text)
            return OutputUpdate(OutputShape.RECORD_LIST, outputs, defaults)

        if all("name" in item and "id" not in item for item in data):
            for item in data:
                if "value" not in item:
                    raise OutputParseError(
                        f"Name/value record '{item['name']}' has no value", raw=text
                    )
                outputs[str(item["name"])] = self._scalar(item["value"], text)
            return OutputUpdate(OutputShape.NAME_VALUE_LIST, outputs, defaults)

        raise OutputParseError(
            "Output array mixes {id, value} and {name, value} records", raw=text
        )

    def _collect_record(
        self,
        item: Dict[str, Any],
        outputs: Dict[str, ScopeValue],
        defaults: Dict[str, ScopeValue],
        text: str,
    ) -> None:
        key = item["id"]
        if not isinstance(key, str) or not key:
            raise OutputParseError(f"Record id must be a non-empty string, got {key!r}", raw=text)
        if "value" not in item and "default" not in item:
            raise OutputParseError(f"Record '{key}' has neither value nor default", raw=text)
        if item.get("value") is not None:
            outputs[key] = self._scalar(item["value"], text)
        if item.get("default") is not None:
            defaults[key] = self._scalar(item["default"], text)

    def _scalar(self, value: Any, text: str) -> ScopeValue:
        if not isinstance(value, (str, int, float, bool)):
            raise OutputParseError(
                f"Output values must be strings, numbers or booleans, got {type(value).__name__}",
                raw=text,
            )
        if isinstance(value, str) and value.startswith(LOCAL_FILE_PREFIX) and self.local_mode:
            return self._read_local_file(value[len(LOCAL_FILE_PREFIX):])
        return value

    def _read_local_file(self, reference: str) -> str:
        if self.resolver is not None:
            reference = self.resolver.resolve(reference)
        path = Path(reference)
        if not path.is_absolute() and self.local_root is not None:
            path = self.local_root / path
        try:
            content = path.read_bytes()
        except OSError as e:
            raise OutputParseError(f"Cannot read local file '{path}': {e}") from e
        logger.debug(f"Inlined local file {path} ({len(content)} bytes)")
        return base64.b64encode(content).decode("ascii")


def scan_inline_record(text: str) -> Optional[OutputUpdate]:
    """
    Find the last inline ``{"id": ..., "value": ...}`` object in free text.

    Legacy compatibility for scripts that report a value in their log output
    instead of on stdout. Returns None when nothing usable is found.
    """
    for candidate in reversed(_INLINE_OBJECT.findall(text or "")):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            continue
        value = data.get("value")
        if isinstance(value, (str, int, float, bool)):
            return OutputUpdate(OutputShape.RECORD, {data["id"]: value})
    return None

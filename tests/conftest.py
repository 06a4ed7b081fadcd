"""
Pytest configuration and fixtures for lxc-manager tests.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Callable, Generator, List, Optional, Sequence, Union

import pytest

from lxcmanager.config import LxcManagerConfig, reset_config
from lxcmanager.execution.models import CommandResult, ConnectionContext, ProgressEvent


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch) -> Generator[None, None, None]:
    """Point the state directory at a temp dir and reset the config singleton."""
    monkeypatch.setenv("LXCMANAGER_STATE_DIR", str(tmp_path / "state"))
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def captured_event_log() -> Generator[io.StringIO, None, None]:
    """Route the structured event logger into a buffer for each test."""
    event_logger = logging.getLogger("lxcmanager.events")
    original = list(event_logger.handlers)
    output = io.StringIO()
    handler = logging.StreamHandler(output)
    handler.setFormatter(logging.Formatter("%(message)s"))
    event_logger.handlers = [handler]
    yield output
    event_logger.handlers = original


@pytest.fixture
def config(tmp_path) -> LxcManagerConfig:
    """Config with no retry delay."""
    return LxcManagerConfig(
        connection_retry_delay_s=0,
        state_dir=str(tmp_path / "state"),
    )


@pytest.fixture
def connection() -> ConnectionContext:
    return ConnectionContext(host="pve1", port=22)


# ============================================================================
# Spawner Fixtures
# ============================================================================

_MARKER_LINE = re.compile(r'^echo "(\S+)"')

Response = Union[CommandResult, Callable[[Sequence[str], str], CommandResult]]


def reply(stdout: str = "", stderr: str = "", exit_code: int = 0, banner: str = "") -> Callable:
    """Build a spawner response that echoes the marker like a real shell."""

    def _respond(argv: Sequence[str], input_text: str) -> CommandResult:
        match = _MARKER_LINE.match(input_text)
        marker_line = f"{match.group(1)}\n" if match else ""
        return CommandResult(
            stdout=f"{banner}{marker_line}{stdout}",
            stderr=stderr,
            exit_code=exit_code,
        )

    return _respond


class FakeSpawner:
    """Replays scripted responses and records every call."""

    def __init__(self, responses: Optional[List[Response]] = None, chunks: Optional[List[tuple]] = None):
        self.responses = list(responses or [])
        self.chunks = chunks or []
        self.calls: List[dict] = []

    def add(self, *responses: Response) -> "FakeSpawner":
        self.responses.extend(responses)
        return self

    def __call__(self, argv, input_text, timeout, on_output=None) -> CommandResult:
        self.calls.append({"argv": list(argv), "input": input_text, "timeout": timeout})
        if on_output is not None:
            for stream, chunk in self.chunks:
                on_output(stream, chunk)
        if not self.responses:
            raise AssertionError(f"Unexpected spawn: {argv}")
        response = self.responses.pop(0)
        if callable(response):
            return response(argv, input_text)
        return response


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def events() -> List[ProgressEvent]:
    """Collects progress events."""
    return []


@pytest.fixture
def sleeps() -> List[float]:
    """Records retry backoff sleeps instead of sleeping."""
    return []

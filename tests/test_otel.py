"""Tests for OTel span and span event emission during pipeline execution."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from lxcmanager.execution.executor import PipelineExecutor
from lxcmanager.execution.models import RestartInfo, Step
from lxcmanager.execution.otel import (
    add_span_event,
    emit_checkpoint,
    emit_retry,
    emit_step_failed,
)
from lxcmanager.execution.runner import RemoteCommandRunner

from conftest import reply


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_span():
    """Create a mock OTel span that is recording."""
    span = MagicMock()
    span.is_recording.return_value = True
    return span


@pytest.fixture
def mock_otel(mock_span):
    """Patch OTel to return our mock span."""
    with patch("lxcmanager.execution.otel.otel_trace") as mock_trace:
        mock_trace.get_current_span.return_value = mock_span
        yield mock_span


@pytest.fixture
def exporter():
    """Route executor spans into an in-memory exporter."""
    memory = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(memory))
    with patch(
        "lxcmanager.execution.executor.tracer",
        provider.get_tracer("lxcmanager.execution"),
    ):
        yield memory


# ---------------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------------


class TestSpanEvents:
    def test_emit_retry(self, mock_otel):
        emit_retry("ve", attempt=2, exit_code=255)

        mock_otel.add_event.assert_called_once()
        call = mock_otel.add_event.call_args
        assert call.kwargs["name"] == "lxcmanager.step.retry"
        assert call.kwargs["attributes"] == {
            "step.name": "ve",
            "step.attempt": 2,
            "step.exit_code": 255,
        }

    def test_emit_step_failed(self, mock_otel):
        emit_step_failed("Install", index=3, error="Exit code: 1")

        attrs = mock_otel.add_event.call_args.kwargs["attributes"]
        assert attrs["step.index"] == 3
        assert attrs["step.error"] == "Exit code: 1"

    def test_emit_checkpoint(self, mock_otel):
        emit_checkpoint(RestartInfo(last_successful_index=1, outputs={"a": 1}, vm_id=101))

        call = mock_otel.add_event.call_args
        assert call.kwargs["name"] == "lxcmanager.checkpoint"
        assert call.kwargs["attributes"] == {
            "checkpoint.last_successful_index": 1,
            "checkpoint.output_count": 1,
            "checkpoint.vm_id": 101,
        }

    def test_emit_checkpoint_without_vm_id(self, mock_otel):
        emit_checkpoint(RestartInfo(last_successful_index=-1))

        attrs = mock_otel.add_event.call_args.kwargs["attributes"]
        assert "checkpoint.vm_id" not in attrs

    def test_not_recording_span_is_ignored(self, mock_otel):
        mock_otel.is_recording.return_value = False
        add_span_event("x", {"a": 1})
        mock_otel.add_event.assert_not_called()


# ---------------------------------------------------------------------------
# Executor spans
# ---------------------------------------------------------------------------


class TestExecutorSpans:
    def _run(self, steps, connection, spawner, config):
        runner = RemoteCommandRunner(connection, spawner=spawner, config=config, sleep=lambda s: None)
        return PipelineExecutor(steps, {}, connection, runner=runner, config=config).run()

    def test_run_and_step_spans(self, exporter, connection, spawner, config):
        spawner.add(reply(exit_code=255), reply())
        self._run([Step(name="Install", command="true")], connection, spawner, config)

        spans = {span.name: span for span in exporter.get_finished_spans()}
        assert set(spans) == {"lxcmanager.pipeline.run", "lxcmanager.step"}
        step_span = spans["lxcmanager.step"]
        assert step_span.parent.span_id == spans["lxcmanager.pipeline.run"].context.span_id
        assert step_span.attributes["step.name"] == "Install"
        assert [e.name for e in step_span.events] == ["lxcmanager.step.retry"]
        run_events = [e.name for e in spans["lxcmanager.pipeline.run"].events]
        assert run_events == ["lxcmanager.checkpoint"]

    def test_failed_step_span_status(self, exporter, connection, spawner, config):
        spawner.add(reply(stderr="boom", exit_code=1))
        self._run([Step(name="Install", command="false")], connection, spawner, config)

        step_span = next(
            span for span in exporter.get_finished_spans() if span.name == "lxcmanager.step"
        )
        assert step_span.status.status_code == StatusCode.ERROR
        assert "lxcmanager.step.failed" in [e.name for e in step_span.events]

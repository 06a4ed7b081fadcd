"""
OTel span and span event helpers for pipeline execution.

The executor opens one span per run (``lxcmanager.pipeline.run``) and one
per step (``lxcmanager.step``). The helpers below attach events to whatever
span is current, so they are no-ops when no SDK tracer provider is set.

Usage::

    from lxcmanager.execution.otel import emit_retry, emit_checkpoint

    emit_retry("install", attempt=2, exit_code=255)
    emit_checkpoint(restart_info)
"""

from __future__ import annotations

import logging

from opentelemetry import trace as otel_trace

from lxcmanager.execution.models import RestartInfo

logger = logging.getLogger(__name__)

tracer = otel_trace.get_tracer("lxcmanager.execution")


def add_span_event(name: str, attributes: dict[str, str | int | float | bool]) -> None:
    """Add an event to the current OTel span if it is recording."""
    span = otel_trace.get_current_span()
    if span and span.is_recording():
        span.add_event(name=name, attributes=attributes)


def emit_retry(step_name: str, attempt: int, exit_code: int) -> None:
    """Emit a span event for a connection-level retry.

    Event name: ``lxcmanager.step.retry``
    """
    add_span_event(
        "lxcmanager.step.retry",
        {
            "step.name": step_name,
            "step.attempt": attempt,
            "step.exit_code": exit_code,
        },
    )


def emit_step_failed(step_name: str, index: int, error: str) -> None:
    """Emit a span event for a terminal step failure.

    Event name: ``lxcmanager.step.failed``
    """
    add_span_event(
        "lxcmanager.step.failed",
        {
            "step.name": step_name,
            "step.index": index,
            "step.error": error,
        },
    )


def emit_checkpoint(restart_info: RestartInfo) -> None:
    """Emit a span event describing a freshly computed checkpoint.

    Event name: ``lxcmanager.checkpoint``
    """
    attrs: dict[str, str | int | float | bool] = {
        "checkpoint.last_successful_index": restart_info.last_successful_index,
        "checkpoint.output_count": len(restart_info.outputs),
    }
    if restart_info.vm_id is not None:
        attrs["checkpoint.vm_id"] = restart_info.vm_id
    add_span_event("lxcmanager.checkpoint", attrs)

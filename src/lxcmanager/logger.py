"""
Structured logging for pipeline execution events.

Outputs JSON-formatted logs for Loki ingestion. Only lifecycle events are
logged; raw command output travels through progress events instead.

Logged events:
- pipeline.started
- pipeline.resumed
- pipeline.completed
- pipeline.stopped
- step.started
- step.completed
- step.skipped
- step.failed

Usage:
    from lxcmanager.logger import ExecutionLogger

    logger = ExecutionLogger(run_id="install-mosquitto")
    logger.log_step_started(index=0, step_name="Start container", execute_on="ve")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Configure structured logger for Loki
_loki_logger = logging.getLogger("lxcmanager.events")
_loki_logger.setLevel(logging.INFO)

# Default handler outputs JSON to stderr so stdout stays free for results
if not _loki_logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    _loki_logger.addHandler(handler)


class ExecutionLogger:
    """
    Structured logger for pipeline events.

    Each log entry includes standard fields for filtering:
    - run_id, event type and event-specific attributes
    - service name and optional extra labels
    """

    def __init__(
        self,
        run_id: str,
        service_name: str = "lxcmanager",
        log_format: str = "json",
        extra_labels: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize execution logger.

        Args:
            run_id: Identifier of the run (used as Loki label)
            service_name: Service name for log attribution
            log_format: "json" for Loki, "text" for a console
            extra_labels: Additional labels for Loki filtering
        """
        self.run_id = run_id
        self.service_name = service_name
        self.log_format = log_format
        self.extra_labels = extra_labels or {}
        self._logger = _loki_logger

    def _emit(self, event: str, level: str = "info", **extra_fields: Any) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": self.service_name,
            "run_id": self.run_id,
        }
        entry.update({k: v for k, v in extra_fields.items() if v is not None})

        if self.extra_labels:
            entry["labels"] = self.extra_labels

        if self.log_format == "text":
            details = " ".join(
                f"{k}={v}" for k, v in entry.items()
                if k not in ("timestamp", "level", "event", "service", "labels")
            )
            log_line = f"[{event}] {details}"
        else:
            log_line = json.dumps(entry, default=str)

        if level == "error":
            self._logger.error(log_line)
        elif level == "warn":
            self._logger.warning(log_line)
        else:
            self._logger.info(log_line)

    def log_pipeline_started(self, step_count: int) -> None:
        self._emit("pipeline.started", step_count=step_count)

    def log_pipeline_resumed(self, start_index: int, step_count: int) -> None:
        self._emit("pipeline.resumed", start_index=start_index, step_count=step_count)

    def log_pipeline_completed(self, step_count: int, vm_id: Optional[int] = None) -> None:
        self._emit("pipeline.completed", step_count=step_count, vm_id=vm_id)

    def log_pipeline_stopped(self, last_successful_index: int) -> None:
        self._emit(
            "pipeline.stopped",
            level="warn",
            last_successful_index=last_successful_index,
        )

    def log_step_started(self, index: int, step_name: str, execute_on: Optional[str]) -> None:
        self._emit("step.started", index=index, step=step_name, execute_on=execute_on)

    def log_step_completed(
        self,
        index: int,
        step_name: str,
        output_count: int = 0,
        attempts: Optional[int] = None,
    ) -> None:
        self._emit(
            "step.completed",
            index=index,
            step=step_name,
            output_count=output_count,
            attempts=attempts,
        )

    def log_step_skipped(self, index: int, step_name: str) -> None:
        self._emit("step.skipped", index=index, step=step_name)

    def log_step_failed(
        self,
        index: int,
        step_name: str,
        error: str,
        exit_code: Optional[int] = None,
    ) -> None:
        self._emit(
            "step.failed",
            level="error",
            index=index,
            step=step_name,
            error=error,
            exit_code=exit_code,
        )

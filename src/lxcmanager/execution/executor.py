"""
Pipeline executor.

Runs an ordered list of steps strictly one after another. Each step moves
through ``pending -> running -> succeeded | failed``; the first failure
stops the pipeline. After every attempt a :class:`RestartInfo` checkpoint is
computed so a caller can persist it and resume later with the exact scope
state that existed after the last successful step.

Usage::

    executor = PipelineExecutor(
        steps,
        inputs=[{"id": "vm_id", "value": 101}],
        connection=ConnectionContext(host="pve1"),
        on_progress=print,
    )
    checkpoint = executor.run()
    if checkpoint and checkpoint.last_successful_index < len(steps) - 1:
        ...  # stopped early, persist checkpoint and retry later
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from opentelemetry.trace import Status, StatusCode

from lxcmanager.config import LxcManagerConfig, get_config
from lxcmanager.execution.errors import (
    CommandFailedError,
    ConfigurationError,
    ExecutionError,
)
from lxcmanager.execution.models import (
    CommandResult,
    ConnectionContext,
    ContainerContext,
    ProgressEvent,
    RestartInfo,
    ScopeValue,
    Step,
    TargetKind,
    parse_target,
)
from lxcmanager.execution.otel import emit_checkpoint, emit_step_failed, tracer
from lxcmanager.execution.outputs import OutputCodec, scan_inline_record
from lxcmanager.execution.runner import (
    HostRegistry,
    RemoteCommandRunner,
    override_scope,
    raise_for_result,
)
from lxcmanager.execution.variables import Scopes, VariableResolver
from lxcmanager.logger import ExecutionLogger
from lxcmanager.timeouts import (
    EMPTY_RESULT,
    ENGINE_FAILURE_EXIT_CODE,
    NOT_DEFINED,
    RUNNING_EXIT_CODE,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ContextCallback = Callable[[ContainerContext], None]
CheckpointCallback = Callable[[RestartInfo], None]

COMPLETED_EVENT_NAME = "Completed"


def normalize_parameters(
    params: Union[Mapping[str, ScopeValue], Iterable[Mapping[str, Any]], None],
) -> Dict[str, ScopeValue]:
    """Turn ``[{id|name, value}]`` lists or plain mappings into a dict."""
    if params is None:
        return {}
    if isinstance(params, Mapping):
        return {k: v for k, v in params.items() if v is not None}

    result: Dict[str, ScopeValue] = {}
    for item in params:
        key = item.get("id", item.get("name"))
        if not key:
            raise ValueError(f"Parameter entry without id: {item!r}")
        if item.get("value") is not None:
            result[str(key)] = item["value"]
    return result


class _OutputStream:
    """Collects streamed chunks of one attempt and emits partial events."""

    def __init__(self, executor: "PipelineExecutor", step: Step, command_text: str):
        self._executor = executor
        self._step = step
        self._command_text = command_text
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, stream: str, chunk: str) -> None:
        with self._lock:
            (self._stderr if stream == "stderr" else self._stdout).append(chunk)
            self._executor._emit(
                ProgressEvent(
                    command=self._step.name,
                    execute_on=self._step.execute_on,
                    command_text=self._command_text,
                    stdout="".join(self._stdout),
                    stderr="".join(self._stderr),
                    exit_code=RUNNING_EXIT_CODE,
                    partial=True,
                )
            )


class PipelineExecutor:
    """
    Executes steps against a Proxmox VE host and its containers.

    The executor owns the ``inputs``/``outputs``/``defaults`` scopes for the
    lifetime of a run; the resolver and codec work on the same object.

    Args:
        steps: Validated steps, in execution order
        inputs: Caller inputs as ``[{id, value}]`` or a mapping
        connection: The hypervisor host
        defaults: Fallback values
        runner: Command runner; built from ``connection`` when omitted
        registry: Host registry for ``host:<name>`` targets
        on_progress: Receives every progress event, partial ones included
        on_context: Receives the terminal container context of a fresh run
        on_checkpoint: Receives every computed checkpoint
        config: Configuration; the global config when omitted
        timeout: Per-attempt timeout, overriding the configured one
        script_root: Base directory for relative script paths
        exec_logger: Structured event logger
    """

    def __init__(
        self,
        steps: Sequence[Step],
        inputs: Union[Mapping[str, ScopeValue], Iterable[Mapping[str, Any]], None],
        connection: ConnectionContext,
        defaults: Optional[Mapping[str, ScopeValue]] = None,
        runner: Optional[RemoteCommandRunner] = None,
        registry: Optional[HostRegistry] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_context: Optional[ContextCallback] = None,
        on_checkpoint: Optional[CheckpointCallback] = None,
        config: Optional[LxcManagerConfig] = None,
        timeout: Optional[float] = None,
        script_root: Optional[Union[str, Path]] = None,
        exec_logger: Optional[ExecutionLogger] = None,
    ):
        self.steps = list(steps)
        self.connection = connection
        self.config = config or get_config()
        self.runner = runner or RemoteCommandRunner(
            connection, registry=registry, config=self.config
        )
        self.on_progress = on_progress
        self.on_context = on_context
        self.on_checkpoint = on_checkpoint
        self.timeout = timeout
        self.script_root = Path(script_root) if script_root else None
        self.exec_logger = exec_logger or ExecutionLogger(
            run_id=uuid.uuid4().hex[:8], log_format=self.config.log_format
        )

        self._initial_inputs = normalize_parameters(inputs)
        self._initial_defaults = dict(defaults or {})

        self.scopes = Scopes()
        self.resolver = VariableResolver(self.scopes)
        self.codec = OutputCodec(
            resolver=self.resolver,
            local_mode=self.config.local_mode,
            local_root=self.config.local_root,
        )

        self.last_checkpoint: Optional[RestartInfo] = None
        self.container_context: Optional[ContainerContext] = None
        self._restored_vm_id: Optional[int] = None
        self._event_index = 0
        self._emit_lock = threading.Lock()
        self._last_result: Optional[CommandResult] = None
        self._command_text = ""

    # -- public API --------------------------------------------------------

    def run(self, restart_info: Optional[RestartInfo] = None) -> Optional[RestartInfo]:
        """
        Execute the pipeline, or resume it from ``restart_info``.

        Returns:
            The last computed checkpoint, or None for an empty step list.
            ``last_successful_index`` below the last step index means the
            run stopped early.
        """
        resumed = restart_info is not None
        if restart_info is not None:
            self.scopes.replace(restart_info.inputs, restart_info.outputs, restart_info.defaults)
            self._restored_vm_id = restart_info.vm_id
            start = restart_info.last_successful_index + 1
        else:
            self.scopes.replace(self._initial_inputs, {}, self._initial_defaults)
            self._restored_vm_id = None
            start = 0

        self._event_index = 0
        self.container_context = None
        self.last_checkpoint = restart_info

        if not self.steps:
            logger.debug("Empty step list, nothing to execute")
            return None

        if resumed:
            self.exec_logger.log_pipeline_resumed(start, len(self.steps))
        else:
            self.exec_logger.log_pipeline_started(len(self.steps))

        with tracer.start_as_current_span(
            "lxcmanager.pipeline.run",
            attributes={
                "pipeline.step_count": len(self.steps),
                "pipeline.start_index": start,
                "pipeline.resumed": resumed,
            },
        ):
            for index in range(start, len(self.steps)):
                step = self.steps[index]
                with tracer.start_as_current_span(
                    "lxcmanager.step",
                    attributes={
                        "step.index": index,
                        "step.name": step.name,
                        "step.execute_on": step.execute_on,
                    },
                ) as span:
                    try:
                        self._run_step(index, step)
                    except ExecutionError as e:
                        span.set_status(Status(StatusCode.ERROR, str(e)))
                        self._report_failure(index, step, e)
                        checkpoint = self._checkpoint(index - 1)
                        self.exec_logger.log_pipeline_stopped(checkpoint.last_successful_index)
                        return checkpoint
                self._checkpoint(index)

            self._complete(resumed)

        return self.last_checkpoint

    def current_vm_id(self) -> Optional[int]:
        """Container id from outputs, inputs, the resumed checkpoint or the connection."""
        for value in (
            self.scopes.outputs.get("vm_id"),
            self.scopes.inputs.get("vm_id"),
            self._restored_vm_id,
            self.connection.vm_id,
        ):
            if value is None or value == "" or value == NOT_DEFINED:
                continue
            try:
                return int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"vm_id '{value}' is not a container number") from e
        return None

    # -- step handling -----------------------------------------------------

    def _run_step(self, index: int, step: Step) -> None:
        self._last_result = None
        self._command_text = ""

        if step.is_skipped:
            self.exec_logger.log_step_skipped(index, step.name)
            self._emit_final(step, stderr="Skipped", result=EMPTY_RESULT)
            return

        if step.is_properties:
            applied = self._apply_properties(step)
            self.exec_logger.log_step_completed(index, step.name, output_count=len(applied))
            self._emit_final(
                step,
                stdout=json.dumps([{"id": k, "value": v} for k, v in applied.items()]),
                result=EMPTY_RESULT if not applied else None,
            )
            return

        kind, hostname = parse_target(step.execute_on)
        if kind is None:
            raise ConfigurationError(
                f"Step '{step.name}' has unknown execution target '{step.execute_on}'"
            )

        payload = self._load_payload(step)
        vm_id: Optional[int] = None
        container: Optional[ContainerContext] = None
        override: Optional[Dict[str, Any]] = None

        if kind is TargetKind.LXC:
            vm_id = self.current_vm_id()
            if vm_id is None:
                raise ConfigurationError(
                    f"Step '{step.name}' runs in a container but no vm_id is known"
                )
        elif kind is TargetKind.HOST:
            container = self.runner.discover(hostname, self.timeout)
            override = override_scope(container)

        command_text = self.resolver.resolve(payload, override)
        self._command_text = command_text
        self.exec_logger.log_step_started(index, step.name, step.execute_on)

        result = self.runner.run(
            command_text,
            step.execute_on,
            vm_id=vm_id,
            timeout=self.timeout,
            on_output=_OutputStream(self, step, command_text),
            container=container,
        )
        self._last_result = result
        raise_for_result(result, f"Step '{step.name}' failed")

        update = self.codec.parse(result.stdout, result.marker)
        if update.is_empty and self.config.legacy_json_fallback:
            fallback = scan_inline_record(result.stderr)
            if fallback is not None:
                logger.info(f"Step '{step.name}': using inline JSON from stderr")
                update = fallback
        update.apply(self.scopes)
        if vm_id is not None:
            # The container a step ran in stays addressable for later steps
            self.scopes.outputs.setdefault("vm_id", vm_id)

        self.exec_logger.log_step_completed(
            index, step.name, output_count=len(update.outputs), attempts=result.attempts
        )
        self._emit_final(
            step,
            command_text=command_text,
            stdout=result.stdout,
            stderr=result.stderr,
            result=update.result,
        )

    def _apply_properties(self, step: Step) -> Dict[str, ScopeValue]:
        applied: Dict[str, ScopeValue] = {}
        for entry in step.property_entries():
            value = self.resolver.resolve_value(entry.value)
            if value is not None and value != NOT_DEFINED:
                self.scopes.outputs[entry.id] = value
                applied[entry.id] = value
            default = self.resolver.resolve_value(entry.default)
            if default is not None and default != NOT_DEFINED:
                self.scopes.defaults[entry.id] = default
        return applied

    def _load_payload(self, step: Step) -> str:
        if step.command is not None:
            return step.command
        path = Path(step.script)
        if not path.is_absolute() and self.script_root is not None:
            path = self.script_root / path
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read script '{path}': {e}") from e

    # -- events & checkpoints ----------------------------------------------

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is not None:
            with self._emit_lock:
                self.on_progress(event)

    def _emit_final(self, step: Optional[Step], **fields: Any) -> ProgressEvent:
        event = ProgressEvent(
            command=step.name if step else COMPLETED_EVENT_NAME,
            execute_on=step.execute_on if step else None,
            exit_code=fields.pop("exit_code", 0),
            index=self._event_index,
            partial=False,
            **fields,
        )
        self._event_index += 1
        self._emit(event)
        return event

    def _report_failure(self, index: int, step: Step, error: ExecutionError) -> None:
        if isinstance(error, CommandFailedError):
            result: Optional[CommandResult] = error.result
        else:
            result = self._last_result

        if result is not None and not result.ok:
            exit_code = result.exit_code
        else:
            exit_code = ENGINE_FAILURE_EXIT_CODE

        stderr = result.stderr if result is not None else ""
        if not stderr:
            stderr = str(error)

        self.exec_logger.log_step_failed(index, step.name, str(error), exit_code)
        emit_step_failed(step.name, index, str(error))
        self._emit_final(
            step,
            command_text=self._command_text,
            stdout=result.stdout if result is not None else "",
            stderr=stderr,
            exit_code=exit_code,
            error=str(error),
        )

    def _known_vm_id(self) -> Optional[int]:
        try:
            return self.current_vm_id()
        except ConfigurationError:
            return None

    def _checkpoint(self, last_successful_index: int) -> RestartInfo:
        vm_id = self._known_vm_id()
        checkpoint = RestartInfo(
            last_successful_index=last_successful_index,
            inputs=dict(self.scopes.inputs),
            outputs=dict(self.scopes.outputs),
            defaults=dict(self.scopes.defaults),
            vm_id=vm_id,
        )
        self.last_checkpoint = checkpoint
        emit_checkpoint(checkpoint)
        if self.on_checkpoint is not None:
            self.on_checkpoint(checkpoint)
        return checkpoint

    def _complete(self, resumed: bool) -> None:
        vm_id = self._known_vm_id()
        self._emit_final(None, result=EMPTY_RESULT)
        self.exec_logger.log_pipeline_completed(len(self.steps), vm_id)

        if resumed:
            return
        hostname = self.scopes.lookup("hostname")
        if vm_id is None or hostname is None or hostname == NOT_DEFINED:
            logger.debug("No vm_id/hostname known, terminal container context not built")
            return
        self.container_context = ContainerContext(
            hostname=str(hostname),
            ve_host=self.connection.host,
            vm_id=vm_id,
            outputs=dict(self.scopes.outputs),
        )
        if self.on_context is not None:
            self.on_context(self.container_context)

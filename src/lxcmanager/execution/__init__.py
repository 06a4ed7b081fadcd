"""
Step execution engine.

Public API::

    from lxcmanager.execution import PipelineExecutor, Step, ConnectionContext

    executor = PipelineExecutor(steps, inputs, ConnectionContext(host="pve1"))
    checkpoint = executor.run()
"""

from lxcmanager.execution.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectionFailedError,
    ExecutionError,
    HostDiscoveryError,
    OutputParseError,
)
from lxcmanager.execution.executor import PipelineExecutor, normalize_parameters
from lxcmanager.execution.models import (
    CommandResult,
    ConnectionContext,
    ContainerContext,
    ProbeRecord,
    ProgressEvent,
    PropertyEntry,
    RestartInfo,
    Step,
    TargetKind,
)
from lxcmanager.execution.outputs import OutputCodec, OutputShape, OutputUpdate
from lxcmanager.execution.runner import RemoteCommandRunner, subprocess_spawner
from lxcmanager.execution.variables import Scopes, VariableResolver

__all__ = [
    # Engine
    "PipelineExecutor",
    "RemoteCommandRunner",
    "OutputCodec",
    "VariableResolver",
    "Scopes",
    "normalize_parameters",
    "subprocess_spawner",
    # Models
    "Step",
    "PropertyEntry",
    "ConnectionContext",
    "ContainerContext",
    "ProbeRecord",
    "RestartInfo",
    "ProgressEvent",
    "CommandResult",
    "TargetKind",
    "OutputShape",
    "OutputUpdate",
    # Errors
    "ExecutionError",
    "ConfigurationError",
    "HostDiscoveryError",
    "CommandFailedError",
    "ConnectionFailedError",
    "CommandTimeoutError",
    "OutputParseError",
]

"""
Pydantic models for steps, connection data, checkpoints and events.

Steps arrive already validated by the document loader; the models here only
enforce the shape the executor relies on (one payload per step).
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from lxcmanager.timeouts import RUNNING_EXIT_CODE, SKIPPED_SUFFIX

ScopeValue = Union[bool, int, float, str]

HOST_TARGET_PREFIX = "host:"


class TargetKind(str, Enum):
    """Where a step executes."""
    VE = "ve"
    LXC = "lxc"
    HOST = "host"


def parse_target(execute_on: str) -> Tuple[Optional[TargetKind], Optional[str]]:
    """Split an ``execute_on`` value into its kind and optional hostname.

    Returns ``(None, None)`` for values outside the three known kinds.
    """
    if execute_on == TargetKind.VE.value:
        return TargetKind.VE, None
    if execute_on == TargetKind.LXC.value:
        return TargetKind.LXC, None
    if execute_on.startswith(HOST_TARGET_PREFIX):
        hostname = execute_on[len(HOST_TARGET_PREFIX):].strip()
        if hostname:
            return TargetKind.HOST, hostname
    return None, None


class PropertyEntry(BaseModel):
    """One ``{id, value[, default]}`` pair of a properties step."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Output name")
    value: Optional[ScopeValue] = Field(None, description="Value, may contain {{tokens}}")
    default: Optional[ScopeValue] = Field(None, description="Fallback value for the defaults scope")


class Step(BaseModel):
    """One unit of the pipeline."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Label shown in progress events")
    execute_on: str = Field("ve", alias="executeOn", description="ve, lxc or host:<hostname>")
    script: Optional[str] = Field(None, description="Path of a script file to send")
    command: Optional[str] = Field(None, description="Inline shell text")
    properties: Optional[Union[PropertyEntry, List[PropertyEntry]]] = Field(
        None, description="Values merged into outputs without remote execution"
    )

    @model_validator(mode="after")
    def _single_payload(self) -> "Step":
        payloads = [p for p in (self.script, self.command, self.properties) if p is not None]
        if len(payloads) != 1:
            raise ValueError(
                f"Step '{self.name}' must define exactly one of script, command, properties"
            )
        return self

    @property
    def is_properties(self) -> bool:
        return self.properties is not None

    @property
    def is_skipped(self) -> bool:
        """Whether the loader flagged this step as skipped."""
        return self.name.rstrip().endswith(SKIPPED_SUFFIX)

    def property_entries(self) -> List[PropertyEntry]:
        if self.properties is None:
            return []
        if isinstance(self.properties, PropertyEntry):
            return [self.properties]
        return list(self.properties)


class ConnectionContext(BaseModel):
    """The hypervisor host a run talks to."""
    model_config = ConfigDict(frozen=True)

    host: str = Field(..., description="Hypervisor host address")
    port: Optional[int] = Field(None, ge=1, le=65535, description="SSH port")
    vm_id: Optional[int] = Field(None, description="Pre-resolved container id")


class ContainerContext(BaseModel):
    """Terminal state of a fresh run, registered by the caller for later discovery."""

    hostname: str = Field(..., description="Container hostname")
    ve_host: str = Field(..., description="Identity of the hypervisor host")
    vm_id: int = Field(..., description="Container numeric id")
    outputs: Dict[str, ScopeValue] = Field(default_factory=dict)


class ProbeRecord(BaseModel):
    """One running container reported by the discovery probe."""
    model_config = ConfigDict(extra="ignore")

    hostname: str
    pve: str = Field(..., description="Host-instance identity")
    vmid: int


class RestartInfo(BaseModel):
    """Checkpoint produced after each step attempt."""

    last_successful_index: int = Field(..., ge=-1)
    inputs: Dict[str, ScopeValue] = Field(default_factory=dict)
    outputs: Dict[str, ScopeValue] = Field(default_factory=dict)
    defaults: Dict[str, ScopeValue] = Field(default_factory=dict)
    vm_id: Optional[int] = None


class CommandResult(BaseModel):
    """Outcome of one runner invocation (after retries)."""
    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    attempts: int = 1
    timed_out: bool = False
    command_text: str = ""
    marker: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class ProgressEvent(BaseModel):
    """One progress notification; partial events precede the final one."""
    model_config = ConfigDict(frozen=True)

    command: str = Field(..., description="Step name")
    execute_on: Optional[str] = None
    command_text: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = RUNNING_EXIT_CODE
    index: Optional[int] = Field(None, description="Sequence number, set on final events")
    partial: bool = False
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.partial and self.exit_code == 0 and self.error is None

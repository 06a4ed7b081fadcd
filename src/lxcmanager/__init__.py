"""
lxc-manager - Run installation pipelines against Proxmox VE containers.

Executes an ordered list of steps on the hypervisor host, inside a
container, or inside a container located by hostname, threading values
between steps through ``{{name}}`` substitution. A checkpoint after every
step lets a failed run resume where it stopped.

Example usage:
    from lxcmanager import PipelineExecutor, Step, ConnectionContext

    steps = [Step(name="Start", execute_on="ve", command="pct start {{ vm_id }}")]
    executor = PipelineExecutor(steps, {"vm_id": 101}, ConnectionContext(host="pve1"))
    checkpoint = executor.run()
"""

__version__ = "0.1.0"
__all__ = [
    "PipelineExecutor",
    "Step",
    "ConnectionContext",
    "RestartInfo",
    "ProgressEvent",
    "__version__",
]


# Lazy imports to avoid loading OTel and pydantic at import time
def __getattr__(name: str):
    if name == "PipelineExecutor":
        from lxcmanager.execution.executor import PipelineExecutor
        return PipelineExecutor
    if name in ("Step", "ConnectionContext", "RestartInfo", "ProgressEvent"):
        from lxcmanager.execution import models
        return getattr(models, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

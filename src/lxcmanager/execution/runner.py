"""
Remote command runner.

Sends one shell payload to one of three targets on a Proxmox VE host:

- ``ve``: a shell on the hypervisor itself (``ssh root@host sh``)
- ``lxc``: a shell inside a container (``lxc-attach -n <vm_id> -- /bin/sh``)
- ``host:<hostname>``: a container located by the discovery probe and
  verified against the host registry

The payload is fed on stdin, preceded by an ``echo`` of a unique marker so
that login banners can be stripped from stdout. Attempts that exit with 255
(ssh could not connect) are retried a fixed number of times.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from lxcmanager.config import LxcManagerConfig, get_config
from lxcmanager.execution.errors import (
    CommandFailedError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectionFailedError,
    HostDiscoveryError,
)
from lxcmanager.execution.models import (
    CommandResult,
    ConnectionContext,
    ContainerContext,
    ProbeRecord,
    TargetKind,
    parse_target,
)
from lxcmanager.execution.otel import emit_retry
from lxcmanager.execution.outputs import strip_marker
from lxcmanager.timeouts import (
    CONNECTION_FAILURE_EXIT_CODE,
    MARKER_PREFIX,
    PROBE_TIMEOUT_S,
    TIMEOUT_EXIT_CODE,
)

logger = logging.getLogger(__name__)

# Called with ("stdout" | "stderr", chunk) while a command runs
OutputCallback = Callable[[str, str], None]

# Lists running containers as [{"hostname": ..., "pve": ..., "vmid": ...}]
PROBE_SCRIPT = """\
PVE=$(hostname)
FIRST=true
printf '['
for VMID in $(pct list 2>/dev/null | awk 'NR>1 && $2=="running" {print $1}'); do
  HN=$(pct config "$VMID" 2>/dev/null | awk '/^hostname:/ {print $2}')
  [ -z "$HN" ] && continue
  if [ "$FIRST" = true ]; then FIRST=false; else printf ','; fi
  printf '{"hostname":"%s","pve":"%s","vmid":%s}' "$HN" "$PVE" "$VMID"
done
printf ']'
"""


@runtime_checkable
class HostRegistry(Protocol):
    """Lookup of containers recorded by earlier runs."""

    def lookup(self, hostname: str) -> Optional[ContainerContext]:
        ...


class ProcessSpawner(Protocol):
    """Runs ``argv`` with ``input_text`` on stdin and waits for it."""

    def __call__(
        self,
        argv: Sequence[str],
        input_text: str,
        timeout: float,
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        ...


def _pump(stream, name: str, sink: List[str], on_output: Optional[OutputCallback]) -> None:
    for chunk in iter(stream.readline, ""):
        sink.append(chunk)
        if on_output is not None:
            on_output(name, chunk)
    stream.close()


def _feed(stream, input_text: str) -> None:
    try:
        stream.write(input_text)
    except OSError:
        logger.debug("Process closed stdin before the payload was written")
    try:
        stream.close()
    except OSError:
        pass


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.wait()


def subprocess_spawner(
    argv: Sequence[str],
    input_text: str,
    timeout: float,
    on_output: Optional[OutputCallback] = None,
) -> CommandResult:
    """
    Default spawner: a local subprocess with line-wise output streaming.

    The payload is written from its own thread so a session that stops
    reading stdin cannot hold off the timeout. The process runs in a new
    session; a timeout kills the whole process group.
    """
    try:
        proc = subprocess.Popen(
            list(argv),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        raise ConfigurationError(f"Cannot start {argv[0]}: {e}") from e
    stdout: List[str] = []
    stderr: List[str] = []
    threads = [
        threading.Thread(target=_pump, args=(proc.stdout, "stdout", stdout, on_output), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, "stderr", stderr, on_output), daemon=True),
        threading.Thread(target=_feed, args=(proc.stdin, input_text), daemon=True),
    ]
    for thread in threads:
        thread.start()

    timed_out = False
    try:
        exit_code = proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        timed_out = True
        exit_code = TIMEOUT_EXIT_CODE

    for thread in threads:
        thread.join()
    if timed_out:
        stderr.append(f"Command timed out after {timeout:g}s\n")

    return CommandResult(
        stdout="".join(stdout),
        stderr="".join(stderr),
        exit_code=exit_code,
        timed_out=timed_out,
    )


def raise_for_result(result: CommandResult, context: str = "") -> None:
    """Raise the matching :class:`CommandFailedError` for a failed result."""
    if result.timed_out:
        raise CommandTimeoutError(result, context)
    if result.exit_code == CONNECTION_FAILURE_EXIT_CODE:
        raise ConnectionFailedError(
            result,
            f"{context} (connection failed after {result.attempts} attempts)".strip(),
        )
    if result.exit_code != 0:
        raise CommandFailedError(result, context)


class RemoteCommandRunner:
    """
    Executes shell payloads on the hypervisor host or inside its containers.

    Args:
        connection: The hypervisor host to talk to
        registry: Host registry used to verify ``host:<name>`` targets
        spawner: Process-spawning primitive (subprocess by default)
        config: Configuration; the global config when omitted
        sleep: Sleep function used for the retry backoff
    """

    def __init__(
        self,
        connection: ConnectionContext,
        registry: Optional[HostRegistry] = None,
        spawner: Optional[ProcessSpawner] = None,
        config: Optional[LxcManagerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.connection = connection
        self.registry = registry
        self.spawner = spawner or subprocess_spawner
        self.config = config or get_config()
        self._sleep = sleep

    # -- argv construction -------------------------------------------------

    def _ssh_argv(self, remote_command: str) -> List[str]:
        port = self.connection.port or self.config.ssh_port
        return [
            "ssh",
            *self.config.ssh_options,
            "-p",
            str(port),
            f"{self.config.ssh_user}@{self.connection.host}",
            remote_command,
        ]

    def build_argv(self, kind: TargetKind, vm_id: Optional[int] = None) -> List[str]:
        """Command line for a session on ``kind``; the payload goes to stdin."""
        if self.config.local_mode:
            return ["sh"]
        if kind is TargetKind.VE:
            return self._ssh_argv("sh")
        if vm_id is None:
            raise ConfigurationError("A container session needs a vm_id")
        return self._ssh_argv(f"lxc-attach -n {vm_id} -- /bin/sh")

    # -- execution ---------------------------------------------------------

    def run(
        self,
        command: str,
        execute_on: str,
        vm_id: Optional[int] = None,
        timeout: Optional[float] = None,
        on_output: Optional[OutputCallback] = None,
        container: Optional[ContainerContext] = None,
    ) -> CommandResult:
        """
        Run ``command`` on the target named by ``execute_on``.

        Args:
            command: Fully substituted shell payload
            execute_on: ``ve``, ``lxc`` or ``host:<hostname>``
            vm_id: Container id for ``lxc`` targets
            timeout: Per-attempt timeout; the configured default when omitted
            on_output: Receives stdout/stderr chunks while the command runs
            container: Already discovered container for ``host:`` targets

        Returns:
            The result of the last attempt, with the attempt count

        Raises:
            ConfigurationError: Unknown target kind or missing vm_id
            HostDiscoveryError: The ``host:`` target could not be verified
        """
        kind, hostname = parse_target(execute_on)
        if kind is None:
            raise ConfigurationError(f"Unknown execution target '{execute_on}'")

        if kind is TargetKind.LXC:
            if vm_id is None:
                raise ConfigurationError("lxc target requires a vm_id in inputs or outputs")
            argv = self.build_argv(kind, vm_id)
        elif kind is TargetKind.HOST:
            if container is None:
                container = self.discover(hostname, timeout)
            argv = self.build_argv(TargetKind.LXC, container.vm_id)
        else:
            argv = self.build_argv(kind)

        return self._run_with_retry(argv, command, execute_on, timeout, on_output)

    def _run_with_retry(
        self,
        argv: List[str],
        command: str,
        label: str,
        timeout: Optional[float],
        on_output: Optional[OutputCallback],
    ) -> CommandResult:
        effective_timeout = timeout if timeout is not None else self.config.command_timeout_s
        max_attempts = self.config.connection_retry_attempts
        marker = f"{MARKER_PREFIX}{uuid.uuid4().hex}"
        payload = f'echo "{marker}"\n{command}\n'

        attempt = 0
        while True:
            attempt += 1
            result = self.spawner(argv, payload, effective_timeout, on_output)
            if (
                result.exit_code != CONNECTION_FAILURE_EXIT_CODE
                or result.timed_out
                or attempt >= max_attempts
            ):
                break
            logger.warning(
                f"Connection failure on {label} (attempt {attempt}/{max_attempts}), "
                f"retrying in {self.config.connection_retry_delay_s:g}s"
            )
            emit_retry(label, attempt, result.exit_code)
            self._sleep(self.config.connection_retry_delay_s)

        return result.model_copy(
            update={"attempts": attempt, "command_text": command, "marker": marker}
        )

    # -- host discovery ----------------------------------------------------

    def probe(self, timeout: Optional[float] = None) -> List[ProbeRecord]:
        """Run the discovery probe on the hypervisor host."""
        result = self._run_with_retry(
            self.build_argv(TargetKind.VE),
            PROBE_SCRIPT,
            "ve",
            timeout if timeout is not None else PROBE_TIMEOUT_S,
            None,
        )
        raise_for_result(result, "Host discovery probe failed")

        text = strip_marker(result.stdout, result.marker).strip()
        try:
            data = json.loads(text or "[]")
        except json.JSONDecodeError as e:
            raise HostDiscoveryError("*", f"probe printed invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise HostDiscoveryError("*", "probe output is not a JSON array")
        try:
            return [ProbeRecord.model_validate(item) for item in data]
        except ValueError as e:
            raise HostDiscoveryError("*", f"probe record is malformed: {e}") from e

    def discover(self, hostname: str, timeout: Optional[float] = None) -> ContainerContext:
        """
        Locate ``hostname`` on the hypervisor and verify it against the registry.

        Both the host identity and the vm id reported by the probe must
        match the registry entry recorded for the hostname.
        """
        if self.registry is None:
            raise HostDiscoveryError(hostname, "no host registry configured")

        matches = [r for r in self.probe(timeout) if r.hostname == hostname]
        if not matches:
            raise HostDiscoveryError(hostname, "no running container with this hostname")
        if len(matches) > 1:
            raise HostDiscoveryError(
                hostname, f"{len(matches)} running containers share this hostname"
            )
        found = matches[0]

        recorded = self.registry.lookup(hostname)
        if recorded is None:
            raise HostDiscoveryError(hostname, "no registry entry for this hostname")
        if recorded.ve_host != found.pve or recorded.vm_id != found.vmid:
            raise HostDiscoveryError(
                hostname,
                f"registry entry ({recorded.ve_host}/{recorded.vm_id}) does not match "
                f"probe result ({found.pve}/{found.vmid})",
            )

        logger.info(f"Discovered {hostname} as container {found.vmid} on {found.pve}")
        return recorded


def override_scope(container: ContainerContext) -> Dict[str, object]:
    """Values a discovered container contributes ahead of the run's own scopes."""
    scope: Dict[str, object] = dict(container.outputs)
    scope["vm_id"] = container.vm_id
    scope["hostname"] = container.hostname
    return scope

"""
lxc-manager CLI - Run installation pipelines against Proxmox VE containers.

Commands:
    lxcmanager run              Execute a step list (or resume it)
    lxcmanager checkpoint show  Show a saved checkpoint
    lxcmanager checkpoint clear Remove a saved checkpoint
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml
from pydantic import ValidationError

from lxcmanager.checkpoint import CheckpointFile, format_checkpoint
from lxcmanager.config import get_config
from lxcmanager.execution.executor import PipelineExecutor, normalize_parameters
from lxcmanager.execution.models import ConnectionContext, ProgressEvent, RestartInfo, Step
from lxcmanager.execution.variables import find_tokens
from lxcmanager.registry import FileHostRegistry


def _load_document(path: Path) -> Any:
    """Load a YAML or JSON document (JSON is valid YAML)."""
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise click.ClickException(f"Cannot parse {path}: {e}")


def _load_steps(path: Path) -> List[Step]:
    data = _load_document(path)
    if isinstance(data, dict):
        data = data.get("commands", data.get("steps"))
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must contain a list of steps")
    try:
        return [Step.model_validate(item) for item in data]
    except ValidationError as e:
        raise click.ClickException(f"Invalid step in {path}:\n{e}")


def _parameter_template(steps: List[Step], script_root: Path, defaults: Dict[str, Any]) -> List[dict]:
    """Parameters referenced by the steps that nothing provides."""
    provided = set(defaults)
    names: List[str] = []
    for step in steps:
        texts: List[str] = []
        if step.command is not None:
            texts.append(step.command)
        elif step.script is not None:
            script = Path(step.script)
            if not script.is_absolute():
                script = script_root / script
            if script.exists():
                texts.append(script.read_text(encoding="utf-8", errors="replace"))
        for entry in step.property_entries():
            if isinstance(entry.value, str):
                texts.append(entry.value)
        for text in texts:
            for name in find_tokens(text):
                if name not in provided and name not in names:
                    names.append(name)
        provided.update(entry.id for entry in step.property_entries())
    return [{"id": name, "value": ""} for name in names]


def _load_checkpoint(store: CheckpointFile) -> RestartInfo:
    if not store.exists():
        raise click.ClickException(f"No checkpoint at {store.path}")
    restart_info = store.load()
    if restart_info is None:
        raise click.ClickException(f"No usable checkpoint at {store.path}")
    return restart_info


def _print_event(event: ProgressEvent) -> None:
    if event.partial:
        return
    if event.error is None and event.exit_code == 0:
        click.echo(click.style(f"✓ [{event.command}]", fg="green"), err=True)
        return
    click.echo(click.style(f"✗ [{event.command}] exit code {event.exit_code}", fg="red"), err=True)
    if event.command_text:
        click.echo("=================== Command: ==================", err=True)
        click.echo(event.command_text, err=True)
    if event.stderr:
        click.echo("=================== Error: ====================", err=True)
        click.echo(event.stderr.rstrip(), err=True)


@click.group()
@click.version_option(package_name="lxc-manager")
def main():
    """lxc-manager - Run installation pipelines on Proxmox VE."""
    config = get_config()
    logging.getLogger("lxcmanager").setLevel(config.log_level.upper())


@main.command()
@click.argument("steps_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument(
    "parameters_file",
    required=False,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--defaults",
    "defaults_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML/JSON mapping of default values",
)
@click.option("--host", "-H", default="localhost", show_default=True, help="Proxmox VE host")
@click.option("--port", "-p", type=int, help="SSH port")
@click.option("--vm-id", type=int, help="Pre-resolved container id")
@click.option("--local", is_flag=True, help="Run payloads with the local shell (testing)")
@click.option("--timeout", type=float, help="Per-attempt timeout in seconds")
@click.option(
    "--checkpoint",
    "checkpoint_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Checkpoint file (default: <state_dir>/checkpoint.json)",
)
@click.option("--resume", is_flag=True, help="Resume from the checkpoint file")
def run(
    steps_file: Path,
    parameters_file: Optional[Path],
    defaults_file: Optional[Path],
    host: str,
    port: Optional[int],
    vm_id: Optional[int],
    local: bool,
    timeout: Optional[float],
    checkpoint_path: Optional[Path],
    resume: bool,
):
    """Execute the steps in STEPS_FILE with the values in PARAMETERS_FILE.

    Without PARAMETERS_FILE, prints a template of the parameters the steps
    reference. With --resume the inputs come from the checkpoint, so
    PARAMETERS_FILE may be omitted.
    """
    config = get_config(local_mode=True) if local else get_config()
    steps = _load_steps(steps_file)
    script_root = steps_file.parent

    defaults: Dict[str, Any] = {}
    if defaults_file is not None:
        loaded = _load_document(defaults_file)
        if not isinstance(loaded, dict):
            raise click.ClickException(f"{defaults_file} must contain a mapping")
        defaults = loaded

    store = CheckpointFile(checkpoint_path or config.get_state_path("checkpoint.json"))
    restart_info = _load_checkpoint(store) if resume else None

    if parameters_file is None and restart_info is None:
        click.echo("Fill the value fields and pass the following as your parameters file:")
        click.echo(json.dumps(_parameter_template(steps, script_root, defaults), indent=2))
        return

    inputs: Dict[str, Any] = {}
    if parameters_file is not None:
        params = _load_document(parameters_file)
        if not isinstance(params, (list, dict)):
            raise click.ClickException(
                "Parameters file must be a JSON array of {id, value} objects"
            )
        try:
            inputs = normalize_parameters(params)
        except (ValueError, AttributeError) as e:
            raise click.ClickException(f"Invalid parameters file: {e}")

    if restart_info is not None:
        click.echo(
            f"Resuming after step {restart_info.last_successful_index + 1}/{len(steps)}",
            err=True,
        )

    registry = FileHostRegistry(config.get_registry_path())
    executor = PipelineExecutor(
        steps,
        inputs,
        ConnectionContext(host=host, port=port, vm_id=vm_id),
        defaults=defaults,
        registry=registry,
        on_progress=_print_event,
        on_context=registry.register,
        on_checkpoint=store.save,
        config=config,
        timeout=timeout,
        script_root=script_root,
    )
    checkpoint = executor.run(restart_info)

    if checkpoint is not None and checkpoint.last_successful_index < len(steps) - 1:
        click.echo(
            click.style(
                f"Stopped after {checkpoint.last_successful_index + 1}/{len(steps)} steps. "
                f"Re-run with --resume to continue.",
                fg="yellow",
            ),
            err=True,
        )
        sys.exit(1)

    store.clear()
    click.echo(json.dumps(executor.scopes.outputs, indent=2, default=str))


@main.group()
def checkpoint():
    """Inspect saved checkpoints."""
    pass


@checkpoint.command("show")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the raw checkpoint")
@click.option(
    "--steps",
    "steps_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Steps file the checkpoint belongs to, for progress out of the total",
)
def checkpoint_show(path: Path, as_json: bool, steps_file: Optional[Path]):
    """Show the checkpoint stored at PATH."""
    restart_info = _load_checkpoint(CheckpointFile(path))
    if as_json:
        click.echo(restart_info.model_dump_json(indent=2))
        return
    step_count = len(_load_steps(steps_file)) if steps_file is not None else None
    click.echo(format_checkpoint(restart_info, step_count=step_count))


@checkpoint.command("clear")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
def checkpoint_clear(path: Path):
    """Remove the checkpoint stored at PATH."""
    if CheckpointFile(path).clear():
        click.echo(f"Removed {path}")
    else:
        click.echo(f"No checkpoint at {path}")


if __name__ == "__main__":
    main()

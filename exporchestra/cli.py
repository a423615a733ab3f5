"""
CLI interface for exporchestra.

Provides commands to initialize configuration, inspect playbooks and the
status contract, run experiences and list stored artifacts.

Playbooks are the built-in ones (event, declarative definitions shipped
with the package) plus YAML files in the configured playbooks_dir.
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from rich.table import Table

from exporchestra import __version__
from exporchestra.errors import ExperienceError, IntentValidationError, UnknownStatusMapping


def _config(ctx) -> Optional[Any]:
    return ctx.obj.get("config")


def _require_config(ctx) -> Any:
    config = _config(ctx)
    if config is None:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'exporchestra init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return config


def _playbook_registry(ctx):
    from exporchestra.registry import PlaybookRegistry

    config = _config(ctx)
    return PlaybookRegistry.create_default(config.playbooks_dir if config else None)


@click.group()
@click.version_option(version=__version__, prog_name="exporchestra")
@click.option("--verbose", "-v", is_flag=True, help="Also log to the console")
@click.pass_context
def main(ctx, verbose: bool):
    """
    exporchestra - Orchestrate playbooks into idempotent artifact bundles.
    """
    from exporchestra.config import load_config
    from exporchestra.errors import ConfigError
    from exporchestra.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except (FileNotFoundError, ConfigError) as e:
        # init (and commands with explicit overrides) work without a config
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging(
        config.log_path,
        log_level=config.log_level,
        log_format=config.log_format,
        console_output=verbose,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize exporchestra configuration."""
    from exporchestra.config import get_exporchestra_home, write_default_config

    home = get_exporchestra_home()
    try:
        cfg_path = write_default_config(home, force=force)
    except FileExistsError:
        click.echo(f"Config already exists at {home / 'config.yaml'}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    click.echo(f"Initialized exporchestra config at {cfg_path}")


# =============================================================================
# Run
# =============================================================================


def _read_intent(intent_file: Optional[str], intent_json: Optional[str]) -> dict[str, Any]:
    if intent_file and intent_json:
        raise click.UsageError("Pass either INTENT_FILE or --intent-json, not both")
    try:
        if intent_json:
            data = json.loads(intent_json)
        elif intent_file and intent_file != "-":
            text = Path(intent_file).read_text()
            data = json.loads(text) if intent_file.endswith(".json") else yaml.safe_load(text)
        elif intent_file == "-" or not sys.stdin.isatty():
            data = json.loads(sys.stdin.read())
        else:
            raise click.UsageError("No intent given: pass INTENT_FILE, --intent-json or pipe JSON on stdin")
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise click.UsageError(f"Intent is not valid JSON/YAML: {e}")
    except OSError as e:
        raise click.UsageError(f"Cannot read intent: {e}")
    if not isinstance(data, dict):
        raise click.UsageError("Intent must be a JSON object")
    return data


def _echo_started(experience) -> None:
    # stderr, so the id is known before any step runs and --json output stays clean
    click.echo(f"Experience {experience.experience_id} started ({experience.playbook_id})", err=True)


def _print_bundle(bundle) -> None:
    from exporchestra.utils import console, format_duration, print_error, print_success, print_warning

    title = f"Experience {bundle.experience_id}"
    if bundle.experience_name:
        title = f"{title}: {bundle.experience_name}"
    table = Table(title=title)
    table.add_column("Step")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Resolution")
    table.add_column("Artifact / reason")
    colors = {"succeeded": "green", "skipped": "yellow", "failed": "red", "blocked": "red"}
    for entry in bundle.step_log:
        color = colors.get(entry.status.value, "white")
        table.add_row(
            entry.step_id,
            entry.artifact_type,
            f"[{color}]{entry.status.value}[/{color}]",
            str(entry.attempts),
            entry.duplicate_resolution.value,
            entry.artifact_id or entry.failure_reason or "",
        )
    console.print(table)

    summary = ", ".join(f"{k}={v}" for k, v in bundle.summary.items())
    duration = format_duration((bundle.duration_ms or 0) / 1000)
    message = f"{bundle.playbook_id}: {bundle.status.value} ({summary}) in {duration}"
    if bundle.status.value == "complete":
        print_success(message)
    elif bundle.status.value == "partial":
        print_warning(message)
    else:
        print_error(message)


@main.command("run")
@click.argument("playbook")
@click.argument("intent_file", required=False)
@click.option("--intent-json", help="Intent as an inline JSON object")
@click.option("--experience-id", help="Experience id to run (or replay) under")
@click.option("--derive-id", is_flag=True, help="Derive the experience id from playbook and intent")
@click.option("--scope", help="Scope mixed into a derived experience id (e.g. a conversation id)")
@click.option("--store", "store_path", type=click.Path(file_okay=False), help="Artifact store directory")
@click.option("--fan-out", type=click.IntRange(min=1), help="Maximum concurrently running steps")
@click.option("--fail-fast", is_flag=True, help="Skip pending steps once a required step fails")
@click.option("--json", "as_json", is_flag=True, help="Print the bundle as JSON")
@click.pass_context
def run(
    ctx,
    playbook: str,
    intent_file: Optional[str],
    intent_json: Optional[str],
    experience_id: Optional[str],
    derive_id: bool,
    scope: Optional[str],
    store_path: Optional[str],
    fan_out: Optional[int],
    fail_fast: bool,
    as_json: bool,
):
    """
    Run a playbook for an intent.

    PLAYBOOK is the playbook id. The intent is read from INTENT_FILE
    (JSON or YAML), --intent-json, or stdin.

    Examples:

        exporchestra run event launch.json

        exporchestra run event --intent-json '{"eventName": "Launch", "date": "2026-05-01"}'

        cat launch.json | exporchestra run event --derive-id --json
    """
    from exporchestra.config import ExporchestraConfig
    from exporchestra.runtime import Runtime, derive_experience_id
    from exporchestra.store import FileArtifactStore
    from exporchestra.utils import print_error

    if experience_id and derive_id:
        raise click.UsageError("--experience-id and --derive-id are mutually exclusive")

    config = _config(ctx)
    if config is None:
        if store_path is None:
            _require_config(ctx)
        config = ExporchestraConfig(store_path=store_path)

    intent = _read_intent(intent_file, intent_json)
    if derive_id:
        experience_id = derive_experience_id(playbook, intent, scope=scope)

    overrides: dict[str, Any] = {}
    if store_path:
        overrides["store"] = FileArtifactStore(store_path)
    if fan_out:
        overrides["max_fan_out"] = fan_out
    runtime = Runtime.from_config(config, **overrides)

    try:
        bundle = runtime.create_experience(
            playbook,
            intent,
            experience_id=experience_id,
            on_start=_echo_started,
            fail_fast=True if fail_fast else None,
        )
    except IntentValidationError as e:
        print_error(f"Invalid intent for '{playbook}' (experience {e.experience_id}):")
        for issue in e.issues:
            click.echo(f"  - {issue.field}: {issue.message}")
        raise SystemExit(2)
    except ExperienceError as e:
        print_error(f"{e} (experience {e.experience_id})")
        raise SystemExit(2)

    if as_json:
        click.echo(json.dumps(bundle.to_dict(), indent=2))
    else:
        _print_bundle(bundle)

    if bundle.status.value == "failed":
        raise SystemExit(1)


# =============================================================================
# Playbooks
# =============================================================================


@main.group("playbooks")
def playbooks_group():
    """Inspect registered playbooks."""
    pass


@playbooks_group.command("list")
@click.pass_context
def list_playbooks(ctx):
    """List available playbooks."""
    registry = _playbook_registry(ctx)
    contracts = registry.contracts()
    if not contracts:
        click.echo("No playbooks registered.")
        return
    for contract in contracts:
        click.echo(f"{contract.playbook_id} ({contract.version})  {contract.description}")


@playbooks_group.command("show")
@click.argument("playbook")
@click.pass_context
def show_playbook(ctx, playbook: str):
    """Show a playbook contract."""
    from exporchestra.errors import UnknownPlaybookError

    registry = _playbook_registry(ctx)
    try:
        adapter = registry.get(playbook)
    except UnknownPlaybookError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    contract = adapter.contract
    click.echo(f"Playbook: {contract.playbook_id}")
    click.echo(f"Version: {contract.version}")
    click.echo(f"Hash: {registry.compute_hash(contract)}")
    click.echo()
    click.echo(yaml.safe_dump(contract.to_dict(), sort_keys=False))


# =============================================================================
# Status contract
# =============================================================================


@main.group("status")
def status_group():
    """Inspect the canonical status contract."""
    pass


@status_group.command("normalize")
@click.argument("artifact_type")
@click.argument("raw_status")
def status_normalize(artifact_type: str, raw_status: str):
    """Map a raw status of an artifact type to its canonical status."""
    from exporchestra.contracts import normalize_status

    try:
        canonical = normalize_status(raw_status, artifact_type)
    except UnknownStatusMapping as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(canonical.value)


@status_group.command("table")
def status_table():
    """Print the full status mapping table."""
    from exporchestra.contracts import DEFAULT_REGISTRY
    from exporchestra.utils import console

    table = Table(title=f"Status contract v{DEFAULT_REGISTRY.version}")
    table.add_column("Artifact type")
    table.add_column("Raw status")
    table.add_column("Canonical")
    for artifact_type, mapping in sorted(DEFAULT_REGISTRY.to_dict().items()):
        for raw, canonical in sorted(mapping.items()):
            table.add_row(artifact_type, raw, canonical)
    console.print(table)


# =============================================================================
# Artifacts
# =============================================================================


@main.group("artifacts")
def artifacts_group():
    """Inspect the artifact store."""
    pass


@artifacts_group.command("list")
@click.option("--type", "artifact_type", help="Filter by artifact type")
@click.option("--store", "store_path", type=click.Path(file_okay=False), help="Artifact store directory")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def list_artifacts(ctx, artifact_type: Optional[str], store_path: Optional[str], as_json: bool):
    """List stored artifacts."""
    from exporchestra.store import FileArtifactStore

    if store_path is None:
        store_path = str(_require_config(ctx).store_dir)
    store = FileArtifactStore(store_path)
    refs = store.list_artifacts(artifact_type)

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in refs], indent=2))
        return
    if not refs:
        click.echo("No artifacts found.")
        return
    for ref in refs:
        click.echo(f"{ref.artifact_id}  {ref.artifact_type:<9} {ref.status.value:<10} {ref.name or ''}")

"""
CLI interface for ignitor.

Provides commands to inspect module definitions, run them against a network,
and show the execution journal.

Module definitions are YAML/JSON files under the configured definitions
directory (see `ignitor init`).
"""

import json
import signal
import threading
from pathlib import Path

import click

from ignitor import __version__


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'ignitor init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


@click.group()
@click.version_option(version=__version__, prog_name="ignitor")
@click.pass_context
def main(ctx):
    """
    ignitor - Declarative contract deployment orchestrator.

    Runs module definitions against a network, resuming from the execution
    journal and refusing to redeploy drifted actions unless told to.
    """
    from ignitor.config import ConfigError, load_config
    from ignitor.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except (FileNotFoundError, ConfigError) as e:
        # init works without a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=Path(config.log_file).expanduser() if config.log_file else None,
    )


@main.command("run")
@click.argument("module")
@click.option("--network", required=True, help="Target network identifier")
@click.option("--dry-run", is_flag=True, help="Validate and simulate without submitting")
@click.option("--allow-drift", is_flag=True, help="Redeploy drifted actions and their dependents")
@click.option("--max-workers", type=click.IntRange(min=1), default=None, help="Concurrent actions")
@click.pass_context
def run(ctx, module: str, network: str, dry_run: bool, allow_drift: bool, max_workers):
    """
    Run a module against a network.

    MODULE is the module name (definition filename without extension).

    Exit codes: 0 satisfied, 1 invalid module, 2 execution failure,
    3 drift without --allow-drift.

    Examples:

        ignitor run ETHLockerModule --network sepolia

        ignitor run ETHLockerModule --network sepolia --dry-run

        ignitor run ETHLockerModule --network sepolia --allow-drift
    """
    from ignitor.deployer import deploy_module
    from ignitor.utils import print_warning

    config = _require_config(ctx)

    if dry_run:
        click.echo("=" * 50)
        click.echo("=== DRY RUN MODE === (nothing is submitted)")
        click.echo("=" * 50)

    stop_event = threading.Event()

    def _request_stop(signum, frame):
        print_warning("Stop requested; waiting for in-flight transactions...")
        stop_event.set()

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, _request_stop)
    try:
        result = deploy_module(
            module,
            network,
            config,
            dry_run=dry_run,
            allow_drift=allow_drift,
            max_workers=max_workers,
            stop_event=stop_event,
        )
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    _print_result(result)
    raise SystemExit(result.exit_code)


def _print_result(result) -> None:
    from ignitor.executor import DryRunReport
    from ignitor.utils import format_duration

    report = result.report
    if isinstance(report, DryRunReport):
        for name, gas in report.estimates.items():
            click.echo(f"  would execute {name} (gas ~{gas})")
        for name, tx_ref in report.resumes.items():
            click.echo(f"  would resume {name} ({tx_ref})")
        for name in report.skipped:
            click.echo(f"  already confirmed {name}")
        for name, problem in report.problems.items():
            click.echo(f"  ✗ {name}: {problem}", err=True)
    elif report is not None:
        for name in report.confirmed:
            click.echo(f"  ✓ {name}")
        for name in report.blocked:
            click.echo(f"  - {name} (not executed)", err=True)
        for name in report.stopped:
            click.echo(f"  - {name} (stopped)", err=True)

    label = f"{result.module}@{result.network}"
    if result.ok:
        prefix = "[DRY-RUN] " if result.dry_run else ""
        click.echo(f"{prefix}✓ {label} completed in {format_duration(result.duration_s)}")
        for export, value in result.results.items():
            click.echo(f"  {export}: {value}")
    else:
        message = result.error or "incomplete"
        click.echo(f"✗ {label} failed: {message}", err=True)


@main.command("status")
@click.argument("module")
@click.option("--network", required=True, help="Network identifier")
@click.option("--all", "show_all", is_flag=True, help="Include superseded records")
@click.pass_context
def status(ctx, module: str, network: str, show_all: bool):
    """Show the execution journal of a module on a network."""
    from rich.console import Console
    from rich.table import Table

    from ignitor.errors import IgnitorError
    from ignitor.journal import create_journal

    config = _require_config(ctx)
    try:
        journal = create_journal(config.journal_backend, config.journal_location)
        records = journal.load(module, network)
    except IgnitorError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(e.exit_code)

    if not records:
        click.echo(f"No journal records for {module} on {network}.")
        return

    table = Table(title=f"{module} @ {network}")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Tx")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Updated")

    colors = {"confirmed": "green", "submitted": "yellow", "pending": "cyan", "failed": "red"}
    for record in sorted(records.values(), key=lambda r: (r.name, r.updated_at)):
        if not record.is_live and not show_all:
            continue
        state = record.status.value
        cell = f"[{colors[state]}]{state}[/{colors[state]}]"
        if not record.is_live:
            cell += " (superseded)"
        table.add_row(
            record.name,
            cell,
            record.tx_ref or "",
            "" if record.result is None else str(record.result),
            str(record.attempts),
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    Console().print(table)


@main.group("modules")
def modules_group():
    """Inspect module definitions."""
    pass


@modules_group.command("list")
@click.pass_context
def list_modules(ctx):
    """List available module definitions."""
    from ignitor.registry import ModuleDefinitions

    config = _require_config(ctx)
    definitions = ModuleDefinitions(config.definitions_path)
    names = definitions.available()
    if not names:
        click.echo(f"No module definitions found in {definitions.definitions_dir}.")
        return
    for name in names:
        click.echo(name)


@modules_group.command("show")
@click.argument("module")
@click.pass_context
def show_module(ctx, module: str):
    """Validate a module and show its actions in execution order."""
    from ignitor.errors import IgnitorError
    from ignitor.registry import ModuleDefinitions

    config = _require_config(ctx)
    definitions = ModuleDefinitions(config.definitions_path, default_sender=config.default_sender)
    try:
        graph, _ = definitions.load(module)
    except IgnitorError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(e.exit_code)

    click.echo(f"Module: {graph.name}")
    click.echo(f"Definition: {definitions.find(module)}")
    click.echo()
    click.echo(json.dumps(graph.to_dict(), indent=2))


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize ignitor configuration."""
    import yaml

    from ignitor.config import IgnitorConfig, get_ignitor_home

    home = get_ignitor_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = IgnitorConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# RPC_URL=...\n# DEPLOYER_KEY=...\n")

    (home / "modules").mkdir(exist_ok=True)

    click.echo(f"Initialized ignitor config at {cfg_path}")
    click.echo(f"Put module definitions in {home / 'modules'}")

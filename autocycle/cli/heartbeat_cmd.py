"""Heartbeat commands — start, stop, status."""

from __future__ import annotations

import asyncio
import json as json_mod
import os
import signal
import time

import click
from rich.markup import escape as markup_escape

from autocycle.cli.formatters import build_table, format_age, get_console, status_indicator
from autocycle.config import AutocycleConfig, HeartbeatConfig
from autocycle.lock import AlreadyRunning, SingleInstanceLock
from autocycle.store import KnowledgeStore, StoreError

_STOP_POLL_SECONDS = 0.25


def _load_config(interval: float | None = None) -> AutocycleConfig:
    try:
        heartbeat = HeartbeatConfig(AUTOCYCLE_INTERVAL=interval) if interval else None
        return AutocycleConfig(heartbeat=heartbeat)
    except ValueError as e:
        raise click.ClickException(f"Configuration error: {e}") from e


@click.command("start")
@click.option("--interval", type=float, default=None, help="Seconds between cycles.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def start_cmd(interval: float | None, verbose: bool) -> None:
    """Run the heartbeat in the foreground until SIGINT/SIGTERM."""
    from autocycle.main import configure_logging, run_service

    configure_logging(verbose)
    config = _load_config(interval)

    lock_status = SingleInstanceLock(config.pid_file).status()
    if lock_status.running:
        raise click.ClickException(f"Heartbeat already running (PID {lock_status.pid}).")

    try:
        config.claude  # fail fast on a missing API key
    except ValueError as e:
        raise click.ClickException(f"Configuration error: {e}") from e

    click.echo(f"Heartbeat starting (home {config.home_dir}, every {config.heartbeat.interval:g}s).")
    try:
        asyncio.run(run_service(config))
    except AlreadyRunning as e:
        raise click.ClickException(f"Heartbeat already running (PID {e.pid}).") from e
    except KeyboardInterrupt:
        pass
    click.echo("Heartbeat stopped.")


@click.command("stop")
@click.option("--timeout", type=float, default=10.0, show_default=True,
              help="Seconds to wait for the heartbeat to exit.")
def stop_cmd(timeout: float) -> None:
    """Stop the running heartbeat gracefully (SIGTERM)."""
    config = _load_config()
    lock = SingleInstanceLock(config.pid_file)
    lock_status = lock.status()
    if not lock_status.running or lock_status.pid is None:
        click.echo("Heartbeat is not running.")
        return

    try:
        os.kill(lock_status.pid, signal.SIGTERM)
    except ProcessLookupError:
        click.echo("Heartbeat is not running.")
        return
    except PermissionError as e:
        raise click.ClickException(f"Cannot signal PID {lock_status.pid}: {e}") from e

    # The owner finishes any in-flight cycle before exiting.
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not lock.status().running:
            click.echo(f"Heartbeat stopped (PID {lock_status.pid}).")
            return
        time.sleep(_STOP_POLL_SECONDS)
    click.echo(
        f"Stop signal sent to PID {lock_status.pid}; "
        "it is still finishing its current cycle."
    )


@click.command("status")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def status_cmd(ctx: click.Context, json_output: bool) -> None:
    """Show whether the heartbeat is running and what it knows."""
    config = _load_config()
    lock_status = SingleInstanceLock(config.pid_file).status()
    store = KnowledgeStore(config.home_dir, config.store.max_backups)

    try:
        kb = store.load_knowledge()
        goals = store.load_goals()
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    stats = kb.stats
    active_goals = goals.active()

    if json_output:
        click.echo(json_mod.dumps({
            "running": lock_status.running,
            "pid": lock_status.pid,
            "home": str(config.home_dir),
            "knowledge": stats,
            "last_updated": kb.metadata.updated_at.isoformat(),
            "goals": {"active": len(active_goals), "total": len(goals.goals)},
            "backups": len(store.list_backups()),
        }, indent=2))
        return

    console = get_console(no_color=(ctx.obj or {}).get("no_color", False))
    rows = [
        ("State", status_indicator(lock_status.running)),
        ("PID", lock_status.pid if lock_status.pid is not None else "-"),
        ("Home", config.home_dir),
        ("Total cycles", stats["total_cycles"]),
        ("Observations", stats["observations"]),
        ("Lessons", stats["lessons"]),
        ("Hypotheses", stats["hypotheses"]),
        ("Strategies", stats["strategies"]),
        ("Last updated", format_age(kb.metadata.updated_at) if stats["total_cycles"] else "never"),
        ("Active goals", f"{len(active_goals)} of {len(goals.goals)}"),
    ]
    console.print(build_table("Heartbeat", rows))
    for goal in active_goals:
        console.print(f"  [bold]{markup_escape(f'[{goal.priority}]')}[/bold] {markup_escape(goal.title)}")

"""Typer CLI for the music scheduler."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .maintenance import extend_all_series, sweep_expired_invitations, vacuum_database
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

PROJECT_ROOT = Path(__file__).resolve().parents[1]

app = typer.Typer(help="Church music scheduler command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _readonly_exit(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _readonly_exit(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("extend-series")
def extend_series_command() -> None:
    """Materialize upcoming occurrences of every open series."""
    init_db()
    stats = extend_all_series()
    typer.echo(
        "Series extension complete: "
        f"checked={stats['series_checked']}, "
        f"extended={stats['series_extended']}, "
        f"created={stats['occurrences_created']}"
    )


@app.command("expire-invitations")
def expire_invitations() -> None:
    """Mark lapsed pending invitations as expired."""
    init_db()
    expired = sweep_expired_invitations()
    typer.echo(f"Expired {expired} invitation(s)")


@app.command("vacuum")
def vacuum() -> None:
    """Compact the SQLite database file."""
    try:
        vacuum_database()
    except OperationalError as exc:
        _readonly_exit(exc, "vacuum")
        raise
    typer.echo("Vacuum complete")


@app.command()
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "musicscheduler.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting music scheduler on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    musicians: int = typer.Option(
        settings.seed_musicians, "--musicians", help="Musicians to create"
    ),
    groups: int = typer.Option(
        settings.seed_groups, "--groups", help="Groups to create from the musicians"
    ),
    events: int = typer.Option(
        settings.seed_events, "--events", help="Events (or series) to schedule"
    ),
    timezone_offset: int = typer.Option(
        settings.default_timezone_offset_minutes,
        "--timezone-offset",
        help="Church offset in minutes east of UTC",
    ),
    recurring_percent: int = typer.Option(
        50,
        "--recurring-percent",
        min=0,
        max=100,
        help="Chance that a seeded event repeats",
    ),
):
    """Populate the database with a fake church, roster, and schedule."""
    try:
        stats = seed_fake_data(
            musician_count=musicians,
            group_count=groups,
            event_count=events,
            timezone_offset_minutes=timezone_offset,
            recurring_percentage=recurring_percent,
        )
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(
        "Seeded "
        f"{stats['musicians']} musician(s), {stats['groups']} group(s), "
        f"{stats['events']} event(s), {stats['assignments']} assignment(s)"
    )


@app.command("config")
def config_command(
    show: bool = typer.Option(False, "--show", help="Print the effective configuration"),
    config_path: Path | None = typer.Option(
        None, "--path", help="Config file to read or update"
    ),
    invitation_expiry_days: int | None = typer.Option(
        None, "--invitation-expiry-days", min=1, help="Days before an invitation lapses"
    ),
    recurrence_max_instances: int | None = typer.Option(
        None,
        "--recurrence-max-instances",
        min=1,
        help="Occurrences created per series burst, counting the first event",
    ),
    recurrence_extension_days: int | None = typer.Option(
        None,
        "--recurrence-extension-days",
        min=1,
        help="How far ahead the extension job keeps series materialized",
    ),
    series_extension_interval_hours: int | None = typer.Option(
        None, "--series-extension-hours", min=1, help="Hours between extension runs"
    ),
    invitation_sweep_interval_hours: int | None = typer.Option(
        None, "--invitation-sweep-hours", min=1, help="Hours between expiry sweeps"
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", min=1, help="Hours between SQLite VACUUM runs"
    ),
    allow_multi_role: bool | None = typer.Option(
        None,
        "--allow-multi-role/--single-role",
        help="Allow one musician to fill several roles on an event",
    ),
    forbid_duplicate_roles: bool | None = typer.Option(
        None,
        "--forbid-duplicate-roles/--allow-duplicate-roles",
        help="Reject two slots with the same role name on one event",
    ),
    dispatch_policy: str | None = typer.Option(
        None,
        "--dispatch-policy",
        help="strict or simulate-on-restriction",
    ),
    dispatch_timeout_seconds: float | None = typer.Option(
        None, "--dispatch-timeout", min=0.1, help="Seconds to wait for the email provider"
    ),
    resend_api_key: str | None = typer.Option(
        None, "--resend-api-key", help="API key for invitation emails"
    ),
    email_from: str | None = typer.Option(
        None, "--email-from", help="Sender address for invitation emails"
    ),
    app_base_url: str | None = typer.Option(
        None, "--app-base-url", help="Base URL used in invitation links"
    ),
    default_timezone_offset_minutes: int | None = typer.Option(
        None, "--default-timezone-offset", help="Offset for events without a church"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    seed_musicians: int | None = typer.Option(
        None, "--seed-musicians", min=0, help="Default musicians for seed-data"
    ),
    seed_groups: int | None = typer.Option(
        None, "--seed-groups", min=0, help="Default groups for seed-data"
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default events for seed-data"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (series extension/expiry/vacuum)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "invitation_expiry_days": invitation_expiry_days,
        "recurrence_max_instances": recurrence_max_instances,
        "recurrence_extension_days": recurrence_extension_days,
        "series_extension_interval_hours": series_extension_interval_hours,
        "invitation_sweep_interval_hours": invitation_sweep_interval_hours,
        "sqlite_vacuum_hours": vacuum_hours,
        "allow_multi_role": allow_multi_role,
        "forbid_duplicate_roles": forbid_duplicate_roles,
        "dispatch_policy": dispatch_policy,
        "dispatch_timeout_seconds": dispatch_timeout_seconds,
        "resend_api_key": resend_api_key,
        "email_from": email_from,
        "app_base_url": app_base_url,
        "default_timezone_offset_minutes": default_timezone_offset_minutes,
        "app_host": host,
        "app_port": port,
        "seed_musicians": seed_musicians,
        "seed_groups": seed_groups,
        "seed_events": seed_events,
        "enable_scheduler": enable_scheduler,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        try:
            settings_ref = update_config_file(clean_updates, path=target_path)
        except ValueError as exc:
            typer.secho(str(exc), err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env, cwd=PROJECT_ROOT)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()

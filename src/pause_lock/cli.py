import subprocess
import time
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from pause_lock.authorization import StoredPermissionService
from pause_lock.commands import CommandTimeout, dispatch, submit
from pause_lock.engine import Engine
from pause_lock.scanner import KeyboardWedgeScanner
from pause_lock.schema import AuthorizationStatus, Schedule
from pause_lock.settings import load_settings
from pause_lock.utils.logging import setup_logging
from pause_lock.utils.paths import SERVICE_NAME, get_service_file
from pause_lock.utils.state import is_daemon_running, read_state
from pause_lock.utils.time import format_until

app = typer.Typer(help="Pause Lock - block apps with an NFC tag or a weekly schedule")
tag_app = typer.Typer(help="Manage NFC tags")
profile_app = typer.Typer(help="Manage time profiles")
app.add_typer(tag_app, name="tag")
app.add_typer(profile_app, name="profile")
console = Console()

ERROR_HINTS = {
    "conflict": "Present the active tag again to release it first.",
    "conflict_with_profile": "Wait for the time profile window to end.",
    "busy": "Release the source before changing it.",
    "no_selection": "Link apps first with `link`.",
    "authorization": "Grant blocking permission with `pauselock authorize`.",
    "already_requesting": "Answer the pending permission prompt first.",
}


def process_list(values: list[str] | None) -> list[str]:
    """Processes strings potentially containing commas into a clean list."""
    if not values:
        return []
    processed = []
    for value in values:
        processed.extend(x.strip() for x in value.split(",") if x.strip())
    return processed


def _confirm_permission() -> bool:
    return typer.confirm("Allow Pause Lock to block apps on this machine?", default=True)


def run_command(command: str, args: dict[str, Any]) -> dict[str, Any]:
    """Runs a command in the daemon if it is up, otherwise in this process."""
    settings = load_settings()
    if is_daemon_running(settings):
        try:
            return submit(settings, command, args)
        except CommandTimeout as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    permissions = StoredPermissionService(settings.permission_file, prompt=_confirm_permission)
    engine = Engine(settings, permissions=permissions)
    engine.cold_start(run_loop=False)
    return dispatch(engine, command, args)


def report(reply: dict[str, Any], success: str) -> None:
    """
    Prints the outcome of a command; exits with 1 when it was refused.

    A command that went through but hit an error along the way (a release
    whose clear failed) prints a warning next to the success line.
    """
    error = reply.get("error")
    if error and not reply.get("ok"):
        console.print(f"[red]Refused:[/red] {error['message']}")
        hint = ERROR_HINTS.get(error["code"])
        if hint:
            console.print(f"[dim]{hint}[/dim]")
        raise typer.Exit(1)
    console.print(success.format(name=reply.get("name", ""), outcome=reply.get("outcome", "")))
    if error:
        console.print(f"[yellow]Warning:[/yellow] {error['message']}")


def load_snapshot() -> dict[str, Any]:
    settings = load_settings()
    if is_daemon_running(settings):
        state = read_state(settings) or {}
        if state.get("snapshot"):
            return state["snapshot"]
    return run_command("status", {})["snapshot"]


def _selection_text(counts: list[int]) -> str:
    apps, categories, domains = counts
    if not (apps or categories or domains):
        return "[dim]none[/dim]"
    return f"{apps} apps, {categories} cats, {domains} domains"


@app.command()
def scan(
    identifier: str | None = typer.Argument(
        None, help="Tag identifier; read from the reader when omitted"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Present a tag: activates its blocking, or releases it when already active."""
    setup_logging(verbose=verbose)
    settings = load_settings()

    if identifier is None:
        console.print("[bold blue]Hold your tag to the reader...[/bold blue]")
        outcome = KeyboardWedgeScanner(timeout=settings.scan_timeout_seconds).scan()
        if outcome.failure is not None:
            console.print(f"[yellow]Scan ended:[/yellow] {outcome.failure.value}")
            raise typer.Exit(1)
        identifier = outcome.identifier

    reply = run_command("scan", {"identifier": identifier})
    if reply.get("outcome") == "activated":
        report(reply, "[bold green]Blocking activated[/bold green] by '{name}'")
    else:
        report(reply, "[bold green]Blocking released[/bold green] for '{name}'")


@app.command()
def authorize(
    revoke: bool = typer.Option(False, "--revoke", help="Deny blocking permission"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Grant (or revoke) the permission to block apps."""
    setup_logging(verbose=verbose)
    settings = load_settings()
    service = StoredPermissionService(settings.permission_file)
    status = AuthorizationStatus.DENIED if revoke else AuthorizationStatus.APPROVED
    service.set_status(status)
    console.print(f"Blocking permission: [magenta]{status.value}[/magenta]")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Show the daemon, the active source and all tags and profiles."""
    setup_logging(verbose=verbose)
    settings = load_settings()
    running = is_daemon_running(settings)
    snapshot = load_snapshot()

    console.print("[bold cyan]Pause Lock - Status[/bold cyan]")
    console.print(
        "Daemon: "
        + ("[bold green]● Running[/bold green]" if running else "[bold red]○ Stopped[/bold red]")
    )
    console.print(f"Permission: [magenta]{snapshot['authorization']}[/magenta]")

    active = snapshot.get("active_source")
    if active:
        console.print(
            f"\n[bold yellow]⚠️ BLOCKING[/bold yellow] by {active['kind']} "
            f"[magenta]{active['name']}[/magenta]"
        )
    else:
        console.print("\nNo blocking currently active.")
    if snapshot.get("clear_pending"):
        console.print("[red]Clearing restrictions failed earlier; retrying.[/red]")

    _print_tags(snapshot)
    _print_profiles(snapshot)


def _print_tags(snapshot: dict[str, Any]) -> None:
    if not snapshot["tags"]:
        console.print("[yellow]No tags registered.[/yellow]")
        return
    table = Table(title="Tags")
    table.add_column("Name", style="magenta")
    table.add_column("Identifier", style="cyan")
    table.add_column("Selection", style="blue")
    table.add_column("Active", style="green")
    table.add_column("ID", style="dim")
    for tag in snapshot["tags"]:
        table.add_row(
            tag["name"],
            tag["identifier"],
            _selection_text(tag["selection"]),
            "●" if tag["is_active"] else "",
            tag["id"][:8],
        )
    console.print(table)


def _print_profiles(snapshot: dict[str, Any]) -> None:
    if not snapshot["profiles"]:
        console.print("[yellow]No time profiles.[/yellow]")
        return
    now = datetime.now()
    table = Table(title="Time Profiles")
    table.add_column("Name", style="magenta")
    table.add_column("Schedule", style="cyan")
    table.add_column("Enabled", style="yellow")
    table.add_column("Next start", style="green")
    table.add_column("Selection", style="blue")
    table.add_column("Blocking", style="green")
    table.add_column("ID", style="dim")
    for profile in snapshot["profiles"]:
        schedule = Schedule.model_validate(profile["schedule"])
        table.add_row(
            profile["name"],
            profile["schedule_text"],
            "Yes" if profile["is_enabled"] else "No",
            format_until(schedule.next_activation(now)) if profile["is_enabled"] else "-",
            _selection_text(profile["selection"]),
            "●" if profile["is_blocking"] else "",
            profile["id"][:8],
        )
    console.print(table)


@app.command()
def config(
    tick: float | None = typer.Option(None, "--tick", help="Schedule check interval in seconds"),
    preempt: bool | None = typer.Option(
        None, "--preempt/--no-preempt", help="Let tags replace an active time profile"
    ),
    summary: str | None = typer.Option(
        None, "--summary", "-s", help="Notification summary (use {name})"
    ),
    body: str | None = typer.Option(
        None, "--body", "-b", help="Notification body (use {name}, {start_time})"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure scheduling and notification settings."""
    setup_logging(verbose=verbose)
    current_settings = load_settings()

    if tick is not None:
        if tick < 1:
            console.print("[red]Error:[/red] Tick interval must be at least 1 second.")
            raise typer.Exit(1)
        current_settings.tick_interval_seconds = tick
    if preempt is not None:
        current_settings.tags_preempt_profiles = preempt
    if summary is not None:
        current_settings.notify_summary = summary
    if body is not None:
        current_settings.notify_body = body

    current_settings.save()

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Tick Interval (s)", f"{current_settings.tick_interval_seconds:g}")
    table.add_row("Tags Pre-empt Profiles", str(current_settings.tags_preempt_profiles))
    table.add_row("Summary Template", current_settings.notify_summary)
    table.add_row("Body Template", current_settings.notify_body)
    console.print(table)
    console.print("[green]Configuration saved![/green] Restart the daemon to apply it.")


@app.command()
def start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    daemonize: bool = typer.Option(
        False,
        "--daemonize",
        hidden=True,
        help="Internal flag for systemd to run the daemon directly.",
    ),
) -> None:
    """Starts the blocking daemon using systemd."""
    setup_logging(verbose=verbose, log_name="daemon" if daemonize else "cli")
    settings = load_settings()

    if daemonize:
        from pause_lock.daemon import run_daemon

        run_daemon(settings)
        return

    service_file = get_service_file()
    if not service_file.exists():
        console.print(
            "[red]Error:[/red] systemd service file not found. "
            "Run `pauselock start --daemonize` to run the daemon in the foreground."
        )
        raise typer.Exit(1)

    if is_daemon_running(settings):
        console.print("[yellow]Daemon is already running.[/yellow]")
        return

    console.print("Daemon is not running. Attempting to start it via systemd...")
    try:
        subprocess.run(
            ["systemctl", "--user", "start", SERVICE_NAME],
            check=True,
            capture_output=True,
            text=True,
        )
        console.print("Waiting for daemon to initialize...")
        time.sleep(2)

        if is_daemon_running(settings):
            console.print("[bold green]✔ Daemon started successfully via systemd.[/bold green]")
        else:
            console.print(
                "[bold red]✖ Error:[/bold red] Failed to start daemon. Check "
                f"`journalctl --user -u {SERVICE_NAME}`."
            )
    except FileNotFoundError:
        console.print("[red]Error:[/red] `systemctl` command not found.")
        raise typer.Exit(1)
    except subprocess.CalledProcessError as e:
        console.print("[red]Error starting systemd service:[/red]")
        console.print(f"[dim]{e.stderr}[/dim]")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


@tag_app.command("add")
def tag_add(
    name: str = typer.Argument(..., help="Display name"),
    identifier: str = typer.Argument(..., help="Tag UID, e.g. 04:A1:B2:C3"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Register a new tag."""
    setup_logging(verbose=verbose)
    report(run_command("tag_add", {"name": name, "identifier": identifier}),
           "[green]Registered tag[/green] '{name}'")


@tag_app.command("list")
def tag_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List registered tags."""
    setup_logging(verbose=verbose)
    _print_tags(load_snapshot())


@tag_app.command("link")
def tag_link(
    ref: str = typer.Argument(..., help="Tag name or id"),
    apps: list[str] | None = typer.Option(None, "--apps", "-a", help="App process names"),
    categories: list[str] | None = typer.Option(None, "--categories", "-c", help="Categories"),
    domains: list[str] | None = typer.Option(None, "--domains", "-d", help="Web domains"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Set what a tag blocks."""
    setup_logging(verbose=verbose)
    args = {
        "ref": ref,
        "apps": process_list(apps),
        "categories": process_list(categories),
        "domains": process_list(domains),
    }
    report(run_command("tag_link", args), "[green]Updated selection of[/green] '{name}'")


@tag_app.command("remove")
def tag_remove(
    ref: str = typer.Argument(..., help="Tag name or id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Delete a tag (not while it is active)."""
    setup_logging(verbose=verbose)
    report(run_command("tag_remove", {"ref": ref}), "[green]Removed tag[/green] '{name}'")


# ---------------------------------------------------------------------------
# Time profiles
# ---------------------------------------------------------------------------


@profile_app.command("add")
def profile_add(
    name: str = typer.Argument(..., help="Display name"),
    days: str = typer.Option("mon-fri", "--days", help="Weekdays, e.g. mon-fri or sat,sun"),
    start_time: str = typer.Option("9:00", "--start", help="Start time (e.g. 9am, 09:00)"),
    end_time: str = typer.Option("17:00", "--end", help="End time, exclusive"),
    disabled: bool = typer.Option(False, "--disabled", help="Create without enabling"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Create a time profile."""
    setup_logging(verbose=verbose)
    args = {
        "name": name,
        "days": days,
        "start": start_time,
        "end": end_time,
        "enabled": not disabled,
    }
    report(run_command("profile_add", args), "[green]Created time profile[/green] '{name}'")


@profile_app.command("list")
def profile_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List time profiles, with their next start."""
    setup_logging(verbose=verbose)
    _print_profiles(load_snapshot())


@profile_app.command("link")
def profile_link(
    ref: str = typer.Argument(..., help="Profile name or id"),
    apps: list[str] | None = typer.Option(None, "--apps", "-a", help="App process names"),
    categories: list[str] | None = typer.Option(None, "--categories", "-c", help="Categories"),
    domains: list[str] | None = typer.Option(None, "--domains", "-d", help="Web domains"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Set what a time profile blocks."""
    setup_logging(verbose=verbose)
    args = {
        "ref": ref,
        "apps": process_list(apps),
        "categories": process_list(categories),
        "domains": process_list(domains),
    }
    report(run_command("profile_link", args), "[green]Updated selection of[/green] '{name}'")


@profile_app.command("schedule")
def profile_schedule(
    ref: str = typer.Argument(..., help="Profile name or id"),
    days: str | None = typer.Option(None, "--days", help="Weekdays, e.g. mon-fri"),
    start_time: str | None = typer.Option(None, "--start", help="Start time"),
    end_time: str | None = typer.Option(None, "--end", help="End time, exclusive"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Change a time profile's window."""
    setup_logging(verbose=verbose)
    args = {"ref": ref, "days": days, "start": start_time, "end": end_time}
    report(run_command("profile_schedule", args), "[green]Rescheduled[/green] '{name}'")


@profile_app.command("toggle")
def profile_toggle(
    ref: str = typer.Argument(..., help="Profile name or id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Enable or disable a time profile (not while it is blocking)."""
    setup_logging(verbose=verbose)
    report(run_command("profile_toggle", {"ref": ref}), "[green]Toggled[/green] '{name}'")


@profile_app.command("remove")
def profile_remove(
    ref: str = typer.Argument(..., help="Profile name or id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Delete a time profile (not while it is blocking)."""
    setup_logging(verbose=verbose)
    report(run_command("profile_remove", {"ref": ref}), "[green]Removed time profile[/green] '{name}'")

"""CLI commands for habitclock."""

import asyncio
import re
import sys
from datetime import timedelta

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from habitclock import __logo__, __version__

app = typer.Typer(
    name="habitclock",
    help=f"{__logo__} habitclock - weekly habit alarms",
    no_args_is_help=True,
)
alarm_app = typer.Typer(help="Create, edit, toggle and delete alarms.", no_args_is_help=True)
app.add_typer(alarm_app, name="alarm")

console = Console()

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
PRESETS = {
    "everyday": [0, 1, 2, 3, 4, 5, 6],
    "daily": [0, 1, 2, 3, 4, 5, 6],
    "weekdays": [1, 2, 3, 4, 5],
    "weekends": [0, 6],
}


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} habitclock v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """habitclock - weekly habit alarms."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


# ============================================================================
# Wiring
# ============================================================================


class Services:
    """Storage, timer store and core services built from one Config."""

    def __init__(self):
        from habitclock.alarms.engine import AlarmEngine, NotificationContent
        from habitclock.alarms.manager import AlarmManager
        from habitclock.alarms.reconciler import FiringReconciler
        from habitclock.alarms.recorder import CompletionRecorder
        from habitclock.alarms.storage import JsonStorageBackend
        from habitclock.alarms.timer_store import JsonTimerStore
        from habitclock.config.loader import load_config

        self.config = load_config()
        workspace = self.config.workspace_path
        workspace.mkdir(parents=True, exist_ok=True)
        delivery = self.config.delivery

        self.storage = JsonStorageBackend(workspace)
        self.timer_store = JsonTimerStore(workspace, permission_granted=delivery.permission_granted)
        self.engine = AlarmEngine(
            self.timer_store,
            content=NotificationContent(
                alarm_body=delivery.alarm_body,
                verification_title=delivery.verification_title,
                verification_body=delivery.verification_body,
                sound=delivery.sound,
            ),
            rearm_interval=timedelta(days=self.config.alarms.rearm_interval_days),
        )
        self.recorder = CompletionRecorder(self.storage, default_user_id=self.config.alarms.owner_id)
        self.reconciler = FiringReconciler(self.engine, self.recorder, storage_backend=self.storage)
        self.manager = AlarmManager(
            self.storage,
            self.engine,
            default_user_id=self.config.alarms.owner_id,
            default_verification_delay=self.config.alarms.default_verification_delay,
        )


def parse_days(value: str) -> list[int]:
    """Parse "1,3,5", "mon,wed,fri" or a preset (weekdays, weekends, everyday).

    Days are 0 = Sunday ... 6 = Saturday.
    """
    lowered = value.strip().lower()
    if lowered in PRESETS:
        return list(PRESETS[lowered])
    names = [d.lower() for d in DAY_NAMES]
    days: set[int] = set()
    for chunk in re.split(r"[,\s]+", lowered):
        if not chunk:
            continue
        if chunk.isdigit() and 0 <= int(chunk) <= 6:
            days.add(int(chunk))
        elif chunk[:3] in names:
            days.add(names.index(chunk[:3]))
        else:
            raise typer.BadParameter(f"Unknown day {chunk!r}")
    return sorted(days)


def format_days(days: list[int]) -> str:
    for name, preset in (("Every day", PRESETS["everyday"]), ("Weekdays", PRESETS["weekdays"]), ("Weekends", PRESETS["weekends"])):
        if sorted(days) == preset:
            return name
    return ", ".join(DAY_NAMES[d] for d in sorted(days)) or "[dim]no days[/dim]"


def _report(result) -> None:
    """Print a ScheduleResult, exiting non-zero on failure."""
    if result is None or result.ok:
        if result is not None and result.scheduled:
            console.print(f"[green]✓[/green] {len(result.scheduled)} timers armed")
        return
    if result.error == "permission_denied":
        console.print("[red]Notifications are not permitted.[/red]")
        console.print("Set [cyan]delivery.permission_granted[/cyan] to true in the config, then run "
                      "[cyan]habitclock alarm resync[/cyan].")
    elif result.error == "store_failure":
        console.print(f"[yellow]Scheduling failed: {result.message}[/yellow]")
        console.print("Safe to retry with [cyan]habitclock alarm resync[/cyan].")
    else:
        console.print(f"[red]Error: {result.message}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Setup / Status
# ============================================================================


@app.command()
def onboard():
    """Initialize habitclock configuration and workspace."""
    from habitclock.config.loader import get_config_path, save_config
    from habitclock.config.schema import Config
    from habitclock.utils.helpers import get_workspace_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = get_workspace_path(config.workspace)
    console.print(f"[green]✓[/green] Created workspace at {workspace}")

    console.print(f"\n{__logo__} habitclock is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add an alarm: [cyan]habitclock alarm add \"Stretch\" 07:00 --days weekdays[/cyan]")
    console.print("  2. Keep it ticking: [cyan]habitclock run[/cyan]")


@app.command()
def status():
    """Show configuration and timer summary."""
    from habitclock.config.loader import get_config_path

    services = Services()
    alarms = asyncio.run(services.manager.list_alarms())
    timers = services.timer_store.list_pending()

    console.print(f"{__logo__} [bold]habitclock status[/bold]")
    console.print(f"Version: {__version__}")
    console.print(f"Config: {get_config_path()}")
    console.print(f"Workspace: {services.config.workspace_path}")

    table = Table(title="Summary")
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Alarms", f"{len(alarms)} ({sum(a.is_active for a in alarms)} active)")
    table.add_row("Pending timers", str(len(timers)))
    next_at = services.timer_store.next_fire_at()
    table.add_row("Next fire", next_at.isoformat(sep=" ") if next_at else "[dim]none[/dim]")
    table.add_row(
        "Notifications",
        "[green]permitted[/green]" if services.config.delivery.permission_granted else "[red]denied[/red]",
    )
    console.print(table)


# ============================================================================
# Alarm Commands
# ============================================================================


@alarm_app.command("add")
def alarm_add(
    title: str = typer.Argument(..., help="Alarm title (max 50 chars)"),
    time: str = typer.Argument(..., help="Time of day, HH:mm 24h"),
    days: str = typer.Option("everyday", "--days", "-d", help="e.g. 1,3,5 / mon,wed / weekdays"),
    delay: str = typer.Option(None, "--delay", help="Verification delay, e.g. '10 minutes'"),
    inactive: bool = typer.Option(False, "--inactive", help="Create switched off"),
):
    """Create an alarm and arm its timers."""
    from habitclock.alarms.errors import AlarmError

    services = Services()
    try:
        alarm, result = asyncio.run(
            services.manager.create_alarm(
                title, time, parse_days(days), verification_delay=delay, is_active=not inactive
            )
        )
    except (ValidationError, AlarmError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Created alarm [cyan]{alarm.id}[/cyan] '{alarm.title}'")
    _report(result)


@alarm_app.command("list")
def alarm_list():
    """List alarms."""
    services = Services()
    alarms = asyncio.run(services.manager.list_alarms())
    if not alarms:
        console.print("No alarms.")
        return

    table = Table(title="Alarms")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Time")
    table.add_column("Days")
    table.add_column("Verify after")
    table.add_column("Active")
    for a in alarms:
        table.add_row(
            a.id,
            a.title,
            a.time,
            format_days(a.days_of_week),
            a.verification_delay,
            "[green]on[/green]" if a.is_active else "[dim]off[/dim]",
        )
    console.print(table)


@alarm_app.command("edit")
def alarm_edit(
    alarm_id: str = typer.Argument(..., help="Alarm ID"),
    title: str = typer.Option(None, "--title"),
    time: str = typer.Option(None, "--time"),
    days: str = typer.Option(None, "--days", "-d"),
    delay: str = typer.Option(None, "--delay"),
):
    """Edit an alarm; its timers are cancelled and rebuilt."""
    from habitclock.alarms.errors import AlarmError

    changes = {}
    if title is not None:
        changes["title"] = title
    if time is not None:
        changes["time"] = time
    if days is not None:
        changes["days_of_week"] = parse_days(days)
    if delay is not None:
        changes["verification_delay"] = delay
    if not changes:
        console.print("[yellow]Nothing to change.[/yellow]")
        raise typer.Exit()

    services = Services()
    try:
        alarm, result = asyncio.run(services.manager.update_alarm(alarm_id, **changes))
    except (ValidationError, AlarmError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Updated '{alarm.title}'")
    _report(result)


@alarm_app.command("toggle")
def alarm_toggle(alarm_id: str = typer.Argument(..., help="Alarm ID")):
    """Switch an alarm on or off."""
    from habitclock.alarms.errors import AlarmError

    services = Services()
    try:
        alarm, result = asyncio.run(services.manager.toggle_alarm(alarm_id))
    except AlarmError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    state = "[green]on[/green]" if alarm.is_active else "[dim]off[/dim]"
    console.print(f"'{alarm.title}' is now {state}")
    _report(result)


@alarm_app.command("delete")
def alarm_delete(
    alarm_id: str = typer.Argument(..., help="Alarm ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete an alarm and its pending timers."""
    from habitclock.alarms.errors import AlarmError

    if not yes and not typer.confirm("Are you sure you want to delete this alarm?"):
        raise typer.Exit()
    services = Services()
    try:
        result = asyncio.run(services.manager.delete_alarm(alarm_id))
    except AlarmError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    _report(result)
    console.print(f"[green]✓[/green] Deleted {alarm_id} ({result.cancelled} timers cancelled)")


@alarm_app.command("resync")
def alarm_resync():
    """Rebuild every alarm's timers from the stored alarms."""
    services = Services()
    results = asyncio.run(services.manager.resync_all())
    failed = [r for r in results if not r.ok]
    console.print(f"[green]✓[/green] Resynced {len(results) - len(failed)} alarms")
    for r in failed:
        console.print(f"[red]✗[/red] {r.alarm_id}: {r.error} {r.message}")
    if failed:
        raise typer.Exit(1)


# ============================================================================
# Timer / Runtime Commands
# ============================================================================


@app.command()
def timers(alarm_id: str = typer.Option(None, "--alarm", "-a", help="Only this alarm")):
    """List pending timers."""
    services = Services()
    pending = asyncio.run(services.engine.pending_timers(alarm_id))
    if not pending:
        console.print("No pending timers.")
        return

    table = Table(title="Pending timers")
    table.add_column("ID", style="cyan")
    table.add_column("Fires at")
    table.add_column("Alarm")
    table.add_column("Kind")
    table.add_column("Title")
    for t in sorted(pending, key=lambda t: t.fire_at):
        table.add_row(t.id, t.fire_at.replace("T", " "), t.payload.alarm_id, t.payload.kind, t.title)
    console.print(table)


@app.command()
def fire(timer_id: str = typer.Argument(..., help="Pending timer ID")):
    """Fire a pending timer now, as if the user tapped its notification."""
    from habitclock.alarms.dispatcher import (
        dispatch_notification_event,
        event_from_timer,
        reset_notification_handling,
        setup_notification_handling,
    )

    services = Services()
    timer = next((t for t in services.timer_store.list_pending() if t.id == timer_id), None)
    if timer is None:
        console.print(f"[red]Error: timer '{timer_id}' is not pending[/red]")
        raise typer.Exit(1)
    if not services.timer_store.cancel(timer_id):
        console.print(f"[red]Error: timer '{timer_id}' already fired[/red]")
        raise typer.Exit(1)

    setup_notification_handling(services.reconciler)
    try:
        result = asyncio.run(dispatch_notification_event(event_from_timer(timer, source="response")))
    finally:
        reset_notification_handling()
    if result.completion_recorded:
        console.print(f"[green]✓[/green] Completion recorded for {result.alarm_id}")
    if result.rearmed_timer_id:
        console.print(f"[green]✓[/green] Re-armed as {result.rearmed_timer_id}")
    if result.error:
        console.print(f"[yellow]{result.error}[/yellow]")


@app.command()
def respond(
    alarm_id: str = typer.Argument(..., help="Alarm ID"),
    done: bool = typer.Option(True, "--done/--not-done", help="Did you complete it today?"),
):
    """Answer today's verification prompt for an alarm."""
    services = Services()
    ok = asyncio.run(services.reconciler.respond(alarm_id, done))
    if not ok:
        console.print("[red]Error: could not save the answer[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Recorded {'done' if done else 'not done'} for today")


@app.command()
def history(
    alarm_id: str = typer.Argument(..., help="Alarm ID"),
    weeks: int = typer.Option(12, "--weeks", "-w", min=1, max=52),
):
    """Show a contribution graph of completed days."""
    services = Services()
    days = services.recorder.history(alarm_id, weeks=weeks)
    for weekday in range(7):
        row = days[weekday::7]
        cells = "".join("[green]■[/green]" if done else "[dim]□[/dim]" for _, done in row)
        console.print(f"{DAY_NAMES[weekday][0]} {cells}")
    console.print(f"\n{sum(done for _, done in days)} days completed in the last {weeks} weeks")


@app.command()
def run():
    """Deliver due notifications and keep every alarm re-arming."""
    from habitclock.alarms.dispatcher import (
        TimerDispatcher,
        reset_notification_handling,
        setup_notification_handling,
    )

    services = Services()
    setup_notification_handling(services.reconciler)

    async def deliver(event):
        console.print(f"\n{__logo__} [bold]{event.title}[/bold]\n{event.body}")

    dispatcher = TimerDispatcher(
        services.timer_store,
        deliver=deliver,
        max_sleep_s=services.config.dispatcher.max_sleep_s,
        missed_after=timedelta(minutes=services.config.dispatcher.missed_after_minutes),
    )

    async def main_loop():
        await dispatcher.start()
        await asyncio.Event().wait()

    console.print(f"{__logo__} Delivering notifications (Ctrl+C to exit)")
    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        console.print("\nShutting down...")
    finally:
        dispatcher.stop()
        reset_notification_handling()


if __name__ == "__main__":
    app()

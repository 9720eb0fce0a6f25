import signal
from contextlib import contextmanager

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from self_control import password as passwords
from self_control.daemon import resume_from_background, start_background
from self_control.engine import BlockEngine, load_engine
from self_control.errors import SelfControlError, StrictModeError
from self_control.schema import Mode, TimeRange
from self_control.settings import settings
from self_control.store import ConfigStore, ScheduleStore, SiteStore
from self_control.utils.logging import setup_logging
from self_control.utils.processes import is_process_alive, read_pid
from self_control.utils.signals import critical_section, handle_exit_signals
from self_control.utils.time import (
    DAYS_OF_WEEK,
    format_duration_seconds,
    format_timestamp,
    now,
    parse_duration,
)

app = typer.Typer(help="Selfcontrol - block distracting websites through the hosts file")
site_app = typer.Typer(help="Manage blocked sites")
day_app = typer.Typer(help="Manage the weekly time ranges in config.yaml")
schedule_app = typer.Typer(help="Manage named schedules")
app.add_typer(site_app, name="site")
app.add_typer(day_app, name="day")
app.add_typer(schedule_app, name="schedule")

console = Console()

VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def _fail(error: Exception | str):
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(1) from None


def _hand_off(engine: BlockEngine) -> None:
    try:
        pid = engine.hand_off(start_background)
    except (SelfControlError, OSError) as e:
        console.print(f"[red]Error:[/red] Could not start background instance: {e}")
        return
    if pid:
        console.print(
            f"[green]Active blocks continue in the background[/green] "
            f"(PID: [magenta]{pid}[/magenta])"
        )


def _exit_on_signal(signum, frame):
    logger.info(f"Received {signal.Signals(signum).name}, exiting")
    raise typer.Exit(0)


@contextmanager
def _session(verbose: bool, console_logs: bool = True):
    """
    Takes over from a running background instance, yields the engine and
    hands any blocks still running back to a new background instance on exit,
    including an exit by SIGINT or SIGTERM.
    """
    setup_logging(verbose=verbose, console=console_logs)
    engine = None
    with handle_exit_signals(_exit_on_signal):
        try:
            engine = load_engine()
            resume_from_background(engine)
            yield engine
        except SelfControlError as e:
            _fail(e)
        finally:
            if engine is not None:
                with critical_section():
                    _hand_off(engine)


def _require_password() -> None:
    if not passwords.has_password():
        return
    entered = typer.prompt("Password", hide_input=True)
    try:
        ok = passwords.verify_password(entered)
    except SelfControlError as e:
        _fail(e)
    if not ok:
        _fail("Incorrect password")


def _print_status(engine: BlockEngine) -> None:
    info = engine.status()
    pid = read_pid(settings.lock_file)
    background_alive = pid is not None and is_process_alive(pid)

    console.print("[bold cyan]Selfcontrol - Status[/bold cyan]")
    mode_style = "bold red" if info["mode"] == Mode.STRICT.value else "bold green"
    console.print(f"Mode: [{mode_style}]{info['mode']}[/{mode_style}]")
    if background_alive:
        console.print(f"Background PID: [magenta]{pid}[/magenta]")

    hosts = engine.hosts.blocked_hosts()
    if info["active"] or hosts:
        console.print("\n[bold yellow]ACTIVE BLOCK[/bold yellow]")
        expires = info["expires_at"] or engine.expiry_description()
        if expires:
            console.print(f"Expires at: {expires}")
        if info["custom_time"]:
            console.print("Started from a custom time")
        console.print(f"Blocking: [magenta]{', '.join(hosts) or 'nothing'}[/magenta]")
    else:
        console.print("\nNo block currently active.")


# --- Setup ---


@app.command()
def init(verbose: bool = VerboseOption) -> None:
    """Create the default configuration documents if they are missing."""
    setup_logging(verbose=verbose)
    for store in (ConfigStore(), SiteStore(), ScheduleStore()):
        if store.path.exists():
            console.print(f"[dim]{store.path} already exists[/dim]")
            continue
        store.create_default()
        console.print(f"[green]Created[/green] {store.path}")


# --- Blocking ---


@app.command()
def block(
    duration: str | None = typer.Option(
        None, "--duration", "-d", help="Block for a fixed time (e.g. 30m, 1h30m)"
    ),
    wait: bool = typer.Option(
        False, "--wait", "-w", help="Stay in the foreground until the block ends"
    ),
    verbose: bool = VerboseOption,
) -> None:
    """
    Block every configured site, until the end of the active schedule range
    or for --duration.
    """
    with _session(verbose) as engine:
        if duration:
            expiry = engine.block_for_duration(parse_duration(duration))
        else:
            expiry = engine.block_by_schedule()
        console.print(
            f"[bold green]Blocking started[/bold green] until {format_timestamp(expiry)}"
        )
        if not wait:
            return
        console.print("Press Ctrl+C to leave; the block continues in the background.")
        while not engine.registry.wait_idle(timeout=1):
            pass
        console.print("[green]Block finished.[/green]")


@app.command()
def unblock(
    url: str | None = typer.Argument(None, help="Only unblock this site"),
    verbose: bool = VerboseOption,
) -> None:
    """Lift every block, or a single site's block."""
    _require_password()
    with _session(verbose) as engine:
        if url:
            engine.unblock_site(url)
            console.print(f"[green]Unblocked[/green] {url}")
        else:
            cancelled = engine.unblock_all()
            console.print(
                f"[green]Unblocked all sites[/green] "
                f"({len(cancelled)} active blocks cancelled)"
            )


@app.command()
def status(verbose: bool = VerboseOption) -> None:
    """Show the mode and the active block."""
    setup_logging(verbose=verbose)
    try:
        _print_status(load_engine())
    except SelfControlError as e:
        _fail(e)


@app.command()
def strict(
    enable: bool = typer.Argument(..., help="on/off, true/false"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    verbose: bool = VerboseOption,
) -> None:
    """Turn strict mode on or off."""
    if enable and not yes:
        typer.confirm(
            "In strict mode active blocks cannot be lifted until they expire. Continue?",
            abort=True,
        )
    if not enable:
        _require_password()
    with _session(verbose) as engine:
        if enable:
            engine.enter_strict()
            console.print("[bold red]Strict mode enabled.[/bold red]")
        else:
            engine.leave_strict()
            console.print("[green]Strict mode disabled.[/green]")


@app.command()
def background(verbose: bool = VerboseOption) -> None:
    """Hand the running blocks to a background instance and exit."""
    with _session(verbose) as engine:
        if not engine.registry.count():
            console.print("[yellow]Nothing is being blocked.[/yellow]")


@app.command(name="password")
def set_password(verbose: bool = VerboseOption) -> None:
    """Set or change the password protecting the menu and unblocking."""
    setup_logging(verbose=verbose)
    try:
        if passwords.has_password():
            current = typer.prompt("Current password", hide_input=True)
            new = typer.prompt("New password", hide_input=True, confirmation_prompt=True)
            passwords.change_password(current, new)
        else:
            new = typer.prompt("New password", hide_input=True, confirmation_prompt=True)
            passwords.set_password(new)
    except SelfControlError as e:
        _fail(e)
    console.print("[green]Password saved.[/green]")


# --- Sites ---


@site_app.command("add")
def site_add(url: str, verbose: bool = VerboseOption) -> None:
    """Add a site to the list blocked by schedules and custom blocks."""
    with _session(verbose) as engine:
        engine.check_access()
        added = engine.add_site_and_reblock(url)
        console.print(f"[green]Added site:[/green] {added}")


@site_app.command("remove")
def site_remove(url: str, verbose: bool = VerboseOption) -> None:
    """Remove a site from the block list."""
    with _session(verbose) as engine:
        engine.check_access()
        removed = engine.remove_site_and_unblock(url)
        console.print(f"[green]Removed site:[/green] {removed}")


@site_app.command("edit")
def site_edit(old: str, new: str, verbose: bool = VerboseOption) -> None:
    """Replace a configured site with another URL."""
    with _session(verbose) as engine:
        engine.check_access()
        added = engine.edit_site(old, new)
        console.print(f"[green]Replaced[/green] {old} [green]with[/green] {added}")


@site_app.command("block")
def site_block(
    url: str | None = typer.Argument(None, help="Site to block"),
    duration: str = typer.Option(..., "--duration", "-d", help="e.g. 45m, 2h"),
    all_sites: bool = typer.Option(
        False, "--all", "-a", help="Block every site in blocked-sites.yaml"
    ),
    verbose: bool = VerboseOption,
) -> None:
    """Block a single site, or every per-site entry, for a duration (normal mode)."""
    if not url and not all_sites:
        _fail("Pass a URL or --all")
    with _session(verbose) as engine:
        engine.check_access()
        expiry = now() + parse_duration(duration)
        if all_sites:
            urls = engine.block_all_sites(expiry)
            if not urls:
                console.print("[yellow]No per-site entries to block.[/yellow]")
                return
            console.print(
                f"[green]Blocking {len(urls)} sites[/green] until {format_timestamp(expiry)}"
            )
            return
        try:
            engine.site_store.get(url)
        except SelfControlError:
            engine.site_store.add(url)
        engine.block_site(url, expiry)
        console.print(f"[green]Blocking[/green] {url} until {format_timestamp(expiry)}")


@site_app.command("expiry")
def site_expiry(
    url: str,
    duration: str = typer.Option(..., "--duration", "-d", help="New expiry from now, e.g. 2h"),
    verbose: bool = VerboseOption,
) -> None:
    """Move a per-site entry's expiry; a running block restarts its countdown."""
    with _session(verbose) as engine:
        engine.check_access()
        expiry = now() + parse_duration(duration)
        engine.update_site_expiry(url, expiry)
        console.print(f"[green]{url} now expires at[/green] {format_timestamp(expiry)}")


@site_app.command("forget")
def site_forget(url: str, verbose: bool = VerboseOption) -> None:
    """Remove a per-site entry from blocked-sites.yaml, lifting its block."""
    with _session(verbose) as engine:
        engine.check_access()
        site = engine.forget_site(url)
        console.print(f"[green]Removed per-site entry:[/green] {site.url}")


@site_app.command("list")
def site_list(verbose: bool = VerboseOption) -> None:
    """List configured sites and their per-site blocks."""
    setup_logging(verbose=verbose)
    try:
        engine = load_engine()
        config = engine.config_store.load()
        sites = engine.site_store.all() if engine.site_store.path.exists() else []
    except SelfControlError as e:
        _fail(e)

    if not config.sites and not sites:
        console.print("[yellow]No sites configured.[/yellow]")
        return

    table = Table(title="Blocked Sites")
    table.add_column("#", justify="right", style="cyan", no_wrap=True)
    table.add_column("Site", style="magenta")
    table.add_column("Source", style="blue")
    table.add_column("Expires", style="green")
    table.add_column("Blocked", style="yellow")

    hosts = set(engine.hosts.blocked_hosts())
    rows = [(url, "config", "", url in hosts) for url in config.sites]
    rows += [(s.url, "per-site", s.duration, s.currently_blocked) for s in sites]
    for i, (url, source, expires, blocked) in enumerate(rows, 1):
        table.add_row(str(i), url, source, expires, "Yes" if blocked else "No")
    console.print(table)


# --- Weekly ranges ---


@day_app.command("add")
def day_add(
    day: str,
    start: str = typer.Argument(..., help="Start time (HH:MM)"),
    end: str = typer.Argument(..., help="End time (HH:MM)"),
    verbose: bool = VerboseOption,
) -> None:
    """Add a weekday with its first time range."""
    with _session(verbose) as engine:
        engine.check_access()
        engine.config_store.add_day(day, [TimeRange(start=start, end=end)])
        console.print(f"[green]Added {day}:[/green] {start} - {end}")


@day_app.command("delete")
def day_delete(day: str, verbose: bool = VerboseOption) -> None:
    """Delete a weekday and all its ranges."""
    with _session(verbose) as engine:
        engine.check_access()
        engine.config_store.delete_day(day)
        console.print(f"[green]Deleted {day}[/green]")


@day_app.command("add-range")
def day_add_range(
    day: str,
    start: str = typer.Argument(..., help="Start time (HH:MM)"),
    end: str = typer.Argument(..., help="End time (HH:MM)"),
    verbose: bool = VerboseOption,
) -> None:
    """Add another time range to an existing weekday."""
    with _session(verbose) as engine:
        engine.check_access()
        engine.config_store.add_time_range(day, TimeRange(start=start, end=end))
        console.print(f"[green]Added range to {day}:[/green] {start} - {end}")


@day_app.command("delete-range")
def day_delete_range(
    day: str,
    index: int = typer.Argument(..., help="Index of the range (from `day list`)"),
    verbose: bool = VerboseOption,
) -> None:
    """Delete one time range of a weekday."""
    with _session(verbose) as engine:
        engine.check_access()
        removed = engine.config_store.delete_time_range(day, index)
        console.print(f"[green]Deleted range:[/green] {removed.start} - {removed.end}")


@day_app.command("edit")
def day_edit(
    day: str,
    index: int = typer.Argument(..., help="Index of the range (from `day list`)"),
    start: str | None = typer.Option(None, "--start", "-s", help="New start time"),
    end: str | None = typer.Option(None, "--end", "-e", help="New end time"),
    verbose: bool = VerboseOption,
) -> None:
    """Change the start and/or end of a time range."""
    if start is None and end is None:
        _fail("Pass --start and/or --end")
    with _session(verbose) as engine:
        engine.check_access()
        updated = None
        if start is not None:
            updated = engine.config_store.edit_time(day, index, start, start=True)
        if end is not None:
            updated = engine.config_store.edit_time(day, index, end, start=False)
        console.print(f"[green]Updated range:[/green] {updated.start} - {updated.end}")


@day_app.command("list")
def day_list(verbose: bool = VerboseOption) -> None:
    """List the weekly time ranges."""
    setup_logging(verbose=verbose)
    try:
        config = load_engine().config_store.load()
    except SelfControlError as e:
        _fail(e)

    if not config.schedules:
        console.print("[yellow]No time ranges configured.[/yellow]")
        return

    table = Table(title="Weekly Time Ranges")
    table.add_column("Day", style="cyan")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Start", style="magenta")
    table.add_column("End", style="magenta")
    for day in sorted(config.schedules, key=DAYS_OF_WEEK.index):
        for i, time_range in enumerate(config.schedules[day], 1):
            table.add_row(day, str(i), time_range.start, time_range.end)
    console.print(table)


# --- Named schedules ---


@schedule_app.command("add")
def schedule_add(
    name: str,
    days: str = typer.Option(..., "--days", "-d", help="Comma separated weekdays"),
    start: str = typer.Option(..., "--start", "-s", help="Start time (HH:MM)"),
    end: str = typer.Option(..., "--end", "-e", help="End time (HH:MM)"),
    verbose: bool = VerboseOption,
) -> None:
    """Add a named schedule."""
    with _session(verbose) as engine:
        engine.check_access()
        sched = engine.schedule_store.add(name, days.split(","), start, end)
        console.print(
            f"[green]Added schedule {sched.name}:[/green] "
            f"{', '.join(sched.days)} {sched.start_time} - {sched.end_time}"
        )


@schedule_app.command("edit")
def schedule_edit(
    name: str,
    field: str = typer.Argument(..., help="name, days, start_time or end_time"),
    value: str = typer.Argument(...),
    verbose: bool = VerboseOption,
) -> None:
    """Change one field of a named schedule."""
    with _session(verbose) as engine:
        engine.check_access()
        sched = engine.schedule_store.edit(name, field, value)
        console.print(f"[green]Updated schedule {sched.name}[/green]")


@schedule_app.command("delete")
def schedule_delete(name: str, verbose: bool = VerboseOption) -> None:
    """Delete a named schedule."""
    with _session(verbose) as engine:
        engine.check_access()
        engine.schedule_store.delete(name)
        console.print(f"[green]Deleted schedule {name}[/green]")


@schedule_app.command("list")
def schedule_list(verbose: bool = VerboseOption) -> None:
    """List named schedules."""
    setup_logging(verbose=verbose)
    try:
        schedules = ScheduleStore().all()
    except SelfControlError as e:
        _fail(e)

    if not schedules:
        console.print("[yellow]No schedules found.[/yellow]")
        return

    table = Table(title="Schedules")
    table.add_column("Name", style="cyan")
    table.add_column("Days", style="blue")
    table.add_column("Start", style="magenta")
    table.add_column("End", style="magenta")
    for sched in schedules:
        table.add_row(sched.name, ", ".join(sched.days), sched.start_time, sched.end_time)
    console.print(table)


# --- Interactive menu ---


def _menu_block_now(engine: BlockEngine):
    duration = parse_duration(typer.prompt("Block for (e.g. 30m, 1h30m)"))
    expiry = engine.block_for_duration(duration)
    console.print(
        f"[green]Blocking for {format_duration_seconds(int(duration.total_seconds()))}"
        f"[/green] until {format_timestamp(expiry)}"
    )


def _menu_block_schedule(engine: BlockEngine):
    expiry = engine.block_by_schedule()
    console.print(f"[green]Blocking by schedule[/green] until {format_timestamp(expiry)}")


def _menu_toggle_strict(engine: BlockEngine):
    if engine.mode() == Mode.STRICT:
        engine.leave_strict()
        console.print("[green]Strict mode disabled.[/green]")
    elif typer.confirm("Blocks cannot be lifted in strict mode. Enable it?"):
        engine.enter_strict()
        console.print("[bold red]Strict mode enabled.[/bold red]")


def _menu_add_site(engine: BlockEngine):
    engine.check_access()
    console.print(f"[green]Added site:[/green] {engine.add_site_and_reblock(typer.prompt('URL'))}")


def _menu_remove_site(engine: BlockEngine):
    engine.check_access()
    console.print(
        f"[green]Removed site:[/green] {engine.remove_site_and_unblock(typer.prompt('URL'))}"
    )


def _menu_edit_site(engine: BlockEngine):
    engine.check_access()
    added = engine.edit_site(typer.prompt("Current URL"), typer.prompt("New URL"))
    console.print(f"[green]Site is now[/green] {added}")


def _menu_add_range(engine: BlockEngine):
    engine.check_access()
    day = typer.prompt("Day").strip().lower()
    time_range = TimeRange(start=typer.prompt("Start (HH:MM)"), end=typer.prompt("End (HH:MM)"))
    if day in engine.config_store.load().schedules:
        engine.config_store.add_time_range(day, time_range)
    else:
        engine.config_store.add_day(day, [time_range])
    console.print(f"[green]Added range to {day}[/green]")


def _menu_delete_range(engine: BlockEngine):
    engine.check_access()
    day = typer.prompt("Day").strip().lower()
    index = typer.prompt("Range number", type=int)
    removed = engine.config_store.delete_time_range(day, index)
    console.print(f"[green]Deleted range:[/green] {removed.start} - {removed.end}")


def _menu_add_schedule(engine: BlockEngine):
    engine.check_access()
    sched = engine.schedule_store.add(
        typer.prompt("Name"),
        typer.prompt("Days (comma separated)").split(","),
        typer.prompt("Start (HH:MM)"),
        typer.prompt("End (HH:MM)"),
    )
    console.print(f"[green]Added schedule {sched.name}[/green]")


def _menu_edit_schedule(engine: BlockEngine):
    engine.check_access()
    name = typer.prompt("Schedule name")
    field = typer.prompt("Field (name, days, start_time, end_time)")
    engine.schedule_store.edit(name, field, typer.prompt("New value"))
    console.print(f"[green]Updated schedule {name}[/green]")


def _menu_delete_schedule(engine: BlockEngine):
    engine.check_access()
    name = typer.prompt("Schedule name")
    engine.schedule_store.delete(name)
    console.print(f"[green]Deleted schedule {name}[/green]")


def _menu_change_password(engine: BlockEngine):
    current = typer.prompt("Current password", hide_input=True) if passwords.has_password() else ""
    new = typer.prompt("New password", hide_input=True, confirmation_prompt=True)
    if current:
        passwords.change_password(current, new)
    else:
        passwords.set_password(new)
    console.print("[green]Password saved.[/green]")


MENU = [
    ("Block now (custom time)", _menu_block_now),
    ("Block by schedule", _menu_block_schedule),
    ("Show status", _print_status),
    ("Toggle strict mode", _menu_toggle_strict),
    ("Add site", _menu_add_site),
    ("Edit site", _menu_edit_site),
    ("Remove site", _menu_remove_site),
    ("Add time range", _menu_add_range),
    ("Delete time range", _menu_delete_range),
    ("Add schedule", _menu_add_schedule),
    ("Edit schedule", _menu_edit_schedule),
    ("Delete schedule", _menu_delete_schedule),
    ("Change password", _menu_change_password),
]


@app.command()
def menu(verbose: bool = VerboseOption) -> None:
    """Interactive menu. On exit, running blocks move to a background instance."""
    _require_password()
    # Timer threads log to the file only, so prompts stay readable
    with _session(verbose, console_logs=False) as engine:
        while True:
            console.print("\n[bold cyan]Selfcontrol[/bold cyan]")
            for i, (label, _) in enumerate(MENU, 1):
                console.print(f"  [cyan]{i:>2}[/cyan]. {label}")
            console.print(f"  [cyan]{len(MENU) + 1:>2}[/cyan]. Run in background and exit")
            console.print(f"  [cyan]{0:>2}[/cyan]. Exit")

            choice = typer.prompt("Choose", type=int)
            if choice in (0, len(MENU) + 1):
                return
            if not 1 <= choice <= len(MENU):
                console.print(f"[red]Error:[/red] Invalid choice {choice}")
                continue
            try:
                MENU[choice - 1][1](engine)
            except StrictModeError as e:
                console.print(f"[bold red]Locked:[/bold red] {e}")
            except SelfControlError as e:
                console.print(f"[red]Error:[/red] {e}")


@app.callback()
def main():
    """
    Selfcontrol - block distracting websites by time schedule or for a fixed
    duration, with a strict mode that cannot be undone until the block ends.

    Run `selfcontrol init`, add sites with `selfcontrol site add`, then use
    `selfcontrol block` or the interactive `selfcontrol menu`.
    """

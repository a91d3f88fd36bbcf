import threading

from loguru import logger
from rich.console import Console

from pause_lock.commands import drain
from pause_lock.engine import Engine
from pause_lock.settings import Settings, load_settings
from pause_lock.utils.state import cleanup_state, write_state

console = Console()


def run_once(engine: Engine) -> None:
    """One daemon iteration: commands, enforcement sweep, wake-ups, status file."""
    drain(engine)
    if engine.controller.clear_pending and not engine.loop.is_running:
        engine.controller.evaluate_schedule()
    engine.sweep()
    engine.notifier.fire_due()
    write_state(engine.settings, engine.controller.snapshot())


def run_daemon(settings: Settings | None = None, stop_event: threading.Event | None = None):
    """Main loop for the blocking daemon."""
    settings = settings or load_settings()
    stop_event = stop_event or threading.Event()

    engine = Engine(settings)
    console.print("[bold green]Pause Lock daemon started...[/bold green]")
    console.print(f"Data directory: [cyan]{settings.data_dir}[/cyan]")

    result = engine.cold_start()
    active = engine.controller.active_source
    console.print(
        f"Restored state: [magenta]{engine.controller.name_of(active) if active else 'idle'}[/magenta] "
        f"({result.outcome.value})"
    )
    console.print("Waiting for scans, commands and schedules. Press Ctrl+C to stop.")

    try:
        while not stop_event.is_set():
            try:
                run_once(engine)
            except Exception as e:
                logger.exception(f"Daemon iteration failed: {e}")
            stop_event.wait(timeout=settings.daemon_poll_seconds)
    except KeyboardInterrupt:
        pass
    finally:
        console.print("\n[yellow]Stopping daemon...[/yellow]")
        engine.shutdown()
        cleanup_state(settings)

import sys

from loguru import logger

from pause_lock.settings import Settings, settings as default_settings

LOG_FORMAT_CONSOLE = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | "
    "<level>{message}</level>"
)
LOG_FORMAT_FILE = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {name} | {message}"


def setup_logging(
    verbose: bool = False, settings: Settings | None = None, log_name: str = "cli"
) -> None:
    """
    Configure loguru sinks for one process.

    The CLI and the daemon log to separate files (`cli.log`, `daemon.log`)
    in `log_dir`. The file sink records the thread name.

    Args:
        verbose (bool): If True, enables DEBUG level logging to stderr.
        settings (Settings): Overrides the module-level settings (log_dir, debug).
        log_name (str): Base name of the log file.
    """
    settings = settings or default_settings
    logger.remove()

    level = "DEBUG" if verbose or settings.debug else "INFO"
    logger.add(sys.stderr, level=level, format=LOG_FORMAT_CONSOLE)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = settings.log_dir / f"{log_name}.log"
    logger.add(
        log_file_path,
        level="DEBUG",
        format=LOG_FORMAT_FILE,
        rotation="5 MB",
        retention=5,
        compression="zip",
        enqueue=True,
    )

    logger.debug(f"Logging initialized. Logs saved to: {log_file_path}")

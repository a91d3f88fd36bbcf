import json
import os
from datetime import datetime

from loguru import logger

from pause_lock.settings import Settings

_last_written_state: dict | None = None


def write_state(settings: Settings, snapshot: dict | None = None):
    """Writes the current daemon state to a file for the 'status' command."""
    global _last_written_state
    state = {
        "pid": os.getpid(),
        "snapshot": snapshot,
    }

    if state == _last_written_state and settings.state_file.exists():
        return  # No change, no need to write

    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        with open(settings.state_file, "w") as f:
            json.dump({**state, "last_update": datetime.now().isoformat()}, f, indent=4)
        _last_written_state = state
    except OSError as e:
        logger.error(f"Failed to write state file: {e}")


def read_state(settings: Settings) -> dict | None:
    if not settings.state_file.exists():
        return None
    try:
        with open(settings.state_file) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return None


def is_daemon_running(settings: Settings) -> bool:
    """Checks if the daemon is running via state file and PID."""
    state = read_state(settings)
    pid = state.get("pid") if state else None
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def cleanup_state(settings: Settings):
    """Removes the state file when the daemon stops."""
    global _last_written_state
    _last_written_state = None
    try:
        settings.state_file.unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"Failed to remove state file: {e}")

import os

import psutil
from loguru import logger

from pause_lock.utils.notifications import send_notification


def _matches(proc_info: dict, app_tokens: set[str]) -> str | None:
    """Returns the token naming this process (by name or executable basename)."""
    candidates = [proc_info.get("name") or ""]
    exe = proc_info.get("exe")
    if exe:
        candidates.append(os.path.basename(exe))
    for candidate in candidates:
        if candidate.lower() in app_tokens:
            return candidate.lower()
    return None


def kill_processes(app_tokens: set[str] | frozenset[str]) -> set[str]:
    """
    Kills running processes named by a selection's app tokens.

    Tokens match the process name or the executable's basename, ignoring
    case. Returns the tokens that matched at least one killed process.
    """
    wanted = {token.lower() for token in app_tokens if token}
    blocked: set[str] = set()
    if not wanted:
        return blocked

    for proc in psutil.process_iter(["name", "exe"]):
        try:
            token = _matches(proc.info, wanted)
            if token is None:
                continue
            logger.info(f"Blocking {proc.info['name']} (PID: {proc.pid})")
            proc.kill()
            blocked.add(token)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    for token in sorted(blocked):
        send_notification(f"Blocked {token}", "This app is blocked right now.")

    return blocked

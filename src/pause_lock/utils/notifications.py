import subprocess
import threading
from datetime import datetime

from loguru import logger

from pause_lock.settings import settings


def send_notification(summary: str, body: str):
    """Sends a desktop notification using notify-send."""
    logger.info(f"Sending notification: {summary} | {body}")
    cmd = ["notify-send", summary, body, "-a", settings.app_name]
    try:
        subprocess.run(cmd, check=False)
    except FileNotFoundError:
        logger.error("notify-send not found. Install libnotify-bin.")
    except Exception as e:
        logger.error(f"Failed to send notification: {e}")


class NotificationScheduler:
    """
    Holds pending wake-ups keyed by payload id and fires the due ones.

    `schedule_wake` is fire-and-forget: scheduling the same id again replaces
    the earlier wake-up.
    """

    def __init__(self, sender=send_notification):
        self._sender = sender
        self._pending: dict[str, tuple[datetime, dict]] = {}
        self._lock = threading.Lock()

    def schedule_wake(self, at: datetime, payload: dict) -> None:
        key = str(payload.get("id", at.isoformat()))
        with self._lock:
            self._pending[key] = (at, payload)
        logger.debug(f"Wake-up scheduled for {at:%a %H:%M} ({payload.get('name', key)})")

    def cancel_all(self) -> None:
        with self._lock:
            self._pending.clear()

    def pending(self) -> list[tuple[datetime, dict]]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda item: item[0])

    def fire_due(self, now: datetime | None = None) -> int:
        """Sends every wake-up whose time has come. Returns how many fired."""
        now = now or datetime.now()
        with self._lock:
            due = [k for k, (at, _) in self._pending.items() if at <= now]
            fired = [self._pending.pop(k) for k in due]

        for _, payload in fired:
            try:
                self._sender(payload.get("summary", ""), payload.get("body", ""))
            except Exception as e:
                logger.error(f"Failed to deliver wake-up notification: {e}")
        return len(fired)

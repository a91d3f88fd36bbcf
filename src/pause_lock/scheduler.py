import threading
from collections.abc import Callable
from datetime import datetime

from loguru import logger

from pause_lock.arbitration import ArbitrationController


class ScheduleLoop:
    """
    Periodically runs the controller's schedule evaluation.

    The timer thread only exists while at least one time profile is enabled
    or a failed clear is waiting to be retried. After every profile change
    the next activation of each enabled profile is handed to the wake-up
    scheduler.
    """

    def __init__(
        self,
        controller: ArbitrationController,
        interval_seconds: float = 5.0,
        wake_scheduler=None,
        summary_template: str = "Time profile starting",
        body_template: str = "'{name}' starts blocking at {start_time}.",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.controller = controller
        self.interval_seconds = interval_seconds
        self.wake_scheduler = wake_scheduler
        self.summary_template = summary_template
        self.body_template = body_template
        self.clock = clock

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _wanted(self) -> bool:
        return self.controller.has_enabled_profiles() or self.controller.clear_pending

    def sync(self) -> None:
        """Starts or stops the timer to match the enabled profiles."""
        if self._wanted():
            self.start()
        else:
            self.stop()
        self.schedule_wakeups()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            logger.info(f"Starting schedule loop (every {self.interval_seconds:g}s)")
            # A fresh event per thread so a thread still finishing never sees a reset.
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name="schedule-loop", daemon=True
            )
            self._thread.start()

    def stop(self, wait: bool = False) -> None:
        with self._lock:
            if self._thread is None:
                return
            logger.info("Stopping schedule loop")
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if wait and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.interval_seconds):
            try:
                self.controller.evaluate_schedule(self.clock())
            except Exception as e:
                logger.exception(f"Schedule tick failed: {e}")
            if not self._wanted():
                with self._lock:
                    if self._stop_event is stop_event:
                        logger.info("Nothing left to evaluate, stopping schedule loop")
                        self._thread = None
                        break
        logger.debug("Schedule loop exited")

    def schedule_wakeups(self) -> None:
        """Hands each enabled profile's next start to the wake-up scheduler."""
        if self.wake_scheduler is None:
            return
        now = self.clock()
        try:
            self.wake_scheduler.cancel_all()
            for profile in self.controller.profiles:
                if not profile.is_enabled:
                    continue
                at = profile.schedule.next_activation(now)
                if at is None:
                    continue
                self.wake_scheduler.schedule_wake(
                    at,
                    {
                        "id": str(profile.id),
                        "name": profile.name,
                        "summary": self.summary_template.format(name=profile.name),
                        "body": self.body_template.format(
                            name=profile.name, start_time=f"{at:%a %H:%M}"
                        ),
                    },
                )
        except Exception as e:
            logger.error(f"Failed to schedule wake-ups: {e}")

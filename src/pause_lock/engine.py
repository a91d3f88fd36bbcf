from collections.abc import Callable
from datetime import datetime

from loguru import logger

from pause_lock.arbitration import ArbitrationController
from pause_lock.authorization import AuthorizationGate, PermissionService, StoredPermissionService
from pause_lock.enforcement import EnforcementBoundary, ProcessEnforcer
from pause_lock.errors import TransitionResult
from pause_lock.scheduler import ScheduleLoop
from pause_lock.selection import SelectionRegistry
from pause_lock.settings import Settings
from pause_lock.storage import DurableStore, JsonFileStore, Persistence
from pause_lock.utils.notifications import NotificationScheduler


class Engine:
    """Explicitly wired set of components; one per process (or per test)."""

    def __init__(
        self,
        settings: Settings,
        store: DurableStore | None = None,
        enforcer: EnforcementBoundary | None = None,
        permissions: PermissionService | None = None,
        notifier: NotificationScheduler | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.store = store or JsonFileStore(settings.store_file)
        self.enforcer = enforcer or ProcessEnforcer(settings.enforcement_file)
        self.permissions = permissions or StoredPermissionService(settings.permission_file)
        self.notifier = notifier or NotificationScheduler()

        self.persistence = Persistence(self.store)
        self.registry = SelectionRegistry(self.persistence, self.enforcer)
        self.gate = AuthorizationGate(self.permissions, self.persistence)
        self.controller = ArbitrationController(
            self.persistence,
            self.registry,
            self.gate,
            tags_preempt_profiles=settings.tags_preempt_profiles,
            clock=clock,
        )
        self.loop = ScheduleLoop(
            self.controller,
            interval_seconds=settings.tick_interval_seconds,
            wake_scheduler=self.notifier,
            summary_template=settings.notify_summary,
            body_template=settings.notify_body,
            clock=clock,
        )

    def cold_start(self, now: datetime | None = None, run_loop: bool = True) -> TransitionResult:
        """Migrates legacy data, reconciles state and (optionally) starts the timer."""
        self.registry.migrate_legacy()
        if run_loop:
            self.controller.add_listener(self.loop.sync)
        result = self.controller.reconcile(now)
        logger.debug(f"Cold start finished: {result.outcome.value}")
        return result

    def shutdown(self) -> None:
        self.loop.stop(wait=True)

    def sweep(self) -> set[str]:
        """Lets the enforcement boundary act on running apps, if it does that."""
        sweep = getattr(self.enforcer, "sweep", None)
        return sweep() if sweep else set()

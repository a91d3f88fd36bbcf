from datetime import datetime, time

import pytest

from pause_lock.engine import Engine
from pause_lock.errors import EnforcementIOError
from pause_lock.schema import AuthorizationStatus, Schedule, Selection, Source, Weekday
from pause_lock.settings import Settings
from pause_lock.storage import JsonFileStore
from pause_lock.utils.notifications import NotificationScheduler

# Wednesday
NOW = datetime(2026, 10, 14, 10, 0)

WORKDAYS = {Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY, Weekday.FRIDAY}


class FakeEnforcer:
    def __init__(self):
        self.applied: Selection | None = None
        self.fail_apply = False
        self.fail_clear = False
        self.apply_calls = 0
        self.clear_calls = 0

    def apply(self, selection: Selection) -> None:
        self.apply_calls += 1
        if self.fail_apply:
            raise EnforcementIOError("apply failed")
        self.applied = selection

    def clear(self) -> None:
        self.clear_calls += 1
        if self.fail_clear:
            raise EnforcementIOError("clear failed")
        self.applied = None

    def is_anything_enforced(self) -> bool:
        return self.applied is not None


class FakePermissionService:
    def __init__(self, status=AuthorizationStatus.APPROVED, answer=AuthorizationStatus.APPROVED):
        self.current = status
        self.answer = answer
        self.requests = 0

    def status(self) -> AuthorizationStatus:
        return self.current

    def request(self) -> AuthorizationStatus:
        self.requests += 1
        if self.answer is not AuthorizationStatus.UNDETERMINED:
            self.current = self.answer
        return self.answer


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path, log_dir=tmp_path / "logs")


@pytest.fixture
def enforcer():
    return FakeEnforcer()


@pytest.fixture
def permissions():
    return FakePermissionService()


@pytest.fixture
def sent():
    return []


@pytest.fixture
def make_engine(settings, tmp_path, enforcer, permissions, sent):
    """Builds an engine over the shared store, enforcer and permission fakes."""

    def _make(**overrides) -> Engine:
        if "tags_preempt_profiles" in overrides:
            settings.tags_preempt_profiles = overrides.pop("tags_preempt_profiles")
        options = {
            "store": JsonFileStore(tmp_path / "store.json"),
            "enforcer": enforcer,
            "permissions": permissions,
            "notifier": NotificationScheduler(sender=lambda s, b: sent.append((s, b))),
            "clock": lambda: NOW,
        }
        options.update(overrides)
        return Engine(settings, **options)

    return _make


@pytest.fixture
def engine(make_engine):
    engine = make_engine()
    engine.cold_start(now=NOW, run_loop=False)
    return engine


@pytest.fixture
def controller(engine):
    return engine.controller


@pytest.fixture
def make_tag(controller):
    def _make(name="Desk", identifier="04a1b2", apps=("firefox",)) -> Source:
        result = controller.register_tag(name, identifier)
        assert result.ok, result.error
        if apps:
            controller.link_selection(result.source, Selection(apps=frozenset(apps)))
        return result.source

    return _make


@pytest.fixture
def make_profile(controller):
    def _make(
        name="Work",
        weekdays=WORKDAYS,
        start=time(9, 0),
        end=time(17, 0),
        apps=("slack",),
        created_at: datetime | None = None,
    ) -> Source:
        # Created disabled so the selection and creation time are set before any tick.
        result = controller.create_profile(
            name, Schedule(weekdays=set(weekdays), start=start, end=end), enabled=False
        )
        assert result.ok, result.error
        if created_at is not None:
            controller._profile(result.source.id).created_at = created_at
        if apps:
            controller.link_selection(result.source, Selection(apps=frozenset(apps)))
        controller.toggle_profile_enabled(result.source.id, now=datetime(2026, 10, 17, 3, 0))
        return result.source

    return _make

import random
import threading
from datetime import datetime, time, timedelta

import pytest

from pause_lock.errors import (
    Busy,
    Conflict,
    ConflictWithProfile,
    EnforcementIOError,
    InvalidInput,
    NoSelection,
    NotFound,
    Outcome,
)
from pause_lock.schema import Schedule, Selection, Source, SourceKind, Weekday

from conftest import NOW, WORKDAYS, FakeEnforcer


def test_scan_matches_normalized_identifier(controller, make_tag, enforcer):
    desk = make_tag("Desk", "04a1b2")

    result = controller.handle_scan("04:A1-B2", now=NOW)

    assert result.outcome is Outcome.ACTIVATED
    assert controller.active_source == desk
    assert controller.get_tag(desk.id).is_active
    assert enforcer.applied == Selection(apps=frozenset({"firefox"}))


def test_scanning_active_tag_again_deactivates(controller, make_tag, enforcer):
    desk = make_tag("Desk", "04a1b2")
    controller.handle_scan("04:A1-B2", now=NOW)

    result = controller.handle_scan("04a1b2", now=NOW)

    assert result.outcome is Outcome.DEACTIVATED
    assert controller.active_source is None
    assert not controller.get_tag(desk.id).is_active
    assert enforcer.applied is None


def test_profile_window_activates_and_ends(controller, make_profile, enforcer):
    work = make_profile("Work")

    result = controller.evaluate_schedule(NOW)
    assert result.outcome is Outcome.ACTIVATED
    assert controller.active_source == work
    assert enforcer.applied is not None

    # End of the window is exclusive.
    result = controller.evaluate_schedule(NOW.replace(hour=17))
    assert result.outcome is Outcome.DEACTIVATED
    assert controller.active_source is None
    assert enforcer.applied is None


def test_tag_replaces_profile_and_tick_leaves_it(controller, make_profile, make_tag):
    work = make_profile("Work")
    phone = make_tag("Phone", "aa:bb")
    controller.evaluate_schedule(NOW)
    assert controller.active_source == work

    result = controller.activate_tag(phone.id, now=NOW)
    assert result.outcome is Outcome.ACTIVATED
    assert controller.active_source == phone

    result = controller.evaluate_schedule(NOW + timedelta(minutes=1))
    assert result.outcome is Outcome.UNCHANGED
    assert controller.active_source == phone


def test_toggle_holding_profile_is_busy(controller, make_profile):
    work = make_profile("Work")
    controller.evaluate_schedule(NOW)

    result = controller.toggle_profile_enabled(work.id, now=NOW)

    assert isinstance(result.error, Busy)
    assert controller.get_profile(work.id).is_enabled
    assert controller.active_source == work


def test_toggle_while_tag_active_is_conflict(controller, make_profile, make_tag):
    work = make_profile("Work")
    desk = make_tag()
    controller.activate_tag(desk.id, now=NOW)

    result = controller.toggle_profile_enabled(work.id, now=NOW)

    assert isinstance(result.error, Conflict)
    assert result.error.by == desk


def test_second_tag_conflicts_with_active_tag(controller, make_tag, enforcer):
    desk = make_tag("Desk", "01")
    phone = make_tag("Phone", "02")
    controller.activate_tag(desk.id, now=NOW)

    result = controller.activate_tag(phone.id, now=NOW)

    assert result.outcome is Outcome.REJECTED
    assert isinstance(result.error, Conflict)
    assert not isinstance(result.error, ConflictWithProfile)
    assert result.error.by == desk
    assert controller.active_source == desk
    assert enforcer.apply_calls == 1


def test_tag_refused_by_profile_without_preemption(make_engine):
    engine = make_engine(tags_preempt_profiles=False)
    engine.cold_start(now=NOW, run_loop=False)
    controller = engine.controller

    created = controller.create_profile("Work", Schedule(weekdays=set(WORKDAYS)))
    controller.link_selection(created.source, Selection(apps=frozenset({"slack"})))
    tag = controller.register_tag("Desk", "01").source
    controller.link_selection(tag, Selection(apps=frozenset({"firefox"})))
    assert controller.active_source == created.source

    result = controller.activate_tag(tag.id, now=NOW)

    assert isinstance(result.error, ConflictWithProfile)
    assert controller.active_source == created.source


def test_tag_without_selection(controller, make_tag, enforcer):
    desk = make_tag(apps=())

    result = controller.activate_tag(desk.id, now=NOW)

    assert isinstance(result.error, NoSelection)
    assert controller.active_source is None
    assert enforcer.apply_calls == 0


def test_empty_selection_counts_as_missing(controller, make_tag):
    desk = make_tag(apps=())
    controller.link_selection(desk, Selection())

    result = controller.activate_tag(desk.id, now=NOW)

    assert isinstance(result.error, NoSelection)


def test_unknown_identifier_is_not_found(controller, make_tag):
    make_tag("Desk", "04a1b2")

    result = controller.handle_scan("ffff", now=NOW)

    assert isinstance(result.error, NotFound)
    assert controller.active_source is None


def test_register_rejects_duplicate_identifier(controller, make_tag):
    make_tag("Desk", "04a1b2")

    result = controller.register_tag("Other", "04-A1-B2")

    assert isinstance(result.error, InvalidInput)
    assert len(controller.tags) == 1


def test_register_rejects_empty_identifier(controller):
    result = controller.register_tag("Desk", " :- ")

    assert isinstance(result.error, InvalidInput)


def test_apply_failure_leaves_slot_idle(controller, make_tag, enforcer):
    desk = make_tag()
    enforcer.fail_apply = True

    result = controller.activate_tag(desk.id, now=NOW)

    assert isinstance(result.error, EnforcementIOError)
    assert controller.active_source is None
    assert not controller.state.is_enforcing
    assert not controller.get_tag(desk.id).is_active


def test_profile_apply_failure_retried_next_tick(controller, make_profile, enforcer):
    work = make_profile()
    enforcer.fail_apply = True
    result = controller.evaluate_schedule(NOW)
    assert isinstance(result.error, EnforcementIOError)
    assert controller.active_source is None

    enforcer.fail_apply = False
    result = controller.evaluate_schedule(NOW + timedelta(seconds=5))
    assert result.outcome is Outcome.ACTIVATED
    assert controller.active_source == work


def test_clear_failure_frees_slot_and_retries(controller, make_tag, enforcer):
    desk = make_tag()
    controller.activate_tag(desk.id, now=NOW)
    enforcer.fail_clear = True

    result = controller.activate_tag(desk.id, now=NOW)
    assert result.outcome is Outcome.DEACTIVATED
    assert result.ok
    assert isinstance(result.error, EnforcementIOError)
    assert result.to_dict()["error"]["code"] == "enforcement_io"
    assert controller.active_source is None
    assert controller.snapshot()["clear_pending"]
    assert enforcer.applied is not None

    enforcer.fail_clear = False
    controller.evaluate_schedule(NOW)
    assert enforcer.applied is None
    assert not controller.snapshot()["clear_pending"]


def test_deactivating_tag_hands_over_to_due_profile(controller, make_profile, make_tag):
    work = make_profile()
    desk = make_tag()
    controller.activate_tag(desk.id, now=NOW)

    controller.activate_tag(desk.id, now=NOW)

    assert controller.active_source == work


def test_delete_holding_source_is_busy(controller, make_tag, make_profile):
    desk = make_tag()
    controller.activate_tag(desk.id, now=NOW)

    result = controller.delete_source(desk, now=NOW)

    assert isinstance(result.error, Busy)
    assert controller.get_tag(desk.id) is not None


def test_delete_idle_source(controller, make_tag, engine):
    desk = make_tag()

    result = controller.delete_source(desk, now=NOW)

    assert result.outcome is Outcome.DELETED
    assert controller.get_tag(desk.id) is None
    assert engine.registry.get_selection(desk.id) is None


def test_link_selection_on_holder_is_busy(controller, make_tag, enforcer):
    desk = make_tag()
    controller.activate_tag(desk.id, now=NOW)

    result = controller.link_selection(desk, Selection(apps=frozenset({"steam"})))

    assert isinstance(result.error, Busy)
    assert enforcer.applied == Selection(apps=frozenset({"firefox"}))


def test_linking_does_not_enforce(controller, make_tag, enforcer):
    make_tag()

    assert enforcer.apply_calls == 0
    assert controller.active_source is None


def test_oldest_overlapping_profile_wins(controller, make_profile):
    make_profile("Late", created_at=datetime(2026, 2, 1))
    early = make_profile("Early", created_at=datetime(2026, 1, 1))

    controller.evaluate_schedule(NOW)

    assert controller.active_source == early


def test_profile_without_selection_is_skipped(controller, make_profile):
    make_profile("Empty", apps=(), created_at=datetime(2026, 1, 1))
    second = make_profile("Second", created_at=datetime(2026, 2, 1))

    controller.evaluate_schedule(NOW)

    assert controller.active_source == second


def test_switch_when_window_of_holder_ends(controller, make_profile):
    make_profile("Morning", start=time(8, 0), end=time(10, 0), created_at=datetime(2026, 1, 1))
    day = make_profile("Day", start=time(9, 0), end=time(17, 0), created_at=datetime(2026, 2, 1))

    controller.evaluate_schedule(NOW - timedelta(minutes=30))
    assert controller.name_of(controller.active_source) == "Morning"

    result = controller.evaluate_schedule(NOW)
    assert result.outcome is Outcome.ACTIVATED
    assert controller.active_source == day


def test_ended_window_is_released_when_next_profile_is_unauthorized(
    controller, make_profile, enforcer, permissions
):
    from pause_lock.errors import AuthorizationError
    from pause_lock.schema import AuthorizationStatus

    morning = make_profile("Morning", start=time(9, 0), end=time(12, 0), created_at=datetime(2026, 1, 1))
    make_profile("Afternoon", start=time(12, 0), end=time(15, 0), created_at=datetime(2026, 2, 1))
    controller.evaluate_schedule(datetime(2026, 10, 14, 11, 0))
    assert controller.active_source == morning

    permissions.current = AuthorizationStatus.DENIED
    result = controller.evaluate_schedule(datetime(2026, 10, 14, 13, 0))

    assert isinstance(result.error, AuthorizationError)
    assert controller.active_source is None
    assert not controller.state.is_enforcing
    assert enforcer.applied is None


def test_weekend_is_outside_workday_window(controller, make_profile):
    make_profile()

    result = controller.evaluate_schedule(datetime(2026, 10, 17, 10, 0))

    assert result.outcome is Outcome.UNCHANGED
    assert controller.active_source is None


def test_overnight_profile_covers_next_morning(controller, make_profile):
    night = make_profile(
        "Night", weekdays={Weekday.TUESDAY}, start=time(22, 0), end=time(6, 0)
    )

    controller.evaluate_schedule(datetime(2026, 10, 14, 5, 59))
    assert controller.active_source == night

    controller.evaluate_schedule(datetime(2026, 10, 14, 6, 0))
    assert controller.active_source is None


def test_overlapping_tick_is_dropped(controller):
    controller._tick_guard.acquire()
    try:
        assert controller.evaluate_schedule(NOW) is None
    finally:
        controller._tick_guard.release()


def test_not_authorized_tag_is_refused(controller, make_tag, permissions):
    from pause_lock.errors import AuthorizationError
    from pause_lock.schema import AuthorizationStatus

    permissions.current = AuthorizationStatus.DENIED
    desk = make_tag()

    result = controller.activate_tag(desk.id, now=NOW)

    assert isinstance(result.error, AuthorizationError)
    assert controller.active_source is None


def test_find_by_name_and_id_prefix(controller, make_tag):
    desk = make_tag("Desk", "01")

    assert controller.find_tag("desk").id == desk.id
    assert controller.find_tag(str(desk.id)[:6]).id == desk.id
    assert controller.find_tag("nope") is None


def test_rename_source(controller, make_tag):
    desk = make_tag("Desk", "01")

    controller.rename_source(desk, "  Office ")

    assert controller.get_tag(desk.id).name == "Office"
    assert isinstance(controller.rename_source(desk, " ").error, InvalidInput)


def test_unknown_source_is_not_found(controller):
    from uuid import uuid4

    result = controller.delete_source(Source.tag(uuid4()))

    assert isinstance(result.error, NotFound)


@pytest.mark.parametrize("preempt", [True, False])
def test_tag_always_wins_over_idle_slot(make_engine, preempt):
    engine = make_engine(tags_preempt_profiles=preempt)
    engine.cold_start(now=NOW, run_loop=False)
    controller = engine.controller
    tag = controller.register_tag("Desk", "01").source
    controller.link_selection(tag, Selection(web_domains=frozenset({"news.example"})))

    result = controller.activate_tag(tag.id, now=NOW)

    assert result.outcome is Outcome.ACTIVATED


def assert_consistent(controller, enforcer):
    state = controller.state
    active = state.active_source
    assert state.is_enforcing == (active is not None)

    active_tags = [Source.tag(t.id) for t in controller.tags if t.is_active]
    if active is not None and active.kind is SourceKind.TAG:
        assert active_tags == [active]
    else:
        assert active_tags == []

    if active is not None:
        assert controller.registry.has_selection(active.id)
        assert enforcer.applied == controller.registry.get_selection(active.id)
    elif not controller.clear_pending:
        assert enforcer.applied is None


def test_activation_and_tick_are_mutually_exclusive(make_engine):
    class BlockingEnforcer(FakeEnforcer):
        def __init__(self):
            super().__init__()
            self.started = threading.Event()
            self.release = threading.Event()

        def apply(self, selection):
            self.started.set()
            assert self.release.wait(timeout=5)
            super().apply(selection)

    blocking = BlockingEnforcer()
    engine = make_engine(enforcer=blocking)
    engine.cold_start(now=NOW, run_loop=False)
    controller = engine.controller
    desk = controller.register_tag("Desk", "01").source
    controller.link_selection(desk, Selection(apps=frozenset({"firefox"})))
    work = controller.create_profile(
        "Work", Schedule(weekdays=set(WORKDAYS), start=time(9), end=time(17)), enabled=False
    ).source
    controller.link_selection(work, Selection(apps=frozenset({"slack"})))

    results = {}

    def run(key, call):
        results[key] = call()

    scan = threading.Thread(target=run, args=("scan", lambda: controller.activate_tag(desk.id, now=NOW)))
    scan.start()
    assert blocking.started.wait(timeout=5)

    others = [
        threading.Thread(target=run, args=("tick", lambda: controller.evaluate_schedule(NOW))),
        threading.Thread(
            target=run, args=("toggle", lambda: controller.toggle_profile_enabled(work.id, now=NOW))
        ),
    ]
    for thread in others:
        thread.start()
    for thread in others:
        thread.join(timeout=0.2)

    # Both wait for the activation that is still writing to the boundary.
    assert all(thread.is_alive() for thread in others)
    assert results == {}
    assert blocking.apply_calls == 1

    blocking.release.set()
    for thread in [scan, *others]:
        thread.join(timeout=5)

    assert results["scan"].outcome is Outcome.ACTIVATED
    assert results["tick"].outcome is Outcome.UNCHANGED
    assert isinstance(results["toggle"].error, Conflict)
    assert not controller.get_profile(work.id).is_enabled
    assert controller.active_source == desk
    assert blocking.apply_calls == 1
    assert_consistent(controller, blocking)


@pytest.mark.parametrize("seed", range(8))
def test_random_sequences_keep_one_consistent_holder(
    controller, make_tag, make_profile, enforcer, seed
):
    rng = random.Random(seed)
    tags = [make_tag("Desk", "01"), make_tag("Phone", "02"), make_tag("Empty", "03", apps=())]
    profiles = [
        make_profile("Morning", start=time(8), end=time(12), created_at=datetime(2026, 1, 1)),
        make_profile("Day", start=time(10), end=time(17), created_at=datetime(2026, 2, 1)),
        make_profile(
            "Night", weekdays={Weekday.TUESDAY, Weekday.THURSDAY}, start=time(22), end=time(6),
            created_at=datetime(2026, 3, 1),
        ),
    ]
    week_start = datetime(2026, 10, 12)

    for _ in range(150):
        now = week_start + timedelta(minutes=rng.randrange(7 * 24 * 60))
        enforcer.fail_apply = rng.random() < 0.15
        enforcer.fail_clear = rng.random() < 0.15

        op = rng.choice(["scan", "tick", "tick", "toggle"])
        if op == "scan":
            result = controller.activate_tag(rng.choice(tags).id, now=now)
        elif op == "tick":
            result = controller.evaluate_schedule(now)
        else:
            result = controller.toggle_profile_enabled(rng.choice(profiles).id, now=now)

        assert result.ok or result.error is not None
        assert_consistent(controller, enforcer)

    enforcer.fail_apply = enforcer.fail_clear = False
    controller.evaluate_schedule(week_start)
    assert_consistent(controller, enforcer)

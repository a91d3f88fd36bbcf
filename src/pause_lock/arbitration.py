"""
Source arbitration: decides which single tag or time profile drives enforcement.

Every public entry point runs under one re-entrant lock (the arbitration
domain), including its persistence writes and enforcement calls, so a tick
can never interleave with a tag activation. Refusals come back as a
`TransitionResult`; no `ArbitrationError` escapes a public method.
"""

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger

from pause_lock.authorization import AuthorizationGate
from pause_lock.errors import (
    AuthorizationError,
    Busy,
    EnforcementIOError,
    InvalidInput,
    NoSelection,
    NotFound,
    Outcome,
    ScanFailed,
    TransitionResult,
    conflict_for,
)
from pause_lock.scanner import ScanService
from pause_lock.schema import (
    ArbitrationState,
    Schedule,
    Selection,
    Source,
    SourceKind,
    Tag,
    TimeProfile,
    normalize_identifier,
)
from pause_lock.selection import SelectionRegistry
from pause_lock.storage import Persistence


def profile_order(profile: TimeProfile) -> tuple[datetime, str]:
    """Overlapping windows go to the oldest profile; the id breaks exact ties."""
    return profile.created_at, str(profile.id)


class ArbitrationController:
    def __init__(
        self,
        persistence: Persistence,
        registry: SelectionRegistry,
        gate: AuthorizationGate,
        tags_preempt_profiles: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.persistence = persistence
        self.registry = registry
        self.gate = gate
        self.tags_preempt_profiles = tags_preempt_profiles
        self.clock = clock

        self._lock = threading.RLock()
        self._tick_guard = threading.Lock()
        self._listeners: list[Callable[[], None]] = []
        self._clear_pending = False
        self._missing_selection_warned: set[UUID] = set()

        self._tags: list[Tag] = []
        self._profiles: list[TimeProfile] = []
        self._state = ArbitrationState()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ArbitrationState:
        with self._lock:
            return self._state.model_copy()

    @property
    def active_source(self) -> Source | None:
        return self.state.active_source

    @property
    def tags(self) -> list[Tag]:
        with self._lock:
            return [t.model_copy() for t in self._tags]

    @property
    def profiles(self) -> list[TimeProfile]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._profiles]

    @property
    def clear_pending(self) -> bool:
        """True while a failed clear still waits for a tick to retry it."""
        with self._lock:
            return self._clear_pending

    def has_enabled_profiles(self) -> bool:
        with self._lock:
            return any(p.is_enabled for p in self._profiles)

    def get_tag(self, tag_id: UUID) -> Tag | None:
        with self._lock:
            tag = self._tag(tag_id)
            return tag.model_copy() if tag else None

    def get_profile(self, profile_id: UUID) -> TimeProfile | None:
        with self._lock:
            profile = self._profile(profile_id)
            return profile.model_copy(deep=True) if profile else None

    def find_tag(self, ref: str) -> Tag | None:
        """Looks a tag up by id, id prefix or (case-insensitive) name."""
        with self._lock:
            return _find_by_ref(self._tags, ref)

    def find_profile(self, ref: str) -> TimeProfile | None:
        with self._lock:
            return _find_by_ref(self._profiles, ref)

    def name_of(self, source: Source) -> str:
        with self._lock:
            return self._name_of(source)

    def is_blocking(self, source: Source) -> bool:
        with self._lock:
            return self._state.is_enforcing and self._state.active_source == source

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Registers a callback run after the profile list or a schedule changes."""
        self._listeners.append(callback)

    def snapshot(self) -> dict[str, Any]:
        """Serializable view of the whole arbitration domain."""
        with self._lock:
            active = self._state.active_source
            return {
                "is_enforcing": self._state.is_enforcing,
                "active_source": (
                    {**active.model_dump(mode="json"), "name": self._name_of(active)}
                    if active
                    else None
                ),
                "clear_pending": self._clear_pending,
                "authorization": self.gate.status().value,
                "tags": [
                    {
                        **t.model_dump(mode="json"),
                        "selection": self.registry.selection_info(t.id),
                    }
                    for t in self._tags
                ],
                "profiles": [
                    {
                        **p.model_dump(mode="json"),
                        "schedule_text": p.schedule.describe(),
                        "is_blocking": active == Source.profile(p.id),
                        "selection": self.registry.selection_info(p.id),
                    }
                    for p in self._profiles
                ],
            }

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _tag(self, tag_id: UUID) -> Tag | None:
        return next((t for t in self._tags if t.id == tag_id), None)

    def _profile(self, profile_id: UUID) -> TimeProfile | None:
        return next((p for p in self._profiles if p.id == profile_id), None)

    def _record(self, source: Source) -> Tag | TimeProfile | None:
        if source.kind is SourceKind.TAG:
            return self._tag(source.id)
        return self._profile(source.id)

    def _name_of(self, source: Source) -> str:
        record = self._record(source)
        return record.name if record else str(source.id)

    def _project_tags(self) -> None:
        active = self._state.active_source
        changed = False
        for tag in self._tags:
            should_be_active = (
                self._state.is_enforcing
                and active is not None
                and active.kind is SourceKind.TAG
                and active.id == tag.id
            )
            if tag.is_active != should_be_active:
                tag.is_active = should_be_active
                changed = True
        if changed:
            self.persistence.save_tags(self._tags)

    def _commit(self, source: Source | None) -> None:
        self._state = ArbitrationState(is_enforcing=source is not None, active_source=source)
        self.persistence.save_arbitration_state(self._state)
        self._project_tags()

    def _release(self) -> EnforcementIOError | None:
        """Frees the slot. A failed clear still frees it and is retried next tick."""
        error = None
        try:
            self.registry.deactivate()
            self._clear_pending = False
        except EnforcementIOError as e:
            logger.error(f"Clearing restrictions failed, will retry on next tick: {e}")
            self._clear_pending = True
            error = e
        self._commit(None)
        return error

    def _hold(self, source: Source) -> None:
        """Applies `source`'s selection and records it as the holder; rolls back to Idle."""
        try:
            self.registry.activate(source.id, self._name_of(source))
        except EnforcementIOError:
            self._commit(None)
            raise
        self._clear_pending = False
        self._commit(source)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Profile change listener failed: {e}")

    def _authorized(self) -> bool:
        try:
            return self.gate.request_if_needed()
        except AuthorizationError:
            raise
        except Exception as e:
            logger.error(f"Authorization check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def register_tag(self, name: str, identifier: str) -> TransitionResult:
        normalized = normalize_identifier(identifier)
        with self._lock:
            if not name.strip() or not normalized:
                return TransitionResult.rejected(InvalidInput("A tag needs a name and an identifier."))
            existing = next((t for t in self._tags if t.identifier == normalized), None)
            if existing:
                return TransitionResult.rejected(
                    InvalidInput(f"Identifier already registered to '{existing.name}'.")
                )

            tag = Tag(name=name.strip(), identifier=normalized)
            self._tags.append(tag)
            self.persistence.save_tags(self._tags)
            logger.info(f"Registered tag '{tag.name}' ({tag.identifier})")
            return TransitionResult(outcome=Outcome.CREATED, source=Source.tag(tag.id))

    def activate_tag(self, tag_id: UUID, now: datetime | None = None) -> TransitionResult:
        """
        Toggles blocking for a presented tag.

        Presenting the holding tag again releases the slot and lets a due
        time profile take over. Any other holder makes the call fail with a
        conflict, except that a holding profile is replaced when
        `tags_preempt_profiles` is set.

        A release whose clear failed still returns DEACTIVATED, carrying the
        `EnforcementIOError` so callers can warn that restrictions may linger.
        """
        with self._lock:
            result = self._activate_tag_locked(tag_id, now)
            clear_pending = self._clear_pending
        if clear_pending:
            # Listeners keep the timer alive until the clear goes through.
            self._notify()
        return result

    def _activate_tag_locked(self, tag_id: UUID, now: datetime | None) -> TransitionResult:
        tag = self._tag(tag_id)
        if tag is None:
            return TransitionResult.rejected(NotFound(f"tag {tag_id}"))

        source = Source.tag(tag.id)
        current = self._state.active_source

        if current == source:
            logger.info(f"Tag '{tag.name}' presented again, deactivating")
            clear_error = self._release()
            self._evaluate_locked(now)
            return TransitionResult(outcome=Outcome.DEACTIVATED, source=source, error=clear_error)

        if current is not None and (
            current.kind is SourceKind.TAG or not self.tags_preempt_profiles
        ):
            error = conflict_for(current, self._name_of(current))
            logger.warning(f"Cannot activate '{tag.name}': {error}")
            return TransitionResult.rejected(error, source)

        try:
            if not self._authorized():
                return TransitionResult.rejected(AuthorizationError(), source)
        except AuthorizationError as e:
            return TransitionResult.rejected(e, source)

        if not self.registry.has_selection(tag.id):
            logger.warning(f"Tag '{tag.name}' has no selection linked")
            return TransitionResult.rejected(NoSelection(tag.name), source)

        if current is not None:
            logger.info(f"Tag '{tag.name}' replaces time profile '{self._name_of(current)}'")
            self._release()

        try:
            self._hold(source)
        except EnforcementIOError as e:
            logger.error(f"Could not activate tag '{tag.name}': {e}")
            return TransitionResult.rejected(e, source)

        logger.info(f"Tag '{tag.name}' activated")
        return TransitionResult(outcome=Outcome.ACTIVATED, source=source)

    def handle_scan(self, identifier: str, now: datetime | None = None) -> TransitionResult:
        """Matches a scanned identifier to a registered tag and toggles it."""
        normalized = normalize_identifier(identifier)
        logger.info(f"Scanned identifier {normalized!r}")
        with self._lock:
            if not normalized:
                return TransitionResult.rejected(InvalidInput("Empty tag identifier."))
            tag = next((t for t in self._tags if t.identifier == normalized), None)
            if tag is None:
                logger.warning(f"No tag registered for identifier {normalized!r}")
                return TransitionResult.rejected(NotFound(f"tag with identifier {normalized}"))
            result = self._activate_tag_locked(tag.id, now)
            clear_pending = self._clear_pending
        if clear_pending:
            self._notify()
        return result

    def scan_and_activate(self, scanner: ScanService, now: datetime | None = None) -> TransitionResult:
        """Runs a hardware scan outside the domain; a failed scan changes nothing."""
        outcome = scanner.scan()
        if outcome.failure is not None:
            logger.info(f"Scan ended without a tag: {outcome.failure.value}")
            return TransitionResult.rejected(ScanFailed(outcome.failure))
        return self.handle_scan(outcome.identifier, now)

    # ------------------------------------------------------------------
    # Time profiles
    # ------------------------------------------------------------------

    def create_profile(
        self,
        name: str,
        schedule: Schedule | None = None,
        enabled: bool = True,
        now: datetime | None = None,
    ) -> TransitionResult:
        with self._lock:
            if not name.strip():
                return TransitionResult.rejected(InvalidInput("A time profile needs a name."))
            profile = TimeProfile(
                name=name.strip(), schedule=schedule or Schedule(), is_enabled=enabled
            )
            self._profiles.append(profile)
            self.persistence.save_profiles(self._profiles)
            logger.info(f"Created time profile '{profile.name}' ({profile.schedule.describe()})")
            self._evaluate_locked(now)
        self._notify()
        return TransitionResult(outcome=Outcome.CREATED, source=Source.profile(profile.id))

    def toggle_profile_enabled(
        self, profile_id: UUID, now: datetime | None = None
    ) -> TransitionResult:
        with self._lock:
            profile = self._profile(profile_id)
            if profile is None:
                return TransitionResult.rejected(NotFound(f"time profile {profile_id}"))

            source = Source.profile(profile.id)
            current = self._state.active_source
            if current is not None and current.kind is SourceKind.TAG:
                error = conflict_for(current, self._name_of(current))
                logger.warning(f"Cannot toggle '{profile.name}': {error}")
                return TransitionResult.rejected(error, source)
            if current == source:
                logger.warning(f"Cannot disable '{profile.name}' while it is blocking")
                return TransitionResult.rejected(Busy(profile.name, "disable"), source)

            profile.is_enabled = not profile.is_enabled
            self.persistence.save_profiles(self._profiles)
            logger.info(f"{'Enabled' if profile.is_enabled else 'Disabled'} time profile '{profile.name}'")
            self._evaluate_locked(now)
        self._notify()
        return TransitionResult(outcome=Outcome.UPDATED, source=source)

    def update_schedule(
        self, profile_id: UUID, schedule: Schedule, now: datetime | None = None
    ) -> TransitionResult:
        with self._lock:
            profile = self._profile(profile_id)
            if profile is None:
                return TransitionResult.rejected(NotFound(f"time profile {profile_id}"))
            profile.schedule = schedule
            self.persistence.save_profiles(self._profiles)
            logger.info(f"Schedule of '{profile.name}' set to {schedule.describe()}")
            self._evaluate_locked(now)
        self._notify()
        return TransitionResult(outcome=Outcome.UPDATED, source=Source.profile(profile_id))

    # ------------------------------------------------------------------
    # Any source
    # ------------------------------------------------------------------

    def link_selection(
        self, source: Source, selection: Selection, now: datetime | None = None
    ) -> TransitionResult:
        with self._lock:
            record = self._record(source)
            if record is None:
                return TransitionResult.rejected(NotFound(f"{source.kind.value} {source.id}"))
            if self._state.active_source == source:
                logger.warning(f"Cannot change the selection of '{record.name}' while it is blocking")
                return TransitionResult.rejected(
                    Busy(record.name, "change the selection of"), source
                )

            self.registry.set_selection(source.id, selection)
            self._missing_selection_warned.discard(source.id)
            if source.kind is SourceKind.PROFILE:
                self._evaluate_locked(now)
            return TransitionResult(outcome=Outcome.UPDATED, source=source)

    def rename_source(self, source: Source, name: str) -> TransitionResult:
        with self._lock:
            record = self._record(source)
            if record is None:
                return TransitionResult.rejected(NotFound(f"{source.kind.value} {source.id}"))
            if not name.strip():
                return TransitionResult.rejected(InvalidInput("Name cannot be empty."))
            record.name = name.strip()
            if source.kind is SourceKind.TAG:
                self.persistence.save_tags(self._tags)
            else:
                self.persistence.save_profiles(self._profiles)
            return TransitionResult(outcome=Outcome.UPDATED, source=source)

    def delete_source(self, source: Source, now: datetime | None = None) -> TransitionResult:
        with self._lock:
            record = self._record(source)
            if record is None:
                return TransitionResult.rejected(NotFound(f"{source.kind.value} {source.id}"))
            if self._state.active_source == source:
                logger.warning(f"Cannot delete '{record.name}' while it is blocking")
                return TransitionResult.rejected(Busy(record.name, "delete"), source)

            try:
                self.registry.remove_selection(source.id)
            except EnforcementIOError as e:
                logger.error(f"Could not delete '{record.name}': {e}")
                return TransitionResult.rejected(e, source)

            if source.kind is SourceKind.TAG:
                self._tags = [t for t in self._tags if t.id != source.id]
                self.persistence.save_tags(self._tags)
            else:
                self._profiles = [p for p in self._profiles if p.id != source.id]
                self.persistence.save_profiles(self._profiles)
                self._evaluate_locked(now)
            self._missing_selection_warned.discard(source.id)
            logger.info(f"Deleted {source.kind.value} '{record.name}'")

        if source.kind is SourceKind.PROFILE:
            self._notify()
        return TransitionResult(outcome=Outcome.DELETED, source=source)

    # ------------------------------------------------------------------
    # Schedule evaluation
    # ------------------------------------------------------------------

    def evaluate_schedule(self, now: datetime | None = None) -> TransitionResult | None:
        """
        One tick. Returns None when another tick is already in flight; the
        overlapping call is dropped rather than queued.
        """
        if not self._tick_guard.acquire(blocking=False):
            logger.debug("Tick already in progress, dropping this one")
            return None
        try:
            with self._lock:
                return self._evaluate_locked(now)
        finally:
            self._tick_guard.release()

    def _retry_pending_clear(self) -> None:
        if not self._clear_pending or self._state.active_source is not None:
            return
        try:
            self.registry.deactivate()
        except EnforcementIOError as e:
            logger.error(f"Retrying clear failed: {e}")
            return
        self._clear_pending = False
        logger.info("Pending clear completed")

    def _eligible(self, candidates: list[TimeProfile]) -> list[TimeProfile]:
        eligible = []
        for profile in candidates:
            if self.registry.has_selection(profile.id):
                eligible.append(profile)
                continue
            if profile.id not in self._missing_selection_warned:
                logger.warning(f"Time profile '{profile.name}' is due but has no selection, skipping")
                self._missing_selection_warned.add(profile.id)
            else:
                logger.debug(f"Skipping '{profile.name}': no selection")
        return eligible

    def _evaluate_locked(self, now: datetime | None = None) -> TransitionResult:
        now = now or self.clock()
        self._retry_pending_clear()

        current = self._state.active_source
        if current is not None and current.kind is SourceKind.TAG:
            logger.debug("Tag is active, time profiles are not evaluated")
            return TransitionResult(outcome=Outcome.UNCHANGED, source=current)

        candidates = sorted((p for p in self._profiles if p.is_due(now)), key=profile_order)
        eligible = self._eligible(candidates)
        logger.debug(f"Tick at {now:%a %H:%M:%S}: {len(candidates)} due, {len(eligible)} eligible")

        ended = None
        if current is not None and current not in {Source.profile(p.id) for p in eligible}:
            logger.info(f"Window of '{self._name_of(current)}' ended, deactivating")
            self._release()
            ended, current = current, None

        if eligible:
            winner = eligible[0]
            source = Source.profile(winner.id)
            if current == source:
                return TransitionResult(outcome=Outcome.UNCHANGED, source=source)

            try:
                if not self._authorized():
                    logger.warning(f"Not activating '{winner.name}': blocking permission missing")
                    return TransitionResult.rejected(AuthorizationError(), source)
            except AuthorizationError as e:
                return TransitionResult.rejected(e, source)

            if current is not None:
                logger.info(f"Switching from '{self._name_of(current)}' to '{winner.name}'")
                self._release()
            try:
                self._hold(source)
            except EnforcementIOError as e:
                logger.error(f"Could not activate time profile '{winner.name}', retrying next tick: {e}")
                return TransitionResult.rejected(e, source)
            logger.info(f"Time profile '{winner.name}' activated")
            return TransitionResult(outcome=Outcome.ACTIVATED, source=source)

        if ended is not None:
            return TransitionResult(outcome=Outcome.DEACTIVATED, source=ended)

        return TransitionResult(outcome=Outcome.UNCHANGED)

    # ------------------------------------------------------------------
    # Cold start
    # ------------------------------------------------------------------

    def reconcile(self, now: datetime | None = None) -> TransitionResult:
        """
        Loads durable state and aligns it with the enforcement boundary.

        The boundary decides *whether* anything is enforced; the stored
        active source decides *which* source that is. Ends with one tick so a
        window that opened or closed while the process was down is caught up.
        """
        with self._lock:
            self._tags = self.persistence.load_tags()
            self._profiles = self.persistence.load_profiles()
            stored = self.persistence.load_arbitration_state()
            enforced = self.registry.enforcer.is_anything_enforced()

            source = stored.active_source if stored.is_enforcing else None
            if stored.active_source is not None and not stored.is_enforcing:
                logger.warning("Stored active source without enforcing flag, discarding it")
            if source is not None and self._record(source) is None:
                logger.warning(f"Stored active source {source} no longer exists")
                source = None

            if source is not None and not enforced:
                logger.warning(f"Enforcement reports nothing applied, releasing {source}")
                source = None
                self._release()
            elif source is None and enforced:
                logger.warning("Enforcement active without an owning source, clearing it")
                self._release()
            elif source is not None:
                if self.registry.has_selection(source.id):
                    try:
                        self.registry.activate(source.id, self._name_of(source))
                    except EnforcementIOError as e:
                        logger.error(f"Could not restore {source}, releasing it: {e}")
                        self._release()
                        source = None
                else:
                    logger.warning(f"{source} has no selection anymore, releasing it")
                    self._release()
                    source = None

            self._commit(source)
            logger.info(
                f"Reconciled: {len(self._tags)} tags, {len(self._profiles)} profiles, "
                f"active={self._name_of(source) if source else 'none'}"
            )
            result = self._evaluate_locked(now)
        self._notify()
        return result


def _find_by_ref(records: list, ref: str):
    ref = ref.strip()
    lowered = ref.lower()
    for record in records:
        if str(record.id) == lowered or record.name.lower() == lowered:
            return record
    matches = [r for r in records if str(r.id).startswith(lowered)]
    return matches[0] if len(matches) == 1 else None


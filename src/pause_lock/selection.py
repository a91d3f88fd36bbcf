"""
Per-source selection storage.

Configuring a selection never restricts anything; only `activate` copies a
stored selection into the enforcement boundary. This registry is the only
writer of that boundary.
"""

import json
from uuid import UUID

from loguru import logger

from pause_lock.enforcement import EnforcementBoundary
from pause_lock.errors import EnforcementIOError, NoSelection
from pause_lock.schema import Selection
from pause_lock.storage import LEGACY_CONFIGURED_KEY, LEGACY_SELECTION_PREFIX, Persistence


class SelectionRegistry:
    def __init__(self, persistence: Persistence, enforcer: EnforcementBoundary):
        self.persistence = persistence
        self.enforcer = enforcer
        self._selections: dict[str, Selection] = persistence.load_selections()
        self._enforced_id: str | None = persistence.load_enforced_id()

    @property
    def enforced_id(self) -> UUID | None:
        return UUID(self._enforced_id) if self._enforced_id else None

    def _save(self) -> None:
        self.persistence.save_selections(self._selections)

    def migrate_legacy(self) -> int:
        """Imports selections stored under the old per-source keys. Returns the count."""
        store = self.persistence.store
        raw = store.get(LEGACY_CONFIGURED_KEY)
        if raw is None:
            return 0

        migrated = 0
        try:
            source_ids = json.loads(raw)
        except ValueError as e:
            logger.error(f"Unreadable legacy selection index, dropping it: {e}")
            source_ids = []
        if not isinstance(source_ids, list):
            source_ids = []

        for source_id in source_ids:
            key = f"{LEGACY_SELECTION_PREFIX}{source_id}"
            data = store.get(key)
            if data is None:
                continue
            try:
                selection = Selection.model_validate_json(data)
            except ValueError as e:
                logger.warning(f"Skipping unreadable legacy selection {source_id}: {e}")
            else:
                if not selection.is_empty and source_id not in self._selections:
                    self._selections[source_id] = selection
                    migrated += 1
            store.delete(key)

        store.delete(LEGACY_CONFIGURED_KEY)
        if migrated:
            self._save()
        logger.info(f"Migrated {migrated} legacy selection(s)")
        return migrated

    def set_selection(self, source_id: UUID, selection: Selection) -> None:
        self._selections[str(source_id)] = selection
        self._save()
        apps, categories, domains = selection.counts()
        logger.info(
            f"Stored selection for {source_id}: "
            f"{apps} apps, {categories} categories, {domains} domains"
        )

    def get_selection(self, source_id: UUID) -> Selection | None:
        return self._selections.get(str(source_id))

    def has_selection(self, source_id: UUID) -> bool:
        selection = self.get_selection(source_id)
        return selection is not None and not selection.is_empty

    def selection_info(self, source_id: UUID) -> tuple[int, int, int]:
        selection = self.get_selection(source_id)
        return selection.counts() if selection else (0, 0, 0)

    def activate(self, source_id: UUID, name: str | None = None) -> None:
        """
        Applies the source's selection to the enforcement boundary.

        Raises:
            NoSelection: nothing (or only an empty selection) is stored.
            EnforcementIOError: the boundary rejected the write; nothing is
                recorded as enforced.
        """
        if not self.has_selection(source_id):
            raise NoSelection(name or str(source_id))

        try:
            self.enforcer.apply(self._selections[str(source_id)])
        except EnforcementIOError:
            self._enforced_id = None
            self.persistence.save_enforced_id(None)
            raise
        except OSError as e:
            self._enforced_id = None
            self.persistence.save_enforced_id(None)
            raise EnforcementIOError(str(e)) from e

        self._enforced_id = str(source_id)
        self.persistence.save_enforced_id(self._enforced_id)
        logger.info(f"Enforcement active for {source_id}")

    def deactivate(self) -> None:
        """
        Clears the enforcement boundary. Safe to call when nothing is applied.

        The enforced-id record is cleared even when the boundary fails, so the
        caller can treat the slot as free and retry the clear later.
        """
        self._enforced_id = None
        self.persistence.save_enforced_id(None)
        try:
            self.enforcer.clear()
        except EnforcementIOError:
            raise
        except OSError as e:
            raise EnforcementIOError(str(e)) from e
        logger.info("Enforcement cleared")

    def remove_selection(self, source_id: UUID) -> None:
        if self._enforced_id == str(source_id):
            self.deactivate()
        if self._selections.pop(str(source_id), None) is not None:
            self._save()
            logger.info(f"Removed selection for {source_id}")

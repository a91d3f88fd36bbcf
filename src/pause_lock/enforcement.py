"""
The enforcement boundary: the mechanism that actually restricts app usage.

Only `SelectionRegistry` calls `apply` and `clear`. `ProcessEnforcer` keeps
its own record of what is applied so that a restart of the daemon can ask it
whether anything is still enforced.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import ValidationError

from pause_lock.errors import EnforcementIOError
from pause_lock.schema import Selection
from pause_lock.utils.processes import kill_processes


class EnforcementBoundary(Protocol):
    def apply(self, selection: Selection) -> None: ...

    def clear(self) -> None: ...

    def is_anything_enforced(self) -> bool: ...


class ProcessEnforcer:
    """Blocks apps by killing their processes while a selection is applied."""

    def __init__(self, state_file: Path):
        self.state_file = state_file

    def _write(self, selection: Selection | None) -> None:
        record = {
            "selection": selection.model_dump(mode="json") if selection else None,
            "updated_at": datetime.now().isoformat(),
        }
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.state_file.parent, prefix=".enforce-")
            with os.fdopen(fd, "w") as f:
                json.dump(record, f, indent=4)
            os.replace(tmp_name, self.state_file)
        except OSError as e:
            raise EnforcementIOError(f"Could not write {self.state_file}: {e}") from e

    def applied_selection(self) -> Selection | None:
        if not self.state_file.exists():
            return None
        try:
            with open(self.state_file) as f:
                record = json.load(f)
            raw = record.get("selection")
            return Selection.model_validate(raw) if raw else None
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.error(f"Failed to read enforcement state: {e}")
            return None

    def apply(self, selection: Selection) -> None:
        apps, categories, domains = selection.counts()
        logger.info(
            f"Applying restrictions: {apps} apps, {categories} categories, {domains} domains"
        )
        self._write(selection)

    def clear(self) -> None:
        logger.info("Clearing all restrictions")
        self._write(None)

    def is_anything_enforced(self) -> bool:
        selection = self.applied_selection()
        return selection is not None and not selection.is_empty

    def sweep(self) -> set[str]:
        """Kills running processes named by the applied selection's app tokens."""
        selection = self.applied_selection()
        if selection is None or not selection.apps:
            return set()
        return kill_processes(selection.apps)

"""
Durable key-value storage and the typed records kept in it.

`JsonFileStore` is the raw get/set-bytes boundary. `Persistence` layers the
application's keys on top of it; every read failure degrades to the default
value so a corrupted or missing key never stops a cold start.
"""

import base64
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from pause_lock.schema import ArbitrationState, Selection, Source, Tag, TimeProfile

TAGS_KEY = "pause.tags"
PROFILES_KEY = "pause.profiles"
ENFORCING_KEY = "pause.blocking.isActive"
ACTIVE_SOURCE_KEY = "pause.blocking.activeSourceID"
AUTH_GRANTED_KEY = "pause.authorization.hasBeenAuthorized"
SELECTIONS_KEY = "pause.selections"
ENFORCED_SELECTION_KEY = "pause.selections.enforced"

# Written by older releases, read once by SelectionRegistry.migrate_legacy().
LEGACY_CONFIGURED_KEY = "pause.configured_tags"
LEGACY_SELECTION_PREFIX = "pause.tag_selection."

_tags_adapter = TypeAdapter(list[Tag])
_profiles_adapter = TypeAdapter(list[TimeProfile])
_selections_adapter = TypeAdapter(dict[str, Selection])


class DurableStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class JsonFileStore:
    """A single JSON document mapping keys to base64-encoded bytes."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".store-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=4, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes | None:
        with self._lock:
            raw = self._read().get(key)
        if raw is None:
            return None
        try:
            return base64.b64decode(raw)
        except ValueError:
            logger.error(f"Corrupted value for key {key}, ignoring it")
            return None

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            data = self._read()
            data[key] = base64.b64encode(value).decode("ascii")
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._read())


class Persistence:
    """Typed load/save of the application's records."""

    def __init__(self, store: DurableStore):
        self.store = store

    def _load_json(self, key: str, default):
        raw = self.store.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to decode {key}: {e}")
            return default

    def _save_json(self, key: str, value) -> None:
        self.store.set(key, json.dumps(value).encode("utf-8"))

    def load_tags(self) -> list[Tag]:
        try:
            return _tags_adapter.validate_python(self._load_json(TAGS_KEY, []))
        except ValidationError as e:
            logger.error(f"Failed to load tags: {e}")
            return []

    def save_tags(self, tags: list[Tag]) -> None:
        self._save_json(TAGS_KEY, _tags_adapter.dump_python(tags, mode="json"))

    def load_profiles(self) -> list[TimeProfile]:
        try:
            return _profiles_adapter.validate_python(self._load_json(PROFILES_KEY, []))
        except ValidationError as e:
            logger.error(f"Failed to load time profiles: {e}")
            return []

    def save_profiles(self, profiles: list[TimeProfile]) -> None:
        self._save_json(PROFILES_KEY, _profiles_adapter.dump_python(profiles, mode="json"))

    def load_arbitration_state(self) -> ArbitrationState:
        is_enforcing = bool(self._load_json(ENFORCING_KEY, False))
        active_source = None
        raw_source = self._load_json(ACTIVE_SOURCE_KEY, None)
        if raw_source is not None:
            try:
                active_source = Source.model_validate(raw_source)
            except ValidationError as e:
                logger.error(f"Failed to load active source: {e}")
        return ArbitrationState(is_enforcing=is_enforcing, active_source=active_source)

    def save_arbitration_state(self, state: ArbitrationState) -> None:
        self._save_json(ENFORCING_KEY, state.is_enforcing)
        if state.active_source is None:
            self.store.delete(ACTIVE_SOURCE_KEY)
        else:
            self._save_json(ACTIVE_SOURCE_KEY, state.active_source.model_dump(mode="json"))

    def load_selections(self) -> dict[str, Selection]:
        try:
            return _selections_adapter.validate_python(self._load_json(SELECTIONS_KEY, {}))
        except ValidationError as e:
            logger.error(f"Failed to load selections: {e}")
            return {}

    def save_selections(self, selections: dict[str, Selection]) -> None:
        self._save_json(SELECTIONS_KEY, _selections_adapter.dump_python(selections, mode="json"))

    def load_enforced_id(self) -> str | None:
        value = self._load_json(ENFORCED_SELECTION_KEY, None)
        return value if isinstance(value, str) else None

    def save_enforced_id(self, source_id: str | None) -> None:
        if source_id is None:
            self.store.delete(ENFORCED_SELECTION_KEY)
        else:
            self._save_json(ENFORCED_SELECTION_KEY, source_id)

    def load_has_been_granted(self) -> bool:
        return bool(self._load_json(AUTH_GRANTED_KEY, False))

    def save_has_been_granted(self, granted: bool) -> None:
        self._save_json(AUTH_GRANTED_KEY, granted)

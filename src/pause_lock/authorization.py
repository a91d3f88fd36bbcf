import json
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from pause_lock.errors import AlreadyRequesting
from pause_lock.schema import AuthorizationStatus
from pause_lock.storage import Persistence


class PermissionService(Protocol):
    def status(self) -> AuthorizationStatus: ...

    def request(self) -> AuthorizationStatus: ...


class StoredPermissionService:
    """
    Blocking permission kept in its own file so the CLI can grant it while
    the daemon runs.

    `request()` asks through `prompt` when one is given. Without a prompt
    (the daemon) an undetermined status is answered as denied without being
    recorded, so a later explicit grant still counts.
    """

    def __init__(self, path: Path, prompt: Callable[[], bool] | None = None):
        self.path = path
        self.prompt = prompt

    def status(self) -> AuthorizationStatus:
        if not self.path.exists():
            return AuthorizationStatus.UNDETERMINED
        try:
            with open(self.path) as f:
                return AuthorizationStatus(json.load(f).get("status"))
        except (OSError, ValueError, AttributeError) as e:
            logger.error(f"Failed to read permission file: {e}")
            return AuthorizationStatus.UNDETERMINED

    def set_status(self, status: AuthorizationStatus) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump({"status": status.value, "updated_at": datetime.now().isoformat()}, f)
        logger.info(f"Blocking permission set to {status.value}")

    def request(self) -> AuthorizationStatus:
        current = self.status()
        if current is not AuthorizationStatus.UNDETERMINED:
            return current
        if self.prompt is None:
            return AuthorizationStatus.DENIED

        granted = self.prompt()
        status = AuthorizationStatus.APPROVED if granted else AuthorizationStatus.DENIED
        self.set_status(status)
        return status


class AuthorizationGate:
    """
    Tracks the external permission and serializes requests for it.

    The sticky `has_been_granted` flag survives restarts: an undetermined
    status after a previous grant is treated as approved while a silent
    re-request runs.
    """

    def __init__(self, service: PermissionService, persistence: Persistence):
        self.service = service
        self.persistence = persistence
        self._requesting = False
        self._lock = threading.Lock()

    @property
    def has_been_granted(self) -> bool:
        return self.persistence.load_has_been_granted()

    @property
    def is_requesting(self) -> bool:
        return self._requesting

    def status(self) -> AuthorizationStatus:
        return self.service.status()

    def _record(self, status: AuthorizationStatus) -> None:
        if status is AuthorizationStatus.APPROVED:
            self.persistence.save_has_been_granted(True)
        elif status is AuthorizationStatus.DENIED:
            self.persistence.save_has_been_granted(False)

    def _request(self) -> AuthorizationStatus:
        with self._lock:
            if self._requesting:
                raise AlreadyRequesting()
            self._requesting = True
        try:
            outcome = self.service.request()
        finally:
            with self._lock:
                self._requesting = False
        if outcome is AuthorizationStatus.APPROVED:
            self._record(outcome)
        return outcome

    def request_if_needed(self) -> bool:
        """
        Returns True when blocking may proceed.

        Raises:
            AlreadyRequesting: another request is still waiting for an answer.
        """
        status = self.status()

        if status is AuthorizationStatus.APPROVED:
            self._record(status)
            return True

        if status is AuthorizationStatus.DENIED:
            self._record(status)
            logger.warning("Blocking permission denied")
            return False

        if self.has_been_granted:
            logger.debug("Permission undetermined after a previous grant, re-requesting silently")
            try:
                outcome = self._request()
            except AlreadyRequesting:
                raise
            except Exception as e:
                logger.warning(f"Silent re-authorization failed: {e}")
            else:
                if outcome is AuthorizationStatus.DENIED:
                    logger.debug("Silent re-authorization not confirmed, proceeding on previous grant")
            return True

        logger.info("Requesting blocking permission")
        try:
            outcome = self._request()
        except AlreadyRequesting:
            raise
        except Exception as e:
            logger.error(f"Authorization request failed: {e}")
            return False
        if outcome is not AuthorizationStatus.APPROVED:
            logger.warning("Blocking permission was not granted")
        return outcome is AuthorizationStatus.APPROVED

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from pause_lock.schema import Source, SourceKind


class ArbitrationError(Exception):
    """Base class for every refusal the arbitration domain can report."""

    code = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class NoSelection(ArbitrationError):
    code = "no_selection"

    def __init__(self, name: str):
        super().__init__(f"'{name}' has no apps, categories or domains linked.")
        self.name = name


class Conflict(ArbitrationError):
    """Another source already holds the enforcement slot."""

    code = "conflict"

    def __init__(self, by: Source, name: str | None = None):
        label = name or str(by)
        super().__init__(f"{by.kind.value.title()} '{label}' is currently active.")
        self.by = by
        self.name = name

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["by"] = self.by.model_dump(mode="json")
        data["name"] = self.name
        return data


class ConflictWithProfile(Conflict):
    code = "conflict_with_profile"


class Busy(ArbitrationError):
    """Delete, disable or edit attempted on the source holding the slot."""

    code = "busy"

    def __init__(self, name: str, action: str):
        super().__init__(f"Cannot {action} '{name}' while it is blocking.")
        self.name = name
        self.action = action


class AuthorizationError(ArbitrationError):
    code = "authorization"

    def __init__(self, message: str = "Blocking permission was not granted."):
        super().__init__(message)


class AlreadyRequesting(AuthorizationError):
    code = "already_requesting"

    def __init__(self):
        super().__init__("An authorization request is already in progress.")


class NotFound(ArbitrationError):
    code = "not_found"

    def __init__(self, what: str):
        super().__init__(f"No registered {what}.")
        self.what = what


class EnforcementIOError(ArbitrationError):
    code = "enforcement_io"


class ScanFailed(ArbitrationError):
    code = "scan_failed"

    def __init__(self, failure: Enum):
        super().__init__(f"Tag scan failed: {failure.value}.")
        self.failure = failure


class InvalidInput(ArbitrationError):
    code = "invalid_input"


class Outcome(str, Enum):
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    REJECTED = "rejected"


class TransitionResult(BaseModel):
    """What a controller call did, or why it refused."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: Outcome
    source: Source | None = None
    error: ArbitrationError | None = None

    @property
    def ok(self) -> bool:
        """False only for refusals; a release may succeed and still carry an error."""
        return self.outcome is not Outcome.REJECTED

    @classmethod
    def rejected(cls, error: ArbitrationError, source: Source | None = None):
        return cls(outcome=Outcome.REJECTED, source=source, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "outcome": self.outcome.value,
            "source": self.source.model_dump(mode="json") if self.source else None,
            "error": self.error.to_dict() if self.error else None,
        }


def conflict_for(source: Source, name: str | None = None) -> Conflict:
    if source.kind is SourceKind.PROFILE:
        return ConflictWithProfile(source, name)
    return Conflict(source, name)

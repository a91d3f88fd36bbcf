from datetime import datetime, time, timedelta
from enum import Enum, IntEnum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

IDENTIFIER_SEPARATORS = (" ", "\t", "-", ":")


def normalize_identifier(identifier: str) -> str:
    """Lowercases a hardware identifier and strips whitespace, '-' and ':'."""
    normalized = identifier.strip().lower()
    for sep in IDENTIFIER_SEPARATORS:
        normalized = normalized.replace(sep, "")
    return normalized


class Weekday(IntEnum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @property
    def short_name(self) -> str:
        return self.name[:3].title()


class Schedule(BaseModel):
    """Weekly window. `end` is exclusive; `end < start` crosses midnight."""

    weekdays: set[Weekday] = Field(default_factory=set)
    start: time = time(9, 0)
    end: time = time(17, 0)

    @field_validator("start", "end")
    @classmethod
    def _minute_granularity(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0, tzinfo=None)

    @property
    def crosses_midnight(self) -> bool:
        return self.end < self.start

    def contains(self, now: datetime) -> bool:
        """True when `now` falls inside the window."""
        current = now.time().replace(second=0, microsecond=0)
        today = Weekday(now.weekday())

        if self.start == self.end:
            return False
        if not self.crosses_midnight:
            return today in self.weekdays and self.start <= current < self.end

        # Overnight: the evening part belongs to today, the morning part to yesterday.
        yesterday = Weekday((now.weekday() - 1) % 7)
        if today in self.weekdays and current >= self.start:
            return True
        return yesterday in self.weekdays and current < self.end

    def next_activation(self, after: datetime) -> datetime | None:
        """First window start strictly after `after`, or None without weekdays."""
        if not self.weekdays or self.start == self.end:
            return None

        for days_ahead in range(8):
            day = after.date() + timedelta(days=days_ahead)
            if Weekday(day.weekday()) not in self.weekdays:
                continue
            candidate = datetime.combine(day, self.start)
            if candidate > after:
                return candidate
        return None

    def describe(self) -> str:
        days = ", ".join(d.short_name for d in sorted(self.weekdays)) or "never"
        return f"{days} {self.start:%H:%M}-{self.end:%H:%M}"


class Selection(BaseModel):
    """Opaque blocked-target tokens; only emptiness and counts matter here."""

    apps: frozenset[str] = Field(default_factory=frozenset)
    categories: frozenset[str] = Field(default_factory=frozenset)
    web_domains: frozenset[str] = Field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not (self.apps or self.categories or self.web_domains)

    def counts(self) -> tuple[int, int, int]:
        return len(self.apps), len(self.categories), len(self.web_domains)


class SourceKind(str, Enum):
    TAG = "tag"
    PROFILE = "profile"


class Source(BaseModel, frozen=True):
    """Anything that can hold the enforcement slot."""

    kind: SourceKind
    id: UUID

    @classmethod
    def tag(cls, source_id: UUID) -> "Source":
        return cls(kind=SourceKind.TAG, id=source_id)

    @classmethod
    def profile(cls, source_id: UUID) -> "Source":
        return cls(kind=SourceKind.PROFILE, id=source_id)

    def __str__(self) -> str:
        return f"{self.kind.value.title()}({self.id})"


class Tag(BaseModel):
    """A registered physical token."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    identifier: str
    created_at: datetime = Field(default_factory=datetime.now)
    # Projection of ArbitrationState, never read back as truth.
    is_active: bool = False

    @field_validator("identifier")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_identifier(value)


class TimeProfile(BaseModel):
    """A recurring weekly blocking window."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    schedule: Schedule = Field(default_factory=Schedule)
    is_enabled: bool = True
    created_at: datetime = Field(default_factory=datetime.now)

    def is_due(self, now: datetime) -> bool:
        return self.is_enabled and self.schedule.contains(now)


class ArbitrationState(BaseModel):
    is_enforcing: bool = False
    active_source: Source | None = None


class AuthorizationStatus(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    UNDETERMINED = "undetermined"

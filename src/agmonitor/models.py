"""Data models for agmonitor."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class TrafficLight(Enum):
    """Traffic-light colour for a group's worst remaining quota."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class ClientState(Enum):
    """Lifecycle states of the polling client."""

    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass(slots=True, frozen=True)
class ProcessCandidate:
    """A process that looks like the language server, as reported by the OS."""

    pid: int
    command_line: str


@dataclass(slots=True, frozen=True)
class ConnectionDescriptor:
    """Everything needed to reach a running language server."""

    pid: int
    port: int
    token: str
    extension_port: int | None = None  # Declared hint, not necessarily the API port


@dataclass(slots=True, frozen=True)
class QuotaItem:
    """Quota state for a single model at parse time."""

    label: str
    model_id: str
    remaining_fraction: float | None  # 0.0 - 1.0, None when the server omits it
    is_exhausted: bool
    reset_at: datetime | None
    time_until_reset: timedelta
    reset_display: str

    @property
    def remaining_percentage(self) -> float | None:
        """Remaining quota as a percentage, or None when unknown."""
        if self.remaining_fraction is None:
            return None
        return self.remaining_fraction * 100


@dataclass(slots=True, frozen=True)
class CreditBalance:
    """Prompt credit balance. Only built when the monthly allocation is positive."""

    available: float
    monthly: float

    @property
    def used_percentage(self) -> float:
        """Spent credits as a percentage of the monthly allowance."""
        return (self.monthly - self.available) / self.monthly * 100

    @property
    def remaining_percentage(self) -> float:
        """Available credits as a percentage of the monthly allowance."""
        return self.available / self.monthly * 100


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Immutable result of one successful status poll."""

    captured_at: datetime
    credits: CreditBalance | None
    items: tuple[QuotaItem, ...]


@dataclass(slots=True, frozen=True)
class GroupDefinition:
    """A named model group matched by lowercase label substrings."""

    id: str
    display_name: str
    label_patterns: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class Thresholds:
    """Traffic-light limits. A percentage at or below a limit takes that colour."""

    yellow: float = 40.0
    red: float = 20.0


@dataclass(slots=True, frozen=True)
class GroupView:
    """Members of one group for one snapshot, with their worst remaining percentage."""

    id: str
    members: tuple[QuotaItem, ...]
    worst_remaining_pct: float

    @property
    def max_reset(self) -> timedelta:
        """Longest reset countdown among members (zero for an empty group)."""
        return max((m.time_until_reset for m in self.members), default=timedelta(0))


@dataclass(slots=True)
class AlertState:
    """Per-group hysteresis state. The only state kept between polls."""

    active: bool = False
    dipped_below_recovery: bool = False
    recovery_condition_met: bool = False

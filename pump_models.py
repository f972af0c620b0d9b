"""Data model and error taxonomy for the well monitor."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width so stored timestamps sort correctly as text
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# ENUMS
# ============================================================================


class PumpStatus(str, enum.Enum):
    OFF = "Off"
    IDLE = "Idle"
    NORMAL = "Normal"
    DRY = "Dry"
    RAPID_CYCLE = "RapidCycle"
    UNKNOWN = "Unknown"


# Statuses that may carry a current value
MEASURED_STATUSES = frozenset({PumpStatus.OFF, PumpStatus.IDLE, PumpStatus.NORMAL})


class RelayAction(str, enum.Enum):
    CYCLE_START = "CycleStart"
    CYCLE_END = "CycleEnd"


class OcrBackendKind(str, enum.Enum):
    """Fixed set of OCR engines; the order is chosen in configuration."""

    TESSERACT = "tesseract"
    AZURE = "azure"


class RowKind(str, enum.Enum):
    """Stored tables that are queued for upload, in upload order."""

    READINGS = "readings"
    RELAY_ACTIONS = "relay_actions"
    ALERTS = "alerts"
    HOURLY_SUMMARIES = "hourly_summaries"
    DAILY_SUMMARIES = "daily_summaries"
    MONTHLY_SUMMARIES = "monthly_summaries"


SUMMARY_KINDS = (RowKind.HOURLY_SUMMARIES, RowKind.DAILY_SUMMARIES, RowKind.MONTHLY_SUMMARIES)


class AlertKind(str, enum.Enum):
    DRY = "dry"
    RELAY_FAULT = "relay_fault"


# ============================================================================
# RECORDS
# ============================================================================


@dataclass(frozen=True)
class QualityMetrics:
    brightness: float
    contrast: float
    sharpness: float
    noise: float


@dataclass(frozen=True)
class RawExtraction:
    """Text pulled out of one captured image. Never persisted."""

    text: str
    confidence: float
    backend: OcrBackendKind
    duration_ms: int
    preprocessing_steps: tuple[str, ...] = ()
    quality_metrics: Optional[QualityMetrics] = None
    attempts: int = 1
    fallback_used: bool = False
    processed_image: Optional[bytes] = field(default=None, repr=False, compare=False)


@dataclass
class PumpReading:
    timestamp_utc: datetime
    status: PumpStatus
    current_amps: Optional[float]
    raw_text: str
    confidence: float
    is_valid: bool
    synced: bool = False
    backend: Optional[str] = None
    notes: str = ""
    id: Optional[int] = None

    def __post_init__(self):
        if self.current_amps is not None and self.status not in MEASURED_STATUSES:
            raise ValueError(
                f"current_amps must be None for status {self.status.value}"
            )


@dataclass
class RelayActionLog:
    timestamp_utc: datetime
    action: RelayAction
    reason: str
    synced: bool = False
    id: Optional[int] = None


@dataclass
class Alert:
    kind: AlertKind
    timestamp_utc: datetime
    message: str
    suppressed: bool = False
    synced: bool = False
    id: Optional[int] = None


@dataclass
class UsageSummary:
    """Energy and pump starts for one hour, day or month (UTC)."""

    period: str
    period_start: datetime
    total_kwh: float
    pump_cycles: int
    relay_cycles: int
    synced: bool = False
    id: Optional[int] = None


@dataclass
class SafetyState:
    """In-memory debounce counters and rate-limit clock.

    Rebuilt from stored rows on restart, never persisted directly.
    """

    consecutive_dry_count: int = 0
    consecutive_rapid_cycle_count: int = 0
    last_cycle_timestamp: Optional[datetime] = None
    last_attempt_timestamp: Optional[datetime] = None
    cycles_today: int = 0
    day_boundary: Optional[date] = None
    dry_alert_latched: bool = False
    last_alert_at: dict[AlertKind, datetime] = field(default_factory=dict)

    def roll_day(self, now: datetime) -> bool:
        """Reset the daily cycle count when the UTC date changes."""
        today = now.astimezone(timezone.utc).date()
        if self.day_boundary != today:
            self.day_boundary = today
            self.cycles_today = 0
            return True
        return False

    def record_cycle(self, when: datetime):
        if self.last_cycle_timestamp is None or when > self.last_cycle_timestamp:
            self.last_cycle_timestamp = when
        self.cycles_today += 1


# ============================================================================
# ERRORS
# ============================================================================


class TransientHardwareError(RuntimeError):
    """Camera or relay I/O failed after bounded retries."""


class ExtractionError(RuntimeError):
    TIMEOUT = "timeout"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    INVALID_IMAGE = "invalid_image"

    def __init__(self, kind, message=""):
        self.kind = kind
        super().__init__(message or kind)


class PersistenceFailure(RuntimeError):
    """Local store write failed; the agent must stop rather than lose data."""


class SyncFailure(RuntimeError):
    """Cloud upload failed; always recoverable on the next interval."""


class CycleAbandoned(RuntimeError):
    """The per-cycle deadline expired before the reading was stored."""


class Deadline:
    """Time budget shared by the blocking steps of one monitoring cycle."""

    def __init__(self, seconds, clock=time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cap(self, timeout: float) -> float:
        return min(timeout, self.remaining())

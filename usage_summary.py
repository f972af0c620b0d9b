"""Hourly, daily and monthly pump usage summaries.

An hour is built from the stored readings and relay actions once it is over.
A day adds up its hours and a month adds up its days, so the longer
summaries outlive the readings they came from. When a recomputed period
changes it is queued for upload again.
"""

from datetime import timedelta, timezone

from monitor_log import log
from pump_models import PumpStatus, RelayAction, RowKind, UsageSummary, utc_now

RUNNING_STATUSES = frozenset({PumpStatus.NORMAL})


def hour_start(when):
    return when.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def day_start(when):
    return hour_start(when).replace(hour=0)


def month_start(when):
    return day_start(when).replace(day=1)


def next_month(start):
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def energy_kwh(readings, start, end, voltage, max_gap_seconds):
    """Integrate current over [start, end).

    Each valid reading with a current holds until the next reading, but for
    no longer than ``max_gap_seconds``; gaps in the data count as no draw.
    """
    readings = list(readings)
    total = 0.0
    for reading, following in zip(readings, readings[1:] + [None]):
        if not reading.is_valid or reading.current_amps is None:
            continue
        held_until = reading.timestamp_utc + timedelta(seconds=max_gap_seconds)
        if following is not None:
            held_until = min(held_until, following.timestamp_utc)
        seconds = (min(held_until, end) - max(reading.timestamp_utc, start)).total_seconds()
        if seconds > 0:
            total += reading.current_amps * voltage * seconds / 3_600_000.0
    return total


def pump_starts(readings, start, end):
    """Count valid readings in [start, end) where the pump went from stopped to running."""
    running = False
    starts = 0
    for reading in readings:
        if not reading.is_valid:
            continue
        now_running = reading.status in RUNNING_STATUSES
        if now_running and not running and start <= reading.timestamp_utc < end:
            starts += 1
        running = now_running
    return starts


def combine(period, period_start, parts):
    parts = list(parts)
    return UsageSummary(
        period=period,
        period_start=period_start,
        total_kwh=sum(part.total_kwh for part in parts),
        pump_cycles=sum(part.pump_cycles for part in parts),
        relay_cycles=sum(part.relay_cycles for part in parts),
    )


class UsageSummarizer:
    def __init__(self, settings_source, store):
        self._settings = settings_source
        self._store = store

    def summarize_hour(self, start):
        """Build the summary for the hour beginning at ``start``, or None if it has no data."""
        options = self._settings.current()["summaries"]
        max_gap = float(options["max_sample_gap_seconds"])
        end = start + timedelta(hours=1)

        # Readings just before the hour carry current and running state into it
        readings = self._store.get_readings(start - timedelta(seconds=max_gap), end)
        actions = self._store.get_relay_actions(start, end)
        if not actions and not any(r.timestamp_utc >= start for r in readings):
            return None

        return UsageSummary(
            period=start.strftime("%Y-%m-%d %H"),
            period_start=start,
            total_kwh=energy_kwh(readings, start, end, float(options["supply_voltage"]), max_gap),
            pump_cycles=pump_starts(readings, start, end),
            relay_cycles=sum(1 for a in actions if a.action == RelayAction.CYCLE_START),
        )

    def run(self, now=None):
        """Refresh summaries for the lookback window. Returns how many rows changed."""
        options = self._settings.current()["summaries"]
        now = now or utc_now()
        current_hour = hour_start(now)
        lookback = max(1, int(options["lookback_hours"]))

        changed = 0
        days = set()
        for n in range(lookback, 0, -1):
            start = current_hour - timedelta(hours=n)
            summary = self.summarize_hour(start)
            if summary is None:
                continue
            changed += self._store.save_summary(RowKind.HOURLY_SUMMARIES, summary)
            days.add(day_start(start))

        months = set()
        for start in sorted(days):
            hours = self._store.get_summaries(RowKind.HOURLY_SUMMARIES, start, start + timedelta(days=1))
            changed += self._store.save_summary(
                RowKind.DAILY_SUMMARIES, combine(start.strftime("%Y-%m-%d"), start, hours)
            )
            months.add(month_start(start))

        for start in sorted(months):
            days_in_month = self._store.get_summaries(RowKind.DAILY_SUMMARIES, start, next_month(start))
            changed += self._store.save_summary(
                RowKind.MONTHLY_SUMMARIES, combine(start.strftime("%Y-%m"), start, days_in_month)
            )

        if changed:
            log(f"Usage summaries updated: {changed} rows queued for upload")
        return changed

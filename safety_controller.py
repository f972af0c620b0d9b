"""Debounced alerting and automated power-cycle recovery.

Two independent counters run over the stream of valid readings: consecutive
Dry readings and consecutive RapidCycle readings. Dry raises an alert once per
threshold crossing; RapidCycle (and, when enabled, Dry) orders a relay power
cycle, subject to a minimum interval between attempts and a daily cap.

State lives only in memory. After a restart it is rebuilt by replaying recent
rows from the store, so the store stays the single source of truth.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Optional

from monitor_log import log
from pump_models import (
    Alert,
    AlertKind,
    PersistenceFailure,
    PumpStatus,
    RelayAction,
    RelayActionLog,
    SafetyState,
    utc_now,
)

REASON_RAPID_CYCLING = "RapidCycling"
REASON_DRY_CONDITION = "DryCondition"

SUPPRESS_DISABLED = "auto_actions_disabled"
SUPPRESS_INTERVAL = "minimum_interval"
SUPPRESS_DAILY_CAP = "daily_cap"
SUPPRESS_COOLDOWN = "cooldown_active"


@dataclass
class SafetyDecision:
    skipped_invalid: bool = False
    alerts: list = field(default_factory=list)
    cycle_reason: Optional[str] = None
    cycle_attempted: bool = False
    cycle_succeeded: bool = False
    suppressed: list = field(default_factory=list)


class SafetyController:
    def __init__(self, settings_source, relay, store, alert_sink=None, sleep=time.sleep):
        self._settings = settings_source
        self._relay = relay
        self._store = store
        self._alert_sink = alert_sink
        self._sleep = sleep
        self.state = SafetyState()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, reading, now=None):
        settings = self._settings.current()
        now = now or utc_now()
        decision = SafetyDecision()

        if self.state.roll_day(now):
            log(f"Safety: new day {self.state.day_boundary}, daily cycle count reset")

        if not reading.is_valid:
            decision.skipped_invalid = True
            return decision

        self._update_counters(reading.status)
        self._check_dry_alert(settings, now, decision)

        trigger = self._cycle_trigger(settings)
        if trigger:
            decision.cycle_reason = trigger
            self._maybe_power_cycle(trigger, settings, now, decision)

        return decision

    def _update_counters(self, status):
        state = self.state
        if status == PumpStatus.DRY:
            state.consecutive_dry_count += 1
        else:
            state.consecutive_dry_count = 0
            state.dry_alert_latched = False

        if status == PumpStatus.RAPID_CYCLE:
            state.consecutive_rapid_cycle_count += 1
        else:
            state.consecutive_rapid_cycle_count = 0

    def _check_dry_alert(self, settings, now, decision):
        threshold = max(1, int(settings["alerts"]["dry_count_threshold"]))
        if self.state.consecutive_dry_count < threshold or self.state.dry_alert_latched:
            return

        self.state.dry_alert_latched = True
        self._raise_alert(
            AlertKind.DRY,
            now,
            f"Dry condition: {self.state.consecutive_dry_count} consecutive dry readings",
            settings,
            decision,
        )

    def _raise_alert(self, kind, now, message, settings, decision):
        cooldown = timedelta(minutes=float(settings["alerts"]["cooldown_minutes"]))
        last = self.state.last_alert_at.get(kind)

        if last is not None and now - last < cooldown:
            alert = Alert(kind=kind, timestamp_utc=now, message=message, suppressed=True)
            decision.alerts.append(alert)
            decision.suppressed.append(SUPPRESS_COOLDOWN)
            log(f"ALERT suppressed: {message} reason={SUPPRESS_COOLDOWN} "
                f"(last {kind.value} alert at {last.isoformat()})")
            return alert

        self.state.last_alert_at[kind] = now
        alert = Alert(kind=kind, timestamp_utc=now, message=message)
        decision.alerts.append(alert)
        log(f"ALERT [{kind.value}]: {message}")

        if self._alert_sink is not None:
            try:
                self._alert_sink(alert)
            except PersistenceFailure:
                raise
            except Exception as e:
                log(f"Alert delivery failed for {kind.value}: {e}")
        return alert

    def _cycle_trigger(self, settings):
        alerts = settings["alerts"]
        if self.state.consecutive_rapid_cycle_count >= max(1, int(alerts["rcyc_count_threshold"])):
            return REASON_RAPID_CYCLING
        if (settings["power_management"]["enable_dry_condition_cycling"]
                and self.state.consecutive_dry_count >= max(1, int(alerts["dry_count_threshold"]))):
            return REASON_DRY_CONDITION
        return None

    # ------------------------------------------------------------------
    # Power cycling
    # ------------------------------------------------------------------

    def _suppress(self, decision, trigger, code, detail):
        decision.suppressed.append(code)
        log(f"Power cycle for {trigger} suppressed, reason={code} ({detail})")

    def _maybe_power_cycle(self, trigger, settings, now, decision):
        pm = settings["power_management"]
        state = self.state

        if not pm["enable_auto_actions"]:
            self._suppress(decision, trigger, SUPPRESS_DISABLED, "automatic actions are off")
            return

        interval = timedelta(minutes=float(pm["minimum_cycle_interval_minutes"]))
        last = max(
            (t for t in (state.last_attempt_timestamp, state.last_cycle_timestamp) if t is not None),
            default=None,
        )
        if last is not None and now - last < interval:
            remaining = interval - (now - last)
            self._suppress(decision, trigger, SUPPRESS_INTERVAL,
                           f"last attempt {last.isoformat()}, {remaining.total_seconds():.0f}s remaining")
            return

        max_daily = int(pm["max_daily_cycles"])
        if state.cycles_today >= max_daily:
            self._suppress(decision, trigger, SUPPRESS_DAILY_CAP,
                           f"{state.cycles_today}/{max_daily} cycles today")
            return

        # A failed attempt still consumes the interval
        state.last_attempt_timestamp = now
        decision.cycle_attempted = True
        log(f"Power cycle authorized: reason={trigger}, cycle {state.cycles_today + 1}/{max_daily} today")

        if self._power_cycle(trigger, pm, now):
            state.record_cycle(now)
            decision.cycle_succeeded = True
            log(f"Power cycle complete: reason={trigger}")
        else:
            self._raise_alert(
                AlertKind.RELAY_FAULT,
                now,
                f"Power cycle for {trigger} failed; will retry after the minimum interval",
                settings,
                decision,
            )

    def _power_cycle(self, reason, pm, now):
        delay = float(pm["power_cycle_delay_seconds"])

        if not self._relay.set_state(False):
            log(f"Power cycle aborted: relay did not open, reason=relay_fault ({reason})")
            # The open may still land late; always command the relay closed
            self._restore_power(pm)
            return False

        try:
            self._store.append_relay_action(
                RelayActionLog(timestamp_utc=now, action=RelayAction.CYCLE_START, reason=reason)
            )
            self._sleep(delay)
        finally:
            restored = self._restore_power(pm)

        if restored:
            self._store.append_relay_action(
                RelayActionLog(
                    timestamp_utc=now + timedelta(seconds=delay),
                    action=RelayAction.CYCLE_END,
                    reason=reason,
                )
            )
        return restored

    def _restore_power(self, pm):
        attempts = max(1, int(pm["restore_attempts"]))
        for attempt in range(1, attempts + 1):
            if self._relay.set_state(True):
                return True
            log(f"Relay did not close (attempt {attempt}/{attempts}), reason=relay_fault")
        log("CRITICAL: relay could not be closed; pump is without power")
        return False

    # ------------------------------------------------------------------
    # Restart recovery
    # ------------------------------------------------------------------

    def restore(self, now=None):
        """Rebuild counters and the rate-limit clock from stored rows."""
        settings = self._settings.current()
        now = now or utc_now()
        replay = timedelta(hours=float(settings["monitoring"]["safety_replay_hours"]))
        interval = timedelta(minutes=float(settings["power_management"]["minimum_cycle_interval_minutes"]))
        end = now + timedelta(seconds=1)

        state = SafetyState()
        state.roll_day(now)
        self.state = state

        for reading in self._store.get_readings(now - replay, end):
            if reading.is_valid:
                self._update_counters(reading.status)

        dry_threshold = max(1, int(settings["alerts"]["dry_count_threshold"]))
        if state.consecutive_dry_count >= dry_threshold:
            state.dry_alert_latched = True

        day_start = datetime.combine(state.day_boundary, dt_time.min, tzinfo=timezone.utc)
        pending_start = None
        for action in self._store.get_relay_actions(min(day_start, now - interval), end):
            if action.action == RelayAction.CYCLE_START:
                pending_start = action.timestamp_utc
                state.last_attempt_timestamp = action.timestamp_utc
            elif action.action == RelayAction.CYCLE_END and pending_start is not None:
                if pending_start >= day_start:
                    state.record_cycle(pending_start)
                else:
                    # Yesterday's cycle still holds the interval but not today's cap
                    state.last_cycle_timestamp = pending_start
                pending_start = None

        log(f"Safety state restored: dry={state.consecutive_dry_count}, "
            f"rcyc={state.consecutive_rapid_cycle_count}, cycles_today={state.cycles_today}, "
            f"last_cycle={state.last_cycle_timestamp.isoformat() if state.last_cycle_timestamp else None}")
        return state

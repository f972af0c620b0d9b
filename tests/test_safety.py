"""Tests for dry alerts and power-cycle rate limiting."""

from datetime import datetime, timedelta, timezone

import pytest

START = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


class FakeRelay:
    def __init__(self, results=None):
        self.calls = []
        self._results = list(results or [])

    def set_state(self, closed):
        self.calls.append(closed)
        return self._results.pop(0) if self._results else True


def _reading(status, valid=True, amps=None):
    from pump_models import PumpReading, PumpStatus

    status = PumpStatus(status)
    if status == PumpStatus.NORMAL and amps is None:
        amps = 4.2
    return PumpReading(
        timestamp_utc=START,
        status=status,
        current_amps=amps,
        raw_text=status.value,
        confidence=0.9 if valid else 0.4,
        is_valid=valid,
    )


@pytest.fixture
def store(tmp_path):
    from reading_store import ReadingStore

    db = ReadingStore(tmp_path / "wm.db")
    yield db
    db.close()


def _controller(store, relay=None, sink=None, **overrides):
    from monitor_config import SettingsStore
    from safety_controller import SafetyController

    return SafetyController(
        SettingsStore(overrides),
        relay or FakeRelay(),
        store,
        alert_sink=sink.append if sink is not None else None,
        sleep=lambda seconds: None,
    )


def _actions(store):
    return [a.action.value for a in store.get_relay_actions(START - timedelta(days=1), START + timedelta(days=30))]


def test_low_confidence_reading_leaves_counters_unchanged(store):
    controller = _controller(store)
    controller.evaluate(_reading("RapidCycle"), START)

    decision = controller.evaluate(_reading("Normal", valid=False), START + timedelta(seconds=30))

    assert decision.skipped_invalid is True
    assert controller.state.consecutive_rapid_cycle_count == 1
    assert controller.state.consecutive_dry_count == 0


def test_two_rapid_cycle_readings_power_cycle_once(store):
    relay = FakeRelay()
    controller = _controller(store, relay)

    first = controller.evaluate(_reading("RapidCycle"), START)
    second = controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30))

    assert first.cycle_attempted is False
    assert second.cycle_succeeded is True
    assert second.cycle_reason == "RapidCycling"
    assert relay.calls == [False, True]
    assert _actions(store) == ["CycleStart", "CycleEnd"]
    assert controller.state.cycles_today == 1


def test_third_rapid_cycle_reading_is_held_by_minimum_interval(store):
    controller = _controller(store)
    for n in range(3):
        decision = controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30 * n))

    assert decision.cycle_attempted is False
    assert decision.suppressed == ["minimum_interval"]
    assert _actions(store) == ["CycleStart", "CycleEnd"]


def test_three_dry_readings_alert_once(store):
    alerts = []
    controller = _controller(store, sink=alerts)

    for n in range(3):
        controller.evaluate(_reading("Dry"), START + timedelta(seconds=30 * n))
    fourth = controller.evaluate(_reading("Dry"), START + timedelta(seconds=90))

    assert [a.kind.value for a in alerts] == ["dry"]
    assert fourth.alerts == []
    assert _actions(store) == []


def test_dry_alert_is_edge_triggered(store):
    alerts = []
    controller = _controller(store, sink=alerts, cooldownMinutes=0)

    sequence = ["Dry"] * 3 + ["Normal"] + ["Dry"] * 3
    for n, status in enumerate(sequence):
        controller.evaluate(_reading(status), START + timedelta(seconds=30 * n))

    assert len(alerts) == 2


def test_second_dry_run_inside_cooldown_is_suppressed(store):
    alerts = []
    controller = _controller(store, sink=alerts)

    sequence = ["Dry"] * 3 + ["Normal"] + ["Dry"] * 3
    decisions = [
        controller.evaluate(_reading(status), START + timedelta(seconds=30 * n))
        for n, status in enumerate(sequence)
    ]

    assert len(alerts) == 1
    assert decisions[-1].alerts[0].suppressed is True
    assert "cooldown_active" in decisions[-1].suppressed


def test_auto_actions_disabled_never_touches_relay(store):
    relay = FakeRelay()
    controller = _controller(store, relay, enableAutoActions=False)

    controller.evaluate(_reading("RapidCycle"), START)
    decision = controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30))

    assert decision.suppressed == ["auto_actions_disabled"]
    assert relay.calls == []
    assert _actions(store) == []


def test_daily_cap_resets_on_next_utc_day(store):
    controller = _controller(store, minimumCycleIntervalMinutes=0, maxDailyCycles=2)

    results = []
    for n in range(6):
        decision = controller.evaluate(_reading("RapidCycle"), START + timedelta(minutes=n))
        results.append(decision)

    assert sum(d.cycle_succeeded for d in results) == 2
    assert results[-1].suppressed == ["daily_cap"]

    next_day = START + timedelta(days=1)
    decision = controller.evaluate(_reading("RapidCycle"), next_day)
    assert decision.cycle_succeeded is True
    assert controller.state.cycles_today == 1


def test_power_cycles_respect_interval_and_daily_cap_over_long_run(store):
    controller = _controller(store, minimumCycleIntervalMinutes=30, maxDailyCycles=10)

    # Rapid cycling reported every minute for two days
    for n in range(2 * 24 * 60):
        controller.evaluate(_reading("RapidCycle"), START + timedelta(minutes=n))

    starts = [
        a.timestamp_utc for a in store.get_relay_actions(START, START + timedelta(days=3))
        if a.action.value == "CycleStart"
    ]
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= timedelta(minutes=30) for gap in gaps)

    per_day = {}
    for when in starts:
        per_day[when.date()] = per_day.get(when.date(), 0) + 1
    assert max(per_day.values()) <= 10


def test_relay_that_will_not_open_raises_fault_alert(store):
    alerts = []
    relay = FakeRelay([False])
    controller = _controller(store, relay, sink=alerts)

    controller.evaluate(_reading("RapidCycle"), START)
    decision = controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30))

    assert decision.cycle_attempted is True
    assert decision.cycle_succeeded is False
    assert relay.calls == [False, True]
    assert [a.kind.value for a in alerts] == ["relay_fault"]
    assert _actions(store) == []
    assert controller.state.cycles_today == 0
    assert controller.state.last_attempt_timestamp == START + timedelta(seconds=30)

    retry = controller.evaluate(_reading("RapidCycle"), START + timedelta(minutes=5))
    assert retry.suppressed == ["minimum_interval"]


def test_relay_that_will_not_close_is_retried(store):
    alerts = []
    relay = FakeRelay([True, False, False, False])
    controller = _controller(store, relay, sink=alerts)

    controller.evaluate(_reading("RapidCycle"), START)
    decision = controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30))

    assert relay.calls == [False, True, True, True]
    assert decision.cycle_succeeded is False
    assert _actions(store) == ["CycleStart"]
    assert [a.kind.value for a in alerts] == ["relay_fault"]


def test_store_failure_mid_cycle_still_restores_power(store):
    from pump_models import PersistenceFailure

    relay = FakeRelay()
    controller = _controller(store, relay)
    controller.evaluate(_reading("RapidCycle"), START)
    store.close()

    with pytest.raises(PersistenceFailure):
        controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30))

    assert relay.calls == [False, True]


def test_dry_condition_cycling_when_enabled(store):
    controller = _controller(store, enableDryConditionCycling=True)

    for n in range(3):
        decision = controller.evaluate(_reading("Dry"), START + timedelta(seconds=30 * n))

    assert decision.cycle_reason == "DryCondition"
    assert decision.cycle_succeeded is True
    assert _actions(store) == ["CycleStart", "CycleEnd"]


def test_dry_condition_cycling_disabled_by_default(store):
    controller = _controller(store)

    for n in range(5):
        decision = controller.evaluate(_reading("Dry"), START + timedelta(seconds=30 * n))

    assert decision.cycle_reason is None
    assert _actions(store) == []


def test_failing_alert_sink_does_not_break_evaluation(store, capsys):
    from monitor_config import SettingsStore
    from safety_controller import SafetyController

    def broken_sink(alert):
        raise RuntimeError("broker down")

    controller = SafetyController(SettingsStore(), FakeRelay(), store, alert_sink=broken_sink,
                                  sleep=lambda seconds: None)
    for n in range(3):
        decision = controller.evaluate(_reading("Dry"), START + timedelta(seconds=30 * n))

    assert len(decision.alerts) == 1
    assert "Alert delivery failed" in capsys.readouterr().out


def test_restore_rebuilds_state_from_store(store):
    from pump_models import RelayAction, RelayActionLog

    for n, status in enumerate(["Normal", "Dry", "Dry", "Dry", "RapidCycle"]):
        reading = _reading(status)
        reading.timestamp_utc = START + timedelta(minutes=n)
        store.append(reading)
    cycle_at = START + timedelta(minutes=10)
    store.append(RelayActionLog(cycle_at, RelayAction.CYCLE_START, "RapidCycling"))
    store.append(RelayActionLog(cycle_at + timedelta(seconds=5), RelayAction.CYCLE_END, "RapidCycling"))

    controller = _controller(store)
    now = START + timedelta(minutes=20)
    state = controller.restore(now)

    assert state.consecutive_dry_count == 0
    assert state.consecutive_rapid_cycle_count == 1
    assert state.cycles_today == 1
    assert state.last_cycle_timestamp == cycle_at

    # The interval since the stored cycle is still enforced after restart
    decision = controller.evaluate(_reading("RapidCycle"), now)
    assert decision.suppressed == ["minimum_interval"]


def test_restore_latches_dry_alert_already_raised(store):
    alerts = []
    for n in range(3):
        reading = _reading("Dry")
        reading.timestamp_utc = START + timedelta(minutes=n)
        store.append(reading)

    controller = _controller(store, sink=alerts)
    controller.restore(START + timedelta(minutes=5))
    controller.evaluate(_reading("Dry"), START + timedelta(minutes=6))

    assert controller.state.consecutive_dry_count == 4
    assert alerts == []


def test_slow_relay_open_is_followed_by_close(store):
    import threading

    from relay_control import WatchdogRelay

    release = threading.Event()

    class SlowOpenRelay:
        def __init__(self):
            self.calls = []
            self.closed = True

        def set_state(self, closed):
            if not closed:
                release.wait(5)
            self.calls.append(closed)
            self.closed = closed
            return True

    hardware = SlowOpenRelay()
    watchdog = WatchdogRelay(hardware, timeout_seconds=0.05)
    controller = _controller(store, watchdog, power_management={"restore_attempts": 1})
    try:
        controller.evaluate(_reading("RapidCycle"), START)
        decision = controller.evaluate(_reading("RapidCycle"), START + timedelta(seconds=30))
        assert decision.cycle_succeeded is False
    finally:
        release.set()
        watchdog.shutdown(wait=True)

    assert hardware.calls == [False, True]
    assert hardware.closed is True

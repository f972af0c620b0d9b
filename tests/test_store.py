"""Tests for the local SQLite store."""

from datetime import datetime, timedelta, timezone

import pytest

OLD = datetime(2020, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _reading(when, status="Normal", amps=4.2, valid=True):
    from pump_models import PumpReading, PumpStatus

    return PumpReading(
        timestamp_utc=when,
        status=PumpStatus(status),
        current_amps=amps,
        raw_text=str(amps),
        confidence=0.9,
        is_valid=valid,
        backend="tesseract",
        notes="in_normal_band",
    )


@pytest.fixture
def store(tmp_path):
    from reading_store import ReadingStore

    db = ReadingStore(tmp_path / "data" / "wm.db")
    yield db
    db.close()


def test_append_assigns_ids_and_round_trips(store):
    from pump_models import RelayAction, RelayActionLog

    reading = store.append(_reading(NOW))
    action = store.append(RelayActionLog(NOW, RelayAction.CYCLE_START, "RapidCycling"))

    assert reading.id is not None
    assert action.id is not None

    [loaded] = store.get_readings(NOW - timedelta(minutes=1), NOW + timedelta(minutes=1))
    assert loaded.timestamp_utc == NOW
    assert loaded.current_amps == 4.2
    assert loaded.status.value == "Normal"
    assert loaded.synced is False

    [loaded_action] = store.get_relay_actions(NOW - timedelta(minutes=1), NOW + timedelta(minutes=1))
    assert loaded_action.action == RelayAction.CYCLE_START
    assert loaded_action.reason == "RapidCycling"


def test_append_rejects_unknown_rows(store):
    with pytest.raises(TypeError):
        store.append({"status": "Normal"})


def test_get_unsynced_in_insertion_order(store):
    later = store.append(_reading(NOW))
    earlier = store.append(_reading(NOW - timedelta(hours=1)))

    rows = store.get_unsynced("readings")

    assert [row.id for row in rows] == [later.id, earlier.id]
    assert len(store.get_unsynced("readings", limit=1)) == 1


def test_unsynced_rows_survive_cleanup_regardless_of_age(store):
    from pump_models import RelayAction, RelayActionLog

    old = store.append(_reading(OLD))
    store.append(RelayActionLog(OLD, RelayAction.CYCLE_END, "RapidCycling"))

    deleted = store.cleanup(NOW)

    assert deleted["readings"] == 0
    assert deleted["relay_actions"] == 0
    assert [row.id for row in store.get_unsynced("readings")] == [old.id]
    assert len(store.get_unsynced("relay_actions")) == 1


def test_cleanup_removes_old_synced_rows_only(store):
    old_synced = store.append(_reading(OLD))
    recent_synced = store.append(_reading(NOW))
    store.mark_synced("readings", [old_synced.id, recent_synced.id])

    deleted = store.cleanup(NOW - timedelta(days=30))

    assert deleted["readings"] == 1
    remaining = store.get_readings(OLD - timedelta(days=1), NOW + timedelta(days=1))
    assert [row.id for row in remaining] == [recent_synced.id]


def test_mark_synced_is_idempotent(store):
    ids = [store.append(_reading(NOW + timedelta(seconds=n))).id for n in range(3)]

    assert store.mark_synced("readings", ids) == 3
    assert store.mark_synced("readings", ids) == 0
    assert store.get_unsynced("readings") == []
    assert store.unsynced_counts()["readings"] == 0


def test_mark_synced_with_no_ids(store):
    assert store.mark_synced("relay_actions", []) == 0


def test_closed_store_raises_persistence_failure(tmp_path):
    from pump_models import PersistenceFailure
    from reading_store import ReadingStore

    db = ReadingStore(tmp_path / "wm.db")
    db.close()

    with pytest.raises(PersistenceFailure):
        db.append(_reading(NOW))


def test_rows_persist_across_reopen(tmp_path):
    from reading_store import ReadingStore

    path = tmp_path / "wm.db"
    first = ReadingStore(path)
    first.append(_reading(NOW, status="Dry", amps=None))
    first.close()

    second = ReadingStore(path)
    try:
        [row] = second.get_unsynced("readings")
        assert row.status.value == "Dry"
        assert row.current_amps is None
    finally:
        second.close()


def test_alerts_are_queued_for_upload(store):
    from pump_models import Alert, AlertKind

    alert = store.append(Alert(AlertKind.DRY, NOW, "Dry condition: 3 consecutive dry readings"))

    [queued] = store.get_unsynced("alerts")
    assert queued.id == alert.id
    assert queued.kind == AlertKind.DRY
    assert queued.timestamp_utc == NOW
    assert store.unsynced_counts()["alerts"] == 1


def _summary(period="2024-06-01 12", kwh=1.5, starts=2, relay=0):
    from pump_models import UsageSummary

    return UsageSummary(period, NOW, kwh, starts, relay)


def test_save_summary_inserts_then_updates_in_place(store):
    assert store.save_summary("hourly_summaries", _summary()) is True
    first = store.get_summary("hourly_summaries", "2024-06-01 12")

    assert store.save_summary("hourly_summaries", _summary(kwh=2.0)) is True
    second = store.get_summary("hourly_summaries", "2024-06-01 12")

    assert second.id == first.id
    assert second.total_kwh == 2.0
    assert len(store.get_unsynced("hourly_summaries")) == 1


def test_unchanged_summary_keeps_synced_flag(store):
    summary = _summary()
    store.save_summary("daily_summaries", summary)
    store.mark_synced("daily_summaries", [summary.id])

    assert store.save_summary("daily_summaries", _summary()) is False
    assert store.get_unsynced("daily_summaries") == []


def test_changed_summary_is_queued_again(store):
    summary = _summary()
    store.save_summary("monthly_summaries", summary)
    store.mark_synced("monthly_summaries", [summary.id])

    store.save_summary("monthly_summaries", _summary(starts=3))

    [queued] = store.get_unsynced("monthly_summaries")
    assert queued.pump_cycles == 3


def test_save_summary_rejects_row_tables(store):
    with pytest.raises(ValueError):
        store.save_summary("readings", _summary())


def test_cleanup_keeps_daily_and_monthly_summaries(store):
    from pump_models import UsageSummary

    for kind in ("hourly_summaries", "daily_summaries", "monthly_summaries"):
        summary = UsageSummary("2020-01", OLD, 1.0, 1, 0)
        store.save_summary(kind, summary)
        store.mark_synced(kind, [summary.id])

    deleted = store.cleanup(NOW)

    assert deleted["hourly_summaries"] == 1
    assert "daily_summaries" not in deleted
    assert store.get_summary("daily_summaries", "2020-01") is not None
    assert store.get_summary("monthly_summaries", "2020-01") is not None

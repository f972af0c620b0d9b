"""Local SQLite store: reading history and the cloud upload queue.

Every row carries a ``synced`` flag. Rows are only removed by retention
cleanup, and only once they have been delivered to the cloud; unsynced rows
are kept regardless of age.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from monitor_log import log
from pump_models import (
    SUMMARY_KINDS,
    Alert,
    AlertKind,
    PersistenceFailure,
    PumpReading,
    PumpStatus,
    RelayAction,
    RelayActionLog,
    RowKind,
    UsageSummary,
    from_iso,
    to_iso,
)

DB_TIMEOUT = 30

SCHEMA = """
CREATE TABLE IF NOT EXISTS readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_utc TEXT NOT NULL,
    status TEXT NOT NULL,
    current_amps REAL,
    raw_text TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL,
    is_valid INTEGER NOT NULL,
    backend TEXT,
    notes TEXT NOT NULL DEFAULT '',
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_readings_synced ON readings (synced, id);
CREATE INDEX IF NOT EXISTS idx_readings_timestamp ON readings (timestamp_utc);

CREATE TABLE IF NOT EXISTS relay_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_utc TEXT NOT NULL,
    action TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_relay_actions_synced ON relay_actions (synced, id);
CREATE INDEX IF NOT EXISTS idx_relay_actions_timestamp ON relay_actions (timestamp_utc);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_utc TEXT NOT NULL,
    kind TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_alerts_synced ON alerts (synced, id);
CREATE INDEX IF NOT EXISTS idx_alerts_timestamp ON alerts (timestamp_utc);
"""

SUMMARY_TABLE = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    period TEXT NOT NULL UNIQUE,
    timestamp_utc TEXT NOT NULL,
    total_kwh REAL NOT NULL,
    pump_cycles INTEGER NOT NULL,
    relay_cycles INTEGER NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_{table}_synced ON {table} (synced, id);
"""

# Daily and monthly totals are kept; they are all that remains of old readings
RETAINED_KINDS = (
    RowKind.READINGS,
    RowKind.RELAY_ACTIONS,
    RowKind.ALERTS,
    RowKind.HOURLY_SUMMARIES,
)


def _row_to_reading(row):
    return PumpReading(
        id=row["id"],
        timestamp_utc=from_iso(row["timestamp_utc"]),
        status=PumpStatus(row["status"]),
        current_amps=row["current_amps"],
        raw_text=row["raw_text"],
        confidence=row["confidence"],
        is_valid=bool(row["is_valid"]),
        backend=row["backend"],
        notes=row["notes"],
        synced=bool(row["synced"]),
    )


def _row_to_action(row):
    return RelayActionLog(
        id=row["id"],
        timestamp_utc=from_iso(row["timestamp_utc"]),
        action=RelayAction(row["action"]),
        reason=row["reason"],
        synced=bool(row["synced"]),
    )


def _row_to_alert(row):
    return Alert(
        id=row["id"],
        timestamp_utc=from_iso(row["timestamp_utc"]),
        kind=AlertKind(row["kind"]),
        message=row["message"],
        synced=bool(row["synced"]),
    )


def _row_to_summary(row):
    return UsageSummary(
        id=row["id"],
        period=row["period"],
        period_start=from_iso(row["timestamp_utc"]),
        total_kwh=row["total_kwh"],
        pump_cycles=row["pump_cycles"],
        relay_cycles=row["relay_cycles"],
        synced=bool(row["synced"]),
    )


_CONVERTERS = {
    RowKind.READINGS: _row_to_reading,
    RowKind.RELAY_ACTIONS: _row_to_action,
    RowKind.ALERTS: _row_to_alert,
    RowKind.HOURLY_SUMMARIES: _row_to_summary,
    RowKind.DAILY_SUMMARIES: _row_to_summary,
    RowKind.MONTHLY_SUMMARIES: _row_to_summary,
}


class ReadingStore:
    def __init__(self, path):
        self.path = Path(path) if str(path) != ":memory:" else path
        self._lock = threading.Lock()
        try:
            if isinstance(self.path, Path):
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.path), timeout=DB_TIMEOUT, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=FULL;")
            self._conn.execute(f"PRAGMA busy_timeout = {DB_TIMEOUT * 1000}")
            self._conn.executescript(SCHEMA)
            for kind in SUMMARY_KINDS:
                self._conn.executescript(SUMMARY_TABLE.format(table=kind.value))
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailure(f"cannot open database {self.path}: {e}") from e
        self._closed = False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, sql, params=()):
        with self._lock:
            if self._closed:
                raise PersistenceFailure("store is closed")
            try:
                with self._conn:
                    cursor = self._conn.execute(sql, params)
                return cursor
            except sqlite3.Error as e:
                raise PersistenceFailure(f"database write failed: {e}") from e

    def append(self, row):
        """Persist a reading, relay action or alert and return it with its id set."""
        if isinstance(row, PumpReading):
            return self.append_reading(row)
        if isinstance(row, RelayActionLog):
            return self.append_relay_action(row)
        if isinstance(row, Alert):
            return self.append_alert(row)
        raise TypeError(f"cannot store {type(row).__name__}")

    def append_reading(self, reading):
        cursor = self._write(
            "INSERT INTO readings (timestamp_utc, status, current_amps, raw_text, confidence,"
            " is_valid, backend, notes, synced) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                to_iso(reading.timestamp_utc),
                reading.status.value,
                reading.current_amps,
                reading.raw_text,
                reading.confidence,
                int(reading.is_valid),
                reading.backend,
                reading.notes,
                int(reading.synced),
            ),
        )
        reading.id = cursor.lastrowid
        return reading

    def append_relay_action(self, action):
        cursor = self._write(
            "INSERT INTO relay_actions (timestamp_utc, action, reason, synced) VALUES (?, ?, ?, ?)",
            (to_iso(action.timestamp_utc), action.action.value, action.reason, int(action.synced)),
        )
        action.id = cursor.lastrowid
        return action

    def append_alert(self, alert):
        cursor = self._write(
            "INSERT INTO alerts (timestamp_utc, kind, message, synced) VALUES (?, ?, ?, ?)",
            (to_iso(alert.timestamp_utc), alert.kind.value, alert.message, int(alert.synced)),
        )
        alert.id = cursor.lastrowid
        return alert

    def save_summary(self, kind, summary):
        """Insert or update the summary for a period.

        A summary whose values changed is queued for upload again. Returns
        True when the row was written.
        """
        kind = RowKind(kind)
        if kind not in SUMMARY_KINDS:
            raise ValueError(f"{kind.value} is not a summary table")
        total_kwh = round(float(summary.total_kwh), 6)
        existing = self.get_summary(kind, summary.period)
        if (existing is not None
                and existing.total_kwh == total_kwh
                and existing.pump_cycles == summary.pump_cycles
                and existing.relay_cycles == summary.relay_cycles):
            summary.id = existing.id
            summary.synced = existing.synced
            return False

        self._write(
            f"INSERT INTO {kind.value} (period, timestamp_utc, total_kwh, pump_cycles, relay_cycles, synced)"
            " VALUES (?, ?, ?, ?, ?, 0)"
            " ON CONFLICT(period) DO UPDATE SET"
            " total_kwh = excluded.total_kwh,"
            " pump_cycles = excluded.pump_cycles,"
            " relay_cycles = excluded.relay_cycles,"
            " synced = 0",
            (summary.period, to_iso(summary.period_start), total_kwh,
             int(summary.pump_cycles), int(summary.relay_cycles)),
        )
        stored = self.get_summary(kind, summary.period)
        summary.id = stored.id
        summary.total_kwh = total_kwh
        summary.synced = False
        return True

    def mark_synced(self, kind, ids):
        """Flag rows as delivered. Returns how many rows changed state."""
        kind = RowKind(kind)
        ids = [int(i) for i in ids]
        if not ids:
            return 0
        changed = 0
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            cursor = self._write(
                f"UPDATE {kind.value} SET synced = 1 WHERE synced = 0 AND id IN ({placeholders})",
                chunk,
            )
            changed += cursor.rowcount
        return changed

    def cleanup(self, older_than, kinds=RETAINED_KINDS):
        """Delete synced rows older than the cutoff. Unsynced rows always stay."""
        cutoff = to_iso(older_than)
        deleted = {}
        for kind in kinds:
            kind = RowKind(kind)
            cursor = self._write(
                f"DELETE FROM {kind.value} WHERE synced = 1 AND timestamp_utc < ?",
                (cutoff,),
            )
            deleted[kind.value] = cursor.rowcount
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read(self, sql, params=()):
        with self._lock:
            if self._closed:
                raise PersistenceFailure("store is closed")
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceFailure(f"database read failed: {e}") from e

    def get_unsynced(self, kind, limit=None):
        kind = RowKind(kind)
        sql = f"SELECT * FROM {kind.value} WHERE synced = 0 ORDER BY id"
        params = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        return [_CONVERTERS[kind](row) for row in self._read(sql, params)]

    def get_readings(self, start, end):
        rows = self._read(
            "SELECT * FROM readings WHERE timestamp_utc >= ? AND timestamp_utc < ?"
            " ORDER BY timestamp_utc, id",
            (to_iso(start), to_iso(end)),
        )
        return [_row_to_reading(row) for row in rows]

    def get_relay_actions(self, start, end):
        rows = self._read(
            "SELECT * FROM relay_actions WHERE timestamp_utc >= ? AND timestamp_utc < ?"
            " ORDER BY timestamp_utc, id",
            (to_iso(start), to_iso(end)),
        )
        return [_row_to_action(row) for row in rows]

    def get_summary(self, kind, period):
        kind = RowKind(kind)
        rows = self._read(f"SELECT * FROM {kind.value} WHERE period = ?", (period,))
        return _row_to_summary(rows[0]) if rows else None

    def get_summaries(self, kind, start, end):
        kind = RowKind(kind)
        rows = self._read(
            f"SELECT * FROM {kind.value} WHERE timestamp_utc >= ? AND timestamp_utc < ?"
            " ORDER BY timestamp_utc",
            (to_iso(start), to_iso(end)),
        )
        return [_row_to_summary(row) for row in rows]

    def unsynced_counts(self):
        counts = {}
        for kind in RowKind:
            row = self._read(f"SELECT COUNT(*) AS n FROM {kind.value} WHERE synced = 0")[0]
            counts[kind.value] = row["n"]
        return counts

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.commit()
                self._conn.close()
            except sqlite3.Error as e:
                log(f"Store: error while closing database: {e}")

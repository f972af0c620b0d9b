"""Cloud telemetry over MQTT and reconciliation of the local store.

The store is the queue: rows are written unsynced, uploaded oldest first in
batches, and flipped to synced only after the broker acknowledges the batch
(QoS 1 PUBACK). Anything not acknowledged is simply tried again on the next
interval, so delivery is at-least-once.
"""

import json
import threading

import paho.mqtt.client as mqtt

from monitor_log import log
from pump_models import RowKind, SyncFailure, to_iso, utc_now


def reading_message(reading, device_id):
    return {
        "deviceId": device_id,
        "timestampUtc": to_iso(reading.timestamp_utc),
        "currentAmps": reading.current_amps,
        "status": reading.status.value,
        "confidence": round(float(reading.confidence), 4),
    }


def relay_message(action, device_id):
    return {
        "deviceId": device_id,
        "timestampUtc": to_iso(action.timestamp_utc),
        "action": action.action.value,
        "reason": action.reason,
    }


def alert_message(alert, device_id):
    return {
        "deviceId": device_id,
        "timestampUtc": to_iso(alert.timestamp_utc),
        "kind": alert.kind.value,
        "message": alert.message,
    }


def summary_message(summary, device_id):
    return {
        "deviceId": device_id,
        "period": summary.period,
        "periodStartUtc": to_iso(summary.period_start),
        "totalKwh": summary.total_kwh,
        "pumpCycles": summary.pump_cycles,
        "relayCycles": summary.relay_cycles,
    }


MESSAGE_BUILDERS = {
    RowKind.READINGS: reading_message,
    RowKind.RELAY_ACTIONS: relay_message,
    RowKind.ALERTS: alert_message,
    RowKind.HOURLY_SUMMARIES: summary_message,
    RowKind.DAILY_SUMMARIES: summary_message,
    RowKind.MONTHLY_SUMMARIES: summary_message,
}


class CloudTelemetryClient:
    """One MQTT session: connect, publish with QoS 1, disconnect."""

    def __init__(self, cloud_settings, device_id, purpose="sync"):
        self.cloud = cloud_settings
        self.device_id = device_id
        self.client_id = f"{device_id}-{purpose}"
        self._client = None

    def topic(self, name):
        return f"{self.cloud['topic_prefix']}/{self.device_id}/{name}"

    def connect(self):
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        if self.cloud.get("username") and self.cloud.get("password"):
            client.username_pw_set(self.cloud["username"], self.cloud["password"])

        try:
            client.connect(self.cloud["broker"], int(self.cloud["port"]),
                           keepalive=int(self.cloud["keepalive"]))
        except (OSError, ValueError) as e:
            raise SyncFailure(
                f"cannot connect to {self.cloud['broker']}:{self.cloud['port']}: {e}"
            ) from e

        client.loop_start()
        self._client = client

    def publish(self, name, payload, timeout):
        """Publish one message and wait for the broker's acknowledgment."""
        if self._client is None:
            raise SyncFailure("not connected")
        info = self._client.publish(self.topic(name), json.dumps(payload), qos=1)
        try:
            info.wait_for_publish(timeout=timeout)
        except (ValueError, RuntimeError) as e:
            log(f"MQTT publish to {self.topic(name)} failed: {e}")
            return False
        return info.is_published()

    def publish_batch(self, kind, messages, timeout):
        return self.publish(RowKind(kind).value, messages, timeout)

    def close(self):
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        except Exception as disconnect_error:
            log(f"MQTT disconnect error: {disconnect_error}")
        finally:
            client.loop_stop()


class SyncReconciler:
    def __init__(self, settings_source, store, client_factory=CloudTelemetryClient, health=None):
        self._settings = settings_source
        self._store = store
        self._client_factory = client_factory
        self._health = health
        self._lock = threading.Lock()
        self.last_successful_sync = None

    def _mark_success(self):
        self.last_successful_sync = utc_now()
        if self._health is not None:
            self._health.record_sync(self.last_successful_sync)

    def reconcile(self, kinds=None, purpose="sync"):
        """Upload unsynced rows. Returns ``(uploaded, failed)`` row counts.

        With ``kinds`` only those tables are uploaded; such partial runs do
        not count as a successful sync.
        """
        with self._lock:
            return self._reconcile(tuple(RowKind) if kinds is None else tuple(kinds),
                                   purpose, full=kinds is None)

    def deliver_alerts(self):
        """Upload queued alerts right away on their own MQTT session."""
        return self.reconcile((RowKind.ALERTS,), purpose="alerts")

    def _reconcile(self, kinds, purpose, full):
        settings = self._settings.current()
        cloud = settings["cloud"]
        device_id = settings["device_id"]
        batch_size = max(1, int(cloud["batch_size"]))
        max_rows = max(1, int(cloud["max_rows_per_run"]))
        timeout = float(cloud["ack_timeout_seconds"])

        pending = {kind: self._store.get_unsynced(kind, limit=max_rows) for kind in kinds}
        total = sum(len(rows) for rows in pending.values())
        if total == 0:
            if full:
                self._mark_success()
            return 0, 0

        client = self._client_factory(cloud, device_id, purpose=purpose)
        try:
            client.connect()
        except SyncFailure as e:
            log(f"Sync skipped, reason=connection_failed: {e} ({total} rows stay queued)")
            return 0, total

        uploaded = 0
        failed = 0
        try:
            for kind, rows in pending.items():
                build = MESSAGE_BUILDERS[kind]
                for start in range(0, len(rows), batch_size):
                    if failed:
                        # Keep oldest-first order; later batches wait for the next run
                        failed += len(rows) - start
                        break
                    batch = rows[start:start + batch_size]
                    messages = [build(row, device_id) for row in batch]
                    if client.publish_batch(kind, messages, timeout):
                        self._store.mark_synced(kind, [row.id for row in batch])
                        uploaded += len(batch)
                    else:
                        log(f"Sync batch of {len(batch)} {kind.value} not acknowledged, "
                            f"reason=ack_timeout")
                        failed += len(batch)
        finally:
            client.close()

        if failed == 0 and full:
            self._mark_success()
        log(f"{purpose.capitalize()} finished: uploaded={uploaded}, failed={failed}")
        return uploaded, failed

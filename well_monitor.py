#!/usr/bin/env python3
"""
Well pump monitor agent.

Reads the pump controller's LCD with the Pi camera, extracts the text with
OCR, classifies the pump state and stores every reading locally. A safety
controller raises dry-well alerts and power-cycles the pump through a relay
when it reports rapid cycling. Stored rows are uploaded to the cloud over
MQTT in the background and removed once synced and old enough.

Three periodic tasks run side by side (monitor, sync, cleanup) and a small
dispatcher uploads alerts as they are raised; they share nothing but the
local store.
"""

import argparse
import json
import signal
import sys
import threading
import time
import traceback
from datetime import timedelta
from pathlib import Path

from camera_capture import ImageSource
from debug_images import DebugImageStore
from monitor_config import SettingsStore, configure_from_file
from monitor_log import log, set_log_file
from pump_models import (
    CycleAbandoned,
    Deadline,
    ExtractionError,
    PersistenceFailure,
    TransientHardwareError,
    from_iso,
    to_iso,
    utc_now,
)
from reading_classifier import ReadingClassifier
from reading_store import ReadingStore
from relay_control import GpioRelay, WatchdogRelay
from safety_controller import SafetyController
from telemetry_sync import CloudTelemetryClient, SyncReconciler
from text_extractor import TextExtractor
from usage_summary import UsageSummarizer

# ============================================================================
# HEALTH STATE
# ============================================================================


class HealthStatus:
    """Last successful cycle and sync, kept in a small JSON file."""

    def __init__(self, path=None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self.last_successful_cycle = None
        self.last_successful_sync = None
        self.last_error = None

    @classmethod
    def load(cls, path):
        """Load persistent health state with validation"""
        health = cls(path)
        if health.path is None or not health.path.exists():
            return health

        try:
            with open(health.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            log(f"Health file corrupted: {e}, starting fresh")
            return health
        except OSError as e:
            log(f"Error reading health file: {e}, starting fresh")
            return health

        if not isinstance(data, dict):
            log("Health file has invalid format (not a dict), starting fresh")
            return health

        try:
            health.last_successful_cycle = from_iso(data.get("last_successful_cycle"))
            health.last_successful_sync = from_iso(data.get("last_successful_sync"))
        except (TypeError, ValueError) as e:
            log(f"Health file has invalid timestamps: {e}, starting fresh")
            health.last_successful_cycle = None
            health.last_successful_sync = None
        health.last_error = data.get("last_error")
        return health

    def as_dict(self):
        with self._lock:
            return {
                "last_successful_cycle": to_iso(self.last_successful_cycle),
                "last_successful_sync": to_iso(self.last_successful_sync),
                "last_error": self.last_error,
            }

    def record_cycle(self, when):
        with self._lock:
            self.last_successful_cycle = when
        self.save()

    def record_sync(self, when):
        with self._lock:
            self.last_successful_sync = when
        self.save()

    def record_error(self, message):
        with self._lock:
            self.last_error = message
        self.save()

    def save(self):
        """Save health state"""
        if self.path is None:
            return

        state = self.as_dict()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2)
        except OSError as e:
            log(f"Error writing health file: {e}")


# ============================================================================
# MONITORING CYCLE
# ============================================================================


class MonitorLoop:
    """capture -> extract -> classify -> persist -> evaluate, once per tick."""

    def __init__(self, settings_source, camera, extractor, classifier, store, safety,
                 health=None, debug_images=None, clock=time.monotonic):
        self._settings = settings_source
        self.camera = camera
        self.extractor = extractor
        self.classifier = classifier
        self.store = store
        self.safety = safety
        self.health = health
        self.debug_images = debug_images
        self._clock = clock

    def run_cycle(self):
        """Execute one monitoring cycle.

        Returns ``(reading, decision)``, or None when no image could be taken.
        Raises CycleAbandoned when the cycle budget runs out before the
        reading is stored, and PersistenceFailure when the store rejects it.
        """
        settings = self._settings.current()
        deadline = Deadline(float(settings["monitoring"]["cycle_timeout_seconds"]), clock=self._clock)

        try:
            image = self.camera.capture(deadline.remaining())
        except TransientHardwareError as e:
            log(f"Cycle skipped, reason=capture_failed: {e}")
            return None

        extraction = None
        try:
            extraction = self.extractor.extract(image.data, deadline)
            reading = self.classifier.classify(extraction, image.captured_at)
            if extraction.fallback_used:
                reading.notes = f"{reading.notes},fallback_{extraction.backend.value}"
        except ExtractionError as e:
            log(f"OCR failed, reason=extraction_{e.kind}: {e}")
            reading = self.classifier.failed(e, image.captured_at)

        if self.debug_images is not None:
            self.debug_images.save_cycle(image, extraction)

        if deadline.expired():
            raise CycleAbandoned(
                f"cycle exceeded {settings['monitoring']['cycle_timeout_seconds']}s before the reading was stored"
            )

        self.store.append_reading(reading)
        amps = f"{reading.current_amps:.2f}A" if reading.current_amps is not None else "-"
        log(f"Reading: status={reading.status.value} current={amps} "
            f"confidence={reading.confidence:.2f} valid={reading.is_valid} notes={reading.notes}")

        decision = self.safety.evaluate(reading, now=reading.timestamp_utc)

        if self.health is not None:
            self.health.record_cycle(utc_now())
        return reading, decision


# ============================================================================
# PERIODIC TASKS
# ============================================================================


class PeriodicTask(threading.Thread):
    """Run ``action`` every ``interval()`` seconds until stopped.

    Runs never overlap. If a run overruns its slot the next one starts
    straight away; missed ticks are dropped, not queued.
    """

    def __init__(self, name, action, interval, stop_event, on_fatal, clock=time.monotonic):
        super().__init__(name=name, daemon=True)
        self._action = action
        self._interval = interval
        self._stop_event = stop_event
        self._on_fatal = on_fatal
        self._clock = clock
        self.runs = 0

    def run(self):
        next_tick = self._clock()
        while not self._stop_event.is_set():
            try:
                self._action()
            except PersistenceFailure as e:
                self._on_fatal(self.name, e)
                return
            except CycleAbandoned as e:
                log(f"{self.name}: cycle abandoned, reason=deadline_exceeded: {e}")
            except Exception as e:
                log(f"{self.name}: error: {e}")
                log(f"Traceback: {traceback.format_exc()}")
            self.runs += 1

            next_tick += max(0.0, float(self._interval()))
            now = self._clock()
            if next_tick < now:
                next_tick = now
            self._stop_event.wait(next_tick - now)


class AlertDispatcher(threading.Thread):
    """Uploads stored alerts as soon as they are raised, off the monitor thread.

    Alerts that cannot be delivered stay queued in the store and go out with
    the next regular sync.
    """

    def __init__(self, deliver, stop_event, on_fatal, poll_seconds=1.0):
        super().__init__(name="alerts", daemon=True)
        self._deliver = deliver
        self._stop_event = stop_event
        self._on_fatal = on_fatal
        self._poll_seconds = poll_seconds
        self._pending = threading.Event()
        self.deliveries = 0

    def notify(self):
        self._pending.set()

    def run(self):
        while not self._stop_event.is_set():
            if not self._pending.wait(self._poll_seconds):
                continue
            self._pending.clear()
            try:
                self._deliver()
            except PersistenceFailure as e:
                self._on_fatal(self.name, e)
                return
            except Exception as e:
                log(f"{self.name}: delivery error: {e}")
            self.deliveries += 1


# ============================================================================
# AGENT
# ============================================================================


def build_relay(settings):
    gpio = settings["gpio"]
    relay = GpioRelay(gpio["relay_pin"], gpio["active_low"], gpio["relay_debounce_ms"])
    return relay, WatchdogRelay(relay, settings["power_management"]["actuation_timeout_seconds"])


def run_cleanup(settings_store, store, debug_images):
    """Apply the retention periods to stored rows and debug images."""
    days = float(settings_store.current()["monitoring"]["data_retention_days"])
    deleted = store.cleanup(utc_now() - timedelta(days=days))
    deleted["debug_images"] = debug_images.cleanup()
    removed = ", ".join(f"{count} {name}" for name, count in deleted.items())
    log(f"Cleanup: removed {removed} (rows kept {days:g} days after upload)")
    return deleted


class WellMonitorAgent:
    def __init__(self, settings_store, store=None, camera=None, extractor=None, relay=None,
                 client_factory=CloudTelemetryClient, health=None):
        self.settings_store = settings_store
        settings = settings_store.current()

        self.store = store or ReadingStore(settings["storage"]["database"])
        self.health = health or HealthStatus.load(settings["storage"]["health_file"])
        self.camera = camera or ImageSource(settings_store)
        self.extractor = extractor or TextExtractor(settings_store)
        self.classifier = ReadingClassifier(settings_store)

        self._gpio_relay = None
        if relay is None:
            self._gpio_relay, relay = build_relay(settings)
        self.relay = relay

        self.debug_images = DebugImageStore(settings_store)
        self.summarizer = UsageSummarizer(settings_store, self.store)
        self.reconciler = SyncReconciler(settings_store, self.store, client_factory, health=self.health)
        self.safety = SafetyController(
            settings_store, self.relay, self.store, alert_sink=self.queue_alert
        )
        self.loop = MonitorLoop(
            settings_store, self.camera, self.extractor, self.classifier,
            self.store, self.safety, health=self.health, debug_images=self.debug_images,
        )

        self.stop_event = threading.Event()
        self.fatal_error = None
        self.tasks = []
        self.dispatcher = AlertDispatcher(self.reconciler.deliver_alerts, self.stop_event, self._fatal)

    # --- task bodies ---------------------------------------------------

    def queue_alert(self, alert):
        """Store the alert for upload and wake the dispatcher. Never touches the network."""
        self.store.append_alert(alert)
        self.dispatcher.notify()

    def sync_once(self):
        self.summarizer.run()
        return self.reconciler.reconcile()

    def cleanup_once(self):
        return run_cleanup(self.settings_store, self.store, self.debug_images)

    # --- lifecycle -----------------------------------------------------

    def _fatal(self, task_name, error):
        log(f"FATAL: {task_name}: {error}")
        self.health.record_error(f"{task_name}: {error}")
        self.fatal_error = error
        self.stop_event.set()

    def reload_config(self):
        path = self.settings_store.source_path
        if path is None:
            log("Config reload requested but no settings file is in use")
            return
        try:
            configure_from_file(path, self.settings_store)
        except (OSError, ValueError, TypeError) as e:
            log(f"Config reload failed, keeping current settings: {e}")
            return
        log(f"Configuration reloaded from {path}")

    def install_signal_handlers(self):
        def _stop(signum, frame):
            log(f"Shutdown requested (signal {signum})")
            self.stop_event.set()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, lambda signum, frame: self.reload_config())

    def start(self):
        settings = self.settings_store.current()
        monitoring = settings["monitoring"]

        if self._gpio_relay is not None:
            try:
                self._gpio_relay.setup()
            except RuntimeError as e:
                log(f"WARNING: {e} Power cycling will be reported as failed.")

        self.safety.restore()

        def current(key, scale=1.0):
            return lambda: float(self.settings_store.current()["monitoring"][key]) * scale

        self.tasks = [
            PeriodicTask("monitor", self.loop.run_cycle, current("interval_seconds"),
                         self.stop_event, self._fatal),
            PeriodicTask("sync", self.sync_once, current("sync_interval_seconds"),
                         self.stop_event, self._fatal),
            PeriodicTask("cleanup", self.cleanup_once, current("cleanup_interval_hours", 3600.0),
                         self.stop_event, self._fatal),
        ]
        for task in self.tasks:
            task.start()
        self.dispatcher.start()

        log(f"Tasks started: monitor every {monitoring['interval_seconds']}s, "
            f"sync every {monitoring['sync_interval_seconds']}s, "
            f"cleanup every {monitoring['cleanup_interval_hours']}h")

    def shutdown(self):
        self.stop_event.set()
        grace = float(self.settings_store.current()["monitoring"]["shutdown_grace_seconds"])
        deadline = Deadline(grace)
        for task in self.tasks + [self.dispatcher]:
            if not task.is_alive():
                continue
            task.join(timeout=deadline.remaining())
            if task.is_alive():
                log(f"{task.name} task did not finish within {grace:g}s")

        if self.fatal_error is None:
            log("Final sync before shutdown...")
            try:
                self.sync_once()
            except PersistenceFailure as e:
                log(f"Final sync could not read the store: {e}")

        log("Cleaning up...")
        if isinstance(self.relay, WatchdogRelay):
            self.relay.shutdown()
        if self._gpio_relay is not None:
            self._gpio_relay.cleanup()
        self.camera.close()
        self.store.close()
        self.health.save()
        log("Well monitor stopped")

    def run(self):
        """Run until a stop signal or a fatal error. Returns the exit code."""
        settings = self.settings_store.current()

        log("=" * 60)
        log("WELL PUMP MONITOR")
        log("=" * 60)
        if self.settings_store.source_path:
            log(f"Configuration file: {self.settings_store.source_path}")
        else:
            log("Configuration: built-in defaults")
        log(f"Device: {settings['device_id']}")
        log(f"MQTT broker: {settings['cloud']['broker']}:{settings['cloud']['port']}")
        log(f"OCR backends: {', '.join(settings['ocr']['backends'])}")
        log(f"Database: {settings['storage']['database']}")
        log("")

        try:
            self.start()
            while not self.stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()

        return 1 if self.fatal_error is not None else 0


# ============================================================================
# COMMANDS
# ============================================================================


def test_on_image(settings_store, image_path):
    """Extract and classify a still image without touching the store."""
    data = Path(image_path).read_bytes()
    extractor = TextExtractor(settings_store)
    classifier = ReadingClassifier(settings_store)

    print(f"\nTesting: {image_path}")
    print("=" * 60)
    try:
        extraction = extractor.extract(data)
    except ExtractionError as e:
        print(f"OCR failed ({e.kind}): {e}")
        return 1

    reading = classifier.classify(extraction)
    print(f"Text:          {extraction.text!r}")
    print(f"Backend:       {extraction.backend.value} (attempts={extraction.attempts})")
    print(f"Confidence:    {extraction.confidence:.2f}")
    print(f"Preprocessing: {', '.join(extraction.preprocessing_steps) or 'none'}")
    if extraction.quality_metrics:
        q = extraction.quality_metrics
        print(f"Quality:       brightness={q.brightness:.1f} contrast={q.contrast:.1f} "
              f"sharpness={q.sharpness:.1f} noise={q.noise:.1f}")
    print(f"Status:        {reading.status.value}")
    if reading.current_amps is not None:
        print(f"Current:       {reading.current_amps:.2f} A")
    print(f"Valid:         {reading.is_valid} ({reading.notes})")
    return 0


def show_status(settings_store):
    settings = settings_store.current()
    store = ReadingStore(settings["storage"]["database"])
    try:
        counts = store.unsynced_counts()
    finally:
        store.close()
    report = HealthStatus.load(settings["storage"]["health_file"]).as_dict()
    report["unsynced"] = counts
    report["device_id"] = settings["device_id"]
    print(json.dumps(report, indent=2))
    return 0


def run_store_command(settings_store, command):
    settings = settings_store.current()
    store = ReadingStore(settings["storage"]["database"])
    try:
        if command == "sync":
            health = HealthStatus.load(settings["storage"]["health_file"])
            UsageSummarizer(settings_store, store).run()
            uploaded, failed = SyncReconciler(settings_store, store, health=health).reconcile()
            print(f"Uploaded {uploaded} rows, {failed} left for the next sync")
            return 0 if failed == 0 else 1
        deleted = run_cleanup(settings_store, store, DebugImageStore(settings_store))
        print(f"Deleted: {json.dumps(deleted)}")
        return 0
    finally:
        store.close()


def build_parser():
    parser = argparse.ArgumentParser(
        description="Well pump monitor: LCD OCR, dry-well alerts and automatic power cycling."
    )
    parser.add_argument(
        "--config",
        help="Path to settings JSON file overriding defaults"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "monitor",
        help="Run the monitor, sync and cleanup tasks until stopped"
    )

    test_parser = subparsers.add_parser(
        "test-image",
        help="Extract and classify the display text of a still image"
    )
    test_parser.add_argument("image_path", type=Path, help="Path to display image")

    subparsers.add_parser("sync", help="Upload unsynced rows once")
    subparsers.add_parser("cleanup", help="Delete synced rows past the retention period")
    subparsers.add_parser("status", help="Show health and unsynced row counts")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    settings_store = SettingsStore()
    if args.config:
        try:
            configure_from_file(args.config, settings_store)
        except FileNotFoundError:
            parser.error(f"Settings file not found: {args.config}")
        except json.JSONDecodeError as exc:
            parser.error(f"Invalid settings file '{args.config}': {exc}")
        except TypeError as exc:
            parser.error(f"Invalid settings file '{args.config}': {exc}")
    else:
        try:
            configure_from_file(None, settings_store)
        except FileNotFoundError:
            pass

    set_log_file(settings_store.current()["storage"]["log_file"])

    try:
        if args.command == "monitor":
            agent = WellMonitorAgent(settings_store)
            agent.install_signal_handlers()
            return agent.run()
        if args.command == "test-image":
            return test_on_image(settings_store, args.image_path)
        if args.command in ("sync", "cleanup"):
            return run_store_command(settings_store, args.command)
        if args.command == "status":
            return show_status(settings_store)
    except PersistenceFailure as exc:
        log(f"Fatal error: {exc}")
        return 1

    parser.error(f"Unknown command: {args.command}")  # pragma: no cover


if __name__ == "__main__":
    sys.exit(main())

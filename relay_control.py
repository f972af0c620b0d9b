"""Relay actuator gateway for pump power cycling."""

import concurrent.futures
import time

from monitor_log import log

try:
    import RPi.GPIO as GPIO
except ImportError:  # pragma: no cover - expected on non-Pi dev systems
    GPIO = None


def _require_gpio():
    if GPIO is None:
        raise RuntimeError(
            "RPi.GPIO module not available; relay control requires Raspberry Pi hardware."
        )


class GpioRelay:
    """Relay on a GPIO output pin. ``True`` means closed (pump powered)."""

    def __init__(self, pin, active_low=False, debounce_ms=100, sleep=time.sleep):
        self.pin = int(pin)
        self.active_low = bool(active_low)
        self.debounce_seconds = max(0, int(debounce_ms)) / 1000.0
        self._sleep = sleep
        self._ready = False

    def _level(self, closed):
        energise = closed != self.active_low
        return GPIO.HIGH if energise else GPIO.LOW

    def setup(self):
        """Initialize the relay pin with the pump powered"""
        _require_gpio()
        assert GPIO is not None
        GPIO.setmode(GPIO.BCM)
        GPIO.setwarnings(False)
        GPIO.setup(self.pin, GPIO.OUT, initial=self._level(True))
        self._ready = True
        log(f"GPIO initialized: relay on pin {self.pin} (active_low={self.active_low})")

    def set_state(self, closed):
        """Drive the relay and confirm the pin level. Returns success."""
        try:
            if not self._ready:
                self.setup()
            assert GPIO is not None
            level = self._level(closed)
            GPIO.output(self.pin, level)
            if self.debounce_seconds:
                self._sleep(self.debounce_seconds)
            confirmed = GPIO.input(self.pin) == level
        except RuntimeError as e:
            log(f"Relay error on pin {self.pin}: {e}")
            return False

        if not confirmed:
            log(f"Relay pin {self.pin} did not reach the {'closed' if closed else 'open'} state")
        return confirmed

    def cleanup(self):
        if GPIO is None or not self._ready:
            return
        try:
            GPIO.output(self.pin, self._level(True))
        finally:
            GPIO.cleanup(self.pin)
            self._ready = False


class WatchdogRelay:
    """Bounds every relay call; a call that hangs is reported as a failure.

    Calls run on a single worker in submission order, so a command issued
    after a timed-out one still takes effect after it. The last command
    given is the state the relay ends up in.
    """

    def __init__(self, relay, timeout_seconds):
        self.relay = relay
        self.timeout_seconds = float(timeout_seconds)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="relay"
        )

    def set_state(self, closed):
        future = self._executor.submit(self.relay.set_state, closed)
        try:
            return bool(future.result(timeout=self.timeout_seconds))
        except concurrent.futures.TimeoutError:
            log(f"Relay watchdog: set_state({closed}) exceeded {self.timeout_seconds:.1f}s, "
                f"reason=actuator_timeout")
            return False
        except Exception as e:
            log(f"Relay watchdog: set_state({closed}) raised {e!r}, reason=actuator_error")
            return False

    def shutdown(self, wait=False):
        self._executor.shutdown(wait=wait)

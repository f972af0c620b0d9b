"""Still-image capture from the Raspberry Pi camera.

Two methods are supported: ``rpicam`` spawns ``rpicam-still`` (or its older
name ``libcamera-still``) and reads the JPEG from stdout, ``picamera2`` drives
the camera in-process. Both return encoded JPEG bytes.
"""

import subprocess
import time
from dataclasses import dataclass
from datetime import datetime

import cv2

from monitor_log import log
from pump_models import Deadline, TransientHardwareError, utc_now

try:
    from picamera2 import Picamera2
except ImportError:  # pragma: no cover - expected on non-Pi dev systems
    Picamera2 = None


def _require_camera():
    if Picamera2 is None:
        raise RuntimeError(
            "picamera2 library not available; set camera.method to 'rpicam' or install picamera2."
        )


@dataclass(frozen=True)
class CapturedImage:
    data: bytes
    captured_at: datetime


class RpicamCamera:
    """Capture through the rpicam-apps command line tools."""

    def __init__(self, camera_settings, run=subprocess.run):
        self.settings = camera_settings
        self._run = run

    def command(self, program):
        cam = self.settings
        cmd = [
            program,
            "-o", "-",
            "--nopreview",
            "--encoding", "jpg",
            "--width", str(int(cam["width"])),
            "--height", str(int(cam["height"])),
            "-q", str(int(cam["quality"])),
            "-t", str(int(cam["warmup_ms"])),
        ]
        if int(cam["rotation"]) in (0, 180):
            cmd += ["--rotation", str(int(cam["rotation"]))]
        return cmd

    def capture_once(self, timeout):
        errors = []
        for program in self.settings["commands"]:
            try:
                result = self._run(self.command(program), capture_output=True, timeout=timeout)
            except FileNotFoundError:
                errors.append(f"{program}: not installed")
                continue
            except subprocess.TimeoutExpired:
                raise TransientHardwareError(f"{program} timed out after {timeout:.1f}s")

            if result.returncode == 0 and result.stdout:
                return result.stdout

            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            errors.append(f"{program}: exit {result.returncode} {stderr[-200:]}".strip())

        raise TransientHardwareError("; ".join(errors) or "no capture command configured")

    def close(self):
        pass


class Picamera2Camera:
    def __init__(self, camera_settings, sleep=time.sleep):
        self.settings = camera_settings
        self._sleep = sleep
        self._camera = None

    def setup(self):
        """Initialize and configure the camera"""
        _require_camera()
        assert Picamera2 is not None
        width, height = int(self.settings["width"]), int(self.settings["height"])
        camera = Picamera2()

        config = camera.create_still_configuration(
            main={"size": (width, height)},
            buffer_count=2
        )
        camera.configure(config)

        camera.start()
        self._sleep(int(self.settings["warmup_ms"]) / 1000.0)

        log(f"Camera initialized: {width}x{height}")
        self._camera = camera

    def capture_once(self, timeout):
        if self._camera is None:
            self.setup()
        try:
            image_array = self._camera.capture_array()
        except (RuntimeError, OSError) as e:
            raise TransientHardwareError(f"picamera2 capture failed: {e}") from e

        # Convert from RGB to BGR for OpenCV
        image_bgr = cv2.cvtColor(image_array, cv2.COLOR_RGB2BGR)
        if int(self.settings["rotation"]) == 180:
            image_bgr = cv2.rotate(image_bgr, cv2.ROTATE_180)

        ok, encoded = cv2.imencode(".jpg", image_bgr,
                                   [cv2.IMWRITE_JPEG_QUALITY, int(self.settings["quality"])])
        if not ok:
            raise TransientHardwareError("captured frame could not be encoded")
        return encoded.tobytes()

    def close(self):
        camera, self._camera = self._camera, None
        if camera is not None:
            camera.stop()
            camera.close()


CAMERA_METHODS = {
    "rpicam": RpicamCamera,
    "picamera2": Picamera2Camera,
}


class ImageSource:
    """Retrying capture bounded by the caller's time budget."""

    def __init__(self, settings_source, camera=None, sleep=time.sleep, clock=time.monotonic):
        self._settings = settings_source
        self._camera = camera
        self._method = None
        self._injected = camera is not None
        self._sleep = sleep
        self._clock = clock

    def _camera_for(self, cam):
        if self._injected:
            return self._camera
        method = cam["method"]
        if method != self._method or self._camera is None:
            if method not in CAMERA_METHODS:
                raise ValueError(f"Unknown camera method: {method}")
            if self._camera is not None:
                self._camera.close()
            self._camera = CAMERA_METHODS[method](cam)
            self._method = method
        return self._camera

    def capture(self, timeout):
        cam = self._settings.current()["camera"]
        deadline = Deadline(timeout, clock=self._clock)
        attempts = max(1, int(cam["max_retry_attempts"]))
        backoff = float(cam["retry_backoff_seconds"])
        camera = self._camera_for(cam)

        last_error = None
        for attempt in range(1, attempts + 1):
            if deadline.expired():
                break
            try:
                data = camera.capture_once(deadline.cap(float(cam["timeout_seconds"])))
                return CapturedImage(data=data, captured_at=utc_now())
            except TransientHardwareError as e:
                last_error = e
                log(f"Capture attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    self._sleep(deadline.cap(backoff * attempt))

        if last_error is None:
            raise TransientHardwareError("capture skipped, cycle time budget exhausted")
        raise TransientHardwareError(f"capture failed after {attempts} attempts: {last_error}")

    def close(self):
        if self._camera is not None:
            self._camera.close()

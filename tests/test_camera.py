"""Tests for still capture through rpicam-apps."""

import subprocess

import pytest

pytest.importorskip("cv2")


def _camera_settings(**overrides):
    from monitor_config import build_settings

    return build_settings({"camera": overrides})["camera"]


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_rpicam_command_line():
    from camera_capture import RpicamCamera

    camera = RpicamCamera(_camera_settings(width=1280, height=720, rotation=180))

    cmd = camera.command("rpicam-still")

    assert cmd[:3] == ["rpicam-still", "-o", "-"]
    assert cmd[cmd.index("--width") + 1] == "1280"
    assert cmd[cmd.index("--height") + 1] == "720"
    assert cmd[cmd.index("--rotation") + 1] == "180"


def test_rpicam_falls_back_to_older_command_name():
    from camera_capture import RpicamCamera

    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd[0])
        if cmd[0] == "rpicam-still":
            raise FileNotFoundError(cmd[0])
        return _completed(stdout=b"\xff\xd8jpeg")

    data = RpicamCamera(_camera_settings(), run=run).capture_once(10)

    assert data == b"\xff\xd8jpeg"
    assert calls == ["rpicam-still", "libcamera-still"]


def test_rpicam_reports_all_failures():
    from camera_capture import RpicamCamera
    from pump_models import TransientHardwareError

    def run(cmd, **kwargs):
        return _completed(returncode=255, stderr=b"no cameras available")

    with pytest.raises(TransientHardwareError, match="no cameras available"):
        RpicamCamera(_camera_settings(), run=run).capture_once(10)


def test_rpicam_timeout_is_transient():
    from camera_capture import RpicamCamera
    from pump_models import TransientHardwareError

    def run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    with pytest.raises(TransientHardwareError, match="timed out"):
        RpicamCamera(_camera_settings(), run=run).capture_once(3)


class FlakyCamera:
    def __init__(self, failures):
        self.failures = failures
        self.timeouts = []

    def capture_once(self, timeout):
        from pump_models import TransientHardwareError

        self.timeouts.append(timeout)
        if self.failures:
            self.failures -= 1
            raise TransientHardwareError("sensor busy")
        return b"jpeg"

    def close(self):
        pass


def test_image_source_retries_then_succeeds():
    from camera_capture import ImageSource
    from monitor_config import SettingsStore

    sleeps = []
    camera = FlakyCamera(failures=2)
    source = ImageSource(SettingsStore(), camera=camera, sleep=sleeps.append, clock=lambda: 0.0)

    image = source.capture(60)

    assert image.data == b"jpeg"
    assert image.captured_at.tzinfo is not None
    assert sleeps == [1.0, 2.0]
    assert camera.timeouts == [15, 15, 15]


def test_image_source_gives_up_after_max_attempts():
    from camera_capture import ImageSource
    from monitor_config import SettingsStore
    from pump_models import TransientHardwareError

    source = ImageSource(SettingsStore(), camera=FlakyCamera(failures=10),
                         sleep=lambda seconds: None, clock=lambda: 0.0)

    with pytest.raises(TransientHardwareError, match="after 3 attempts"):
        source.capture(60)


def test_image_source_caps_attempt_by_cycle_budget():
    from camera_capture import ImageSource
    from monitor_config import SettingsStore

    camera = FlakyCamera(failures=0)
    source = ImageSource(SettingsStore(), camera=camera, clock=lambda: 0.0)

    source.capture(4)

    assert camera.timeouts == [4]


def test_unknown_camera_method():
    from camera_capture import ImageSource
    from monitor_config import SettingsStore

    source = ImageSource(SettingsStore({"camera": {"method": "webcam"}}))

    with pytest.raises(ValueError, match="Unknown camera method"):
        source.capture(10)

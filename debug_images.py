"""Optional on-disk copies of captured and preprocessed display images."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from monitor_log import log
from pump_models import utc_now

FILE_PREFIX = "display_"


def _parse_image_timestamp(image_file: Path):
    """Attempt to parse the timestamp embedded in a display_YYYYMMDD_HHMMSS*.ext name."""
    parts = image_file.stem.split('_')
    if len(parts) < 3:
        return None

    date_part = parts[1]
    time_part = parts[2]
    time_digits = ''.join(ch for ch in time_part if ch.isdigit())
    if len(date_part) != 8 or len(time_digits) < 6:
        return None

    try:
        parsed = datetime.strptime(f"{date_part}_{time_digits[:6]}", "%Y%m%d_%H%M%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


class DebugImageStore:
    def __init__(self, settings_source):
        self._settings = settings_source

    def _options(self):
        return self._settings.current()["debug"]

    @property
    def enabled(self):
        return bool(self._options()["image_save_enabled"])

    def save(self, data, timestamp, suffix="", extension="jpg"):
        """Save image bytes to disk with timestamp. Returns the path, or None when disabled."""
        options = self._options()
        if not options["image_save_enabled"] or not data:
            return None

        directory = Path(options["image_directory"])
        stamp = timestamp.astimezone(timezone.utc).strftime('%Y%m%d_%H%M%S')
        filename = directory / f"{FILE_PREFIX}{stamp}{suffix}.{extension}"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            filename.write_bytes(data)
        except OSError as e:
            log(f"Debug image not saved: {e}")
            return None
        log(f"Debug image saved: {filename.name}")
        return filename

    def save_cycle(self, image, extraction=None):
        """Save the captured image and, if wanted, the preprocessed one."""
        saved = [self.save(image.data, image.captured_at)]
        if (extraction is not None and extraction.processed_image
                and self._options()["save_preprocessed"]):
            saved.append(self.save(extraction.processed_image, image.captured_at,
                                   suffix="_processed", extension="png"))
        return [path for path in saved if path is not None]

    def cleanup(self, now=None):
        """Remove images older than the retention period"""
        options = self._options()
        directory = Path(options["image_directory"])
        if not directory.exists():
            return 0

        cutoff_time = (now or utc_now()) - timedelta(days=float(options["image_retention_days"]))

        deleted_count = 0
        for image_file in directory.glob(f"{FILE_PREFIX}*"):
            try:
                file_time = _parse_image_timestamp(image_file)
                if file_time is None:
                    file_time = datetime.fromtimestamp(image_file.stat().st_mtime, timezone.utc)

                if file_time < cutoff_time:
                    image_file.unlink()
                    deleted_count += 1
            except OSError as e:
                log(f"Error checking file {image_file.name}: {e}")

        if deleted_count > 0:
            log(f"Cleaned up {deleted_count} old debug images")
        return deleted_count

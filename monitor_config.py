"""Configuration defaults, merging and immutable settings snapshots.

Settings come from a JSON file shaped like ``DEFAULT_SETTINGS`` and/or from
flat device-twin style keys (``dryCountThreshold`` etc.). Every missing key
falls back to its built-in default; unknown keys are logged and ignored.
Consumers always read a whole snapshot from ``SettingsStore.current()``;
updates build a new snapshot and swap it in one step.
"""

import json
import threading
from pathlib import Path
from types import MappingProxyType

from monitor_log import log

# ============================================================================
# DEFAULTS
# ============================================================================
DEFAULT_CONFIG_PATH = Path(__file__).with_name("settings.json")

DEFAULT_SETTINGS = {
    "device_id": "wellmonitor-01",
    "monitoring": {
        "interval_seconds": 30.0,
        "cycle_timeout_seconds": 60.0,
        "sync_interval_seconds": 300.0,
        "cleanup_interval_hours": 24.0,
        "data_retention_days": 30.0,
        "safety_replay_hours": 24.0,
        "shutdown_grace_seconds": 10.0
    },
    "camera": {
        "method": "rpicam",
        "commands": ["rpicam-still", "libcamera-still"],
        "width": 1920,
        "height": 1080,
        "quality": 95,
        "warmup_ms": 2000,
        "rotation": 0,
        "timeout_seconds": 15.0,
        "max_retry_attempts": 3,
        "retry_backoff_seconds": 1.0
    },
    "roi": {
        "enabled": True,
        "x": 0.25,
        "y": 0.40,
        "width": 0.50,
        "height": 0.20
    },
    "ocr": {
        "backends": ["tesseract", "azure"],
        "minimum_confidence": 0.7,
        "timeout_seconds": 30.0,
        "max_retry_attempts": 3,
        "retry_backoff_seconds": 1.0,
        "tesseract": {
            "language": "eng",
            "page_segmentation_mode": 7,
            "engine_mode": 3,
            "char_whitelist": "0123456789.DryAMPSrcyc ",
            "tesseract_cmd": None
        },
        "azure": {
            "endpoint": None,
            "api_key": None,
            "api_version": "2023-10-01",
            "language": "en"
        },
        "preprocessing": {
            "enabled": True,
            "crop": True,
            "grayscale": True,
            "scale": True,
            "scale_factor": 2.0,
            "brightness": True,
            "brightness_adjustment": 10,
            "contrast": True,
            "contrast_factor": 1.5,
            "noise_reduction": True,
            "threshold": True,
            "binary_threshold": 128
        }
    },
    "classification": {
        "off_threshold": 0.1,
        "idle_threshold": 0.5,
        "normal_min": 3.0,
        "normal_max": 8.0,
        "high_current_threshold": 20.0,
        "max_valid_current": 25.0,
        "dry_keywords": ["Dry", "No Water", "Empty", "Well Dry"],
        "rapid_cycle_keywords": ["rcyc", "Rapid Cycle", "Cycling", "Fault", "Error"],
        "case_sensitive": False
    },
    "alerts": {
        "dry_count_threshold": 3,
        "rcyc_count_threshold": 2,
        "cooldown_minutes": 15.0
    },
    "power_management": {
        "enable_auto_actions": True,
        "power_cycle_delay_seconds": 5.0,
        "minimum_cycle_interval_minutes": 30.0,
        "max_daily_cycles": 10,
        "enable_dry_condition_cycling": False,
        "actuation_timeout_seconds": 10.0,
        "restore_attempts": 3
    },
    "gpio": {
        "relay_pin": 17,
        "active_low": False,
        "relay_debounce_ms": 100
    },
    "cloud": {
        "broker": "localhost",
        "port": 1883,
        "username": None,
        "password": None,
        "topic_prefix": "wellmonitor",
        "keepalive": 60,
        "batch_size": 50,
        "max_rows_per_run": 1000,
        "ack_timeout_seconds": 10.0
    },
    "storage": {
        "database": "wellmonitor.db",
        "log_file": "wellmonitor.log",
        "health_file": "health.json"
    },
    "summaries": {
        "supply_voltage": 240.0,
        "max_sample_gap_seconds": 120.0,
        "lookback_hours": 48
    },
    "debug": {
        "image_save_enabled": False,
        "save_preprocessed": True,
        "image_directory": "debug_images",
        "image_retention_days": 7.0
    }
}

# Device-twin style flat keys and where they land in the nested layout
FLAT_KEYS = {
    "deviceId": ("device_id",),
    "monitoringIntervalSeconds": ("monitoring", "interval_seconds"),
    "cycleTimeoutSeconds": ("monitoring", "cycle_timeout_seconds"),
    "syncIntervalSeconds": ("monitoring", "sync_interval_seconds"),
    "dataRetentionDays": ("monitoring", "data_retention_days"),
    "ocrProviders": ("ocr", "backends"),
    "ocrMinimumConfidence": ("ocr", "minimum_confidence"),
    "ocrTimeoutSeconds": ("ocr", "timeout_seconds"),
    "ocrMaxRetryAttempts": ("ocr", "max_retry_attempts"),
    "offCurrentThreshold": ("classification", "off_threshold"),
    "idleCurrentThreshold": ("classification", "idle_threshold"),
    "normalCurrentMin": ("classification", "normal_min"),
    "normalCurrentMax": ("classification", "normal_max"),
    "highCurrentThreshold": ("classification", "high_current_threshold"),
    "maxValidCurrent": ("classification", "max_valid_current"),
    "dryKeywords": ("classification", "dry_keywords"),
    "rapidCycleKeywords": ("classification", "rapid_cycle_keywords"),
    "statusMessageCaseSensitive": ("classification", "case_sensitive"),
    "dryCountThreshold": ("alerts", "dry_count_threshold"),
    "rcycCountThreshold": ("alerts", "rcyc_count_threshold"),
    "cooldownMinutes": ("alerts", "cooldown_minutes"),
    "enableAutoActions": ("power_management", "enable_auto_actions"),
    "powerCycleDelaySeconds": ("power_management", "power_cycle_delay_seconds"),
    "minimumCycleIntervalMinutes": ("power_management", "minimum_cycle_interval_minutes"),
    "maxDailyCycles": ("power_management", "max_daily_cycles"),
    "enableDryConditionCycling": ("power_management", "enable_dry_condition_cycling"),
    "relayDebounceMs": ("gpio", "relay_debounce_ms"),
    "roiX": ("roi", "x"),
    "roiY": ("roi", "y"),
    "roiWidth": ("roi", "width"),
    "roiHeight": ("roi", "height"),
    "supplyVoltage": ("summaries", "supply_voltage"),
    "debugImageSaveEnabled": ("debug", "image_save_enabled"),
    "debugImagePath": ("debug", "image_directory"),
    "debugImageRetentionDays": ("debug", "image_retention_days"),
}

PATH_KEYS = (
    ("storage", "database"),
    ("storage", "log_file"),
    ("storage", "health_file"),
    ("debug", "image_directory"),
)


def _resolve_path(value, base_dir=None):
    """Resolve a path, making it absolute relative to base_dir or cwd.

    Args:
        value: Path as string or Path object
        base_dir: Base directory for relative paths (defaults to cwd)

    Returns:
        Resolved absolute Path object
    """
    if base_dir is None:
        base_dir = Path.cwd()

    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (Path(base_dir) / path).resolve()
    else:
        path = path.resolve()
    return path


def merge_settings(defaults, overrides):
    """Merge default and override settings dictionaries recursively.

    Args:
        defaults: Dictionary of default settings
        overrides: Dictionary of override settings

    Returns:
        Merged settings dictionary
    """
    if not isinstance(defaults, dict):
        raise TypeError(f"defaults must be a dict, got {type(defaults).__name__}")
    if not isinstance(overrides, dict):
        raise TypeError(f"overrides must be a dict, got {type(overrides).__name__}")

    result = {}
    keys = set(defaults.keys()) | set(overrides.keys())
    for key in keys:
        default_value = defaults.get(key)
        override_value = overrides.get(key)

        if isinstance(default_value, dict):
            override_dict = override_value if isinstance(override_value, dict) else {}
            result[key] = merge_settings(default_value, override_dict)
        elif override_value is not None:
            result[key] = override_value
        else:
            result[key] = default_value

    return result


def expand_flat_keys(overrides):
    """Move device-twin style flat keys into their nested sections."""
    if not isinstance(overrides, dict):
        raise TypeError(f"overrides must be a dict, got {type(overrides).__name__}")

    nested = {}
    for key, value in overrides.items():
        target = FLAT_KEYS.get(key)
        if target is None:
            nested[key] = value
            continue
        section = nested
        for part in target[:-1]:
            existing = section.get(part)
            if not isinstance(existing, dict):
                existing = {}
                section[part] = existing
            section = existing
        section[target[-1]] = value
    return nested


def _coerce(value, default, name):
    """Convert value to the type of its default, or fall back to the default."""
    if default is None or value is None:
        return value

    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
                return True
            if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off"):
                return False
            if isinstance(value, (int, float)) and value in (0, 1):
                return bool(value)
            raise ValueError(f"not a boolean: {value!r}")
        if isinstance(default, int):
            if isinstance(value, bool):
                raise ValueError(f"not a number: {value!r}")
            number = float(value)
            if not number.is_integer():
                raise ValueError(f"not a whole number: {value!r}")
            return int(number)
        if isinstance(default, float):
            if isinstance(value, bool):
                raise ValueError(f"not a number: {value!r}")
            return float(value)
        if isinstance(default, (list, tuple)):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            if isinstance(value, (list, tuple)):
                return list(value)
            raise ValueError(f"not a list: {value!r}")
        if isinstance(default, str):
            return str(value)
    except (TypeError, ValueError) as e:
        log(f"Config: invalid value for {name} ({e}), using default {default!r}")
        return default

    return value


def _validate(defaults, merged, prefix=""):
    """Keep only known keys, coerced to the type of their defaults."""
    result = {}
    for key, value in merged.items():
        name = f"{prefix}{key}"
        if key not in defaults:
            log(f"Config: ignoring unrecognized key '{name}'")
            continue
        default_value = defaults[key]
        if isinstance(default_value, dict):
            result[key] = _validate(default_value, value, f"{name}.")
        else:
            result[key] = _coerce(value, default_value, name)
    return result


def _freeze(value):
    if isinstance(value, dict):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def thaw(value):
    """Return a plain, mutable copy of a settings snapshot."""
    if isinstance(value, MappingProxyType) or isinstance(value, dict):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


def build_settings(overrides=None, base_dir=None):
    """Return an immutable snapshot of defaults merged with overrides."""
    expanded = expand_flat_keys(overrides or {})
    merged = merge_settings(DEFAULT_SETTINGS, expanded)
    settings = _validate(DEFAULT_SETTINGS, merged)

    for section, key in PATH_KEYS:
        if settings[section].get(key):
            settings[section][key] = str(_resolve_path(settings[section][key], base_dir))

    return _freeze(settings)


class SettingsStore:
    """Holds the current settings snapshot and swaps it atomically."""

    def __init__(self, overrides=None, base_dir=None):
        self._lock = threading.Lock()
        self._overrides = {}
        self._base_dir = base_dir
        self._settings = build_settings(overrides, base_dir)
        self.source_path = None
        if overrides:
            self._overrides = expand_flat_keys(overrides)

    def current(self):
        with self._lock:
            return self._settings

    def update(self, overrides, base_dir=None):
        """Layer overrides on top of the previous ones and swap the snapshot."""
        expanded = expand_flat_keys(overrides)
        with self._lock:
            combined = merge_settings(self._overrides, expanded) if self._overrides else expanded
            directory = base_dir if base_dir is not None else self._base_dir
            settings = build_settings(combined, directory)
            self._overrides = combined
            self._base_dir = directory
            self._settings = settings
        return settings

    def replace(self, overrides, base_dir=None):
        """Discard previous overrides and rebuild from defaults plus overrides."""
        expanded = expand_flat_keys(overrides)
        settings = build_settings(expanded, base_dir)
        with self._lock:
            self._overrides = expanded
            self._base_dir = base_dir
            self._settings = settings
        return settings


def configure_from_file(config_path=None, store=None):
    """Load a JSON settings file and return the resulting snapshot."""

    if config_path is None:
        path = _resolve_path(DEFAULT_CONFIG_PATH)
    else:
        path = _resolve_path(config_path)

    with open(path, "r", encoding="utf-8") as handle:
        overrides = json.load(handle)

    if not isinstance(overrides, dict):
        raise TypeError(f"settings file must be a JSON object (dict), got {type(overrides).__name__}")

    if store is None:
        store = SettingsStore()
    settings = store.replace(overrides, path.parent)
    store.source_path = path
    return settings

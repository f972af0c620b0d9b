"""Timestamped log output shared by the monitor, sync and cleanup tasks."""

import threading
from datetime import datetime
from pathlib import Path

LOG_FILE = None
_LOCK = threading.Lock()


def set_log_file(path):
    """Direct log output to ``path`` in addition to stdout (None disables)."""
    global LOG_FILE

    LOG_FILE = Path(path) if path else None
    if LOG_FILE is not None:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)


def log(message):
    """Log message with timestamp"""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    log_message = f"[{timestamp}] {message}"

    with _LOCK:
        print(log_message, flush=True)

        if LOG_FILE is None:
            return

        try:
            with open(LOG_FILE, 'a', encoding='utf-8') as f:
                f.write(log_message + '\n')
        except OSError as e:
            print(f"[{timestamp}] Could not write log file {LOG_FILE}: {e}", flush=True)

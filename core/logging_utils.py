import json
import datetime
import os
import sys

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


def _min_level() -> int:
    name = os.getenv("LOOP_LOG_LEVEL", "INFO").upper()
    return _LEVELS.get(name, _LEVELS["INFO"])


def log_json(level: str, event: str, run: str = None, details: dict = None):
    """
    Emits a single-line JSON log to stderr by default.

    Args:
        level (str): Log level ("DEBUG", "INFO", "WARN", "ERROR").
        event (str): Short snake_case name of the event.
        run (str, optional): Run id the event belongs to. Defaults to None.
        details (dict, optional): Additional structured information. Defaults to None.
    """
    level = level.upper()
    if _LEVELS.get(level, _LEVELS["INFO"]) < _min_level():
        return

    log_entry = {
        "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if run:
        log_entry["run"] = run
    if details:
        log_entry["details"] = details

    stream_name = os.getenv("LOOP_LOG_STREAM", "stderr").lower()
    stream = sys.stdout if stream_name == "stdout" else sys.stderr
    stream.write(json.dumps(log_entry, default=str) + "\n")
    stream.flush() # Ensure the log is written immediately

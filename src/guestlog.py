"""Process-wide logging context shared by the guest tools."""

import json
import logging
import sys
from pathlib import Path


# ── Structured JSON logging ──────────────────────────────
class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def open_log(path: Path):
    """Open ``path`` for binary append, creating it (and its parent) if missing."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "ab")


def configure_logging(log_path: Path | None = None) -> logging.Handler:
    """Install the JSON handler on the root logger.

    With ``log_path`` records are appended to that file, otherwise they go
    to stdout (which the orchestrator appends to its own trace log).
    Calling this again replaces the previous handler rather than stacking.
    """
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_path, mode="a")
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(logging.INFO)
    return handler

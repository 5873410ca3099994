#!/usr/bin/env python3
"""Fetch the ``user-script`` metadata value and run it.

The script body is staged at /var/tmp/mdata-user-script on every boot so a
script removed from metadata stops running.  Output from the script is
appended to /var/log/mdata-user-script.log.

Exit codes:
    0  — no script, or the script succeeded
    95 — the script ran and exited nonzero (details in the log)
    1  — metadata retrieval failed
"""

import logging
import os
import subprocess
import sys
from enum import IntEnum
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from guestlog import configure_logging, open_log  # noqa: E402
from mdata import MetadataError, MetadataStatus, mdata_get  # noqa: E402

log = logging.getLogger("triton.user-script")

USER_SCRIPT_KEY = "user-script"
USER_SCRIPT_PATH = Path("/var/tmp/mdata-user-script")
USER_SCRIPT_LOG = Path("/var/log/mdata-user-script.log")


class ScriptStatus(IntEnum):
    OK = 0
    # Downstream tooling matches on the literal value; do not renumber.
    SCRIPT_FAILED = 95


def stage_script(key: str, script_path: Path) -> bool:
    """Replace the staged copy of ``key`` with the current metadata value.

    Returns True if a script is now staged.  A key that is no longer defined
    removes any previously staged copy; any other lookup failure raises
    MetadataError.
    """
    result = mdata_get(key)

    if result.found:
        tmp = script_path.with_name(script_path.name + ".new")
        tmp.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(result.value)
        os.replace(tmp, script_path)
        script_path.chmod(0o755)
        log.info(f"Staged {key} at {script_path} ({len(result.value)} bytes)")
        return True

    if result.status is MetadataStatus.NOT_FOUND:
        if script_path.exists():
            script_path.unlink()
            log.info(f"{key} no longer defined, removed {script_path}")
        return False

    raise MetadataError(result)


def execute_script(script_path: Path, log_path: Path) -> ScriptStatus:
    """Run the staged script with stdout and stderr appended to ``log_path``.

    A missing or non-executable script is skipped without touching the log.
    """
    if not (script_path.is_file() and os.access(script_path, os.X_OK)):
        return ScriptStatus.OK

    with open_log(log_path) as out:
        try:
            proc = subprocess.run(
                [str(script_path)], stdout=out, stderr=subprocess.STDOUT,
            )
        except OSError as e:
            # e.g. bad interpreter line, the script never started.
            out.write(f"{script_path}: {e}\n".encode())
            log.error(f"Could not execute {script_path}: {e}")
            return ScriptStatus.SCRIPT_FAILED

    if proc.returncode != 0:
        log.warning(f"{script_path} exited {proc.returncode}, see {log_path}")
        return ScriptStatus.SCRIPT_FAILED
    log.info(f"{script_path} completed")
    return ScriptStatus.OK


def run_metadata_script(key: str, script_path: Path, log_path: Path) -> ScriptStatus:
    """Stage the script held under ``key`` and run it."""
    stage_script(key, script_path)
    return execute_script(script_path, log_path)


def main():
    configure_logging()
    try:
        status = run_metadata_script(USER_SCRIPT_KEY, USER_SCRIPT_PATH, USER_SCRIPT_LOG)
    except MetadataError as e:
        log.error(str(e))
        sys.exit(1)
    sys.exit(int(status))


if __name__ == "__main__":
    main()

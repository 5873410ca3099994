#!/usr/bin/env python3
"""Metadata-driven boot steps run by the first-boot orchestrator.

Usage:
    guest_steps.py hostname
    guest_steps.py authorized-keys
    guest_steps.py operator-script
    guest_steps.py user-data

Each step exits 0 on success and 1 when the metadata provider could not be
read or the step itself failed (undecodable value, missing or failing
system command).  The orchestrator records the status and moves on regardless.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from guestlog import configure_logging  # noqa: E402
from mdata import MetadataError, MetadataStatus, mdata_get  # noqa: E402
from user_script import run_metadata_script  # noqa: E402

log = logging.getLogger("triton.steps")

AUTHORIZED_KEYS = Path("/root/.ssh/authorized_keys")
OPERATOR_SCRIPT_PATH = Path("/var/tmp/mdata-operator-script")
OPERATOR_SCRIPT_LOG = Path("/var/log/mdata-operator-script.log")
USER_DATA_PATH = Path("/var/db/mdata-user-data")


def _lookup(key: str):
    """Return the metadata value for ``key``, or None if it is not defined."""
    result = mdata_get(key)
    if result.status is MetadataStatus.ERROR:
        raise MetadataError(result)
    if result.status is MetadataStatus.NOT_FOUND:
        log.info(f"{key} not defined")
        return None
    return result.value


def _replace_file(path: Path, data: bytes, mode: int):
    tmp = path.with_name(path.name + ".new")
    tmp.write_bytes(data)
    tmp.chmod(mode)
    os.replace(tmp, path)


def set_hostname():
    value = _lookup("sdc:hostname")
    if value is None:
        return
    name = value.decode().strip()
    if not name:
        log.warning("sdc:hostname is empty, leaving hostname unchanged")
        return
    subprocess.run(["hostname", name], check=True)
    subprocess.run(["sysrc", f"hostname={name}"], check=True, capture_output=True)
    log.info(f"Hostname set to {name}")


def install_authorized_keys(path: Path = AUTHORIZED_KEYS):
    """Write root's authorized_keys from metadata.

    An undefined key leaves an existing file alone; keys may have been
    added by hand after provisioning.
    """
    value = _lookup("root_authorized_keys")
    if value is None:
        return
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    if not value.endswith(b"\n"):
        value += b"\n"
    _replace_file(path, value, 0o600)
    log.info(f"Installed {len(value.splitlines())} key(s) into {path}")


def run_operator_script(
    script_path: Path = OPERATOR_SCRIPT_PATH, log_path: Path = OPERATOR_SCRIPT_LOG,
):
    status = run_metadata_script("sdc:operator-script", script_path, log_path)
    log.info(f"Operator script finished with status {status.name}")


def fetch_user_data(path: Path = USER_DATA_PATH):
    value = _lookup("user-data")
    if value is None:
        if path.exists():
            path.unlink()
            log.info(f"Removed stale {path}")
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    _replace_file(path, value, 0o600)
    log.info(f"Wrote user-data to {path} ({len(value)} bytes)")


STEPS = {
    "hostname": set_hostname,
    "authorized-keys": install_authorized_keys,
    "operator-script": run_operator_script,
    "user-data": fetch_user_data,
}


def main(argv: list[str] | None = None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or args[0] not in STEPS:
        print(f"usage: guest_steps.py {{{'|'.join(STEPS)}}}", file=sys.stderr)
        sys.exit(2)

    configure_logging()
    try:
        STEPS[args[0]]()
    except (MetadataError, subprocess.CalledProcessError, UnicodeDecodeError, OSError) as e:
        log.error(f"{args[0]} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

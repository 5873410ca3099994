"""Metadata provider client — thin wrapper around the mdata-get tool."""

import os
import subprocess
from dataclasses import dataclass
from enum import Enum

MDATA_GET = os.environ.get("MDATA_GET", "/usr/sbin/mdata-get")

# mdata-get exit statuses: 0 = value printed, 1 = key not defined.
# Anything else is a retrieval failure.
_EXIT_FOUND = 0
_EXIT_NOT_FOUND = 1


class MetadataStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not-found"
    ERROR = "error"


@dataclass(frozen=True)
class MetadataResult:
    key: str
    status: MetadataStatus
    value: bytes = b""
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.status is MetadataStatus.FOUND


class MetadataError(Exception):
    """Raised when a metadata lookup fails for a reason other than a missing key."""

    def __init__(self, result: MetadataResult):
        self.result = result
        super().__init__(
            f"mdata-get {result.key} failed"
            + (f": {result.detail}" if result.detail else "")
        )


def mdata_get(key: str) -> MetadataResult:
    """Look up ``key`` in the metadata provider.

    The value is returned as raw bytes exactly as the provider printed it.
    Blocks until the provider answers; no timeout is applied.
    """
    try:
        # Raw bytes: script bodies are written back to disk untouched.
        result = subprocess.run([MDATA_GET, key], capture_output=True)
    except OSError as e:
        return MetadataResult(key, MetadataStatus.ERROR, detail=str(e))

    if result.returncode == _EXIT_FOUND:
        return MetadataResult(key, MetadataStatus.FOUND, value=result.stdout)
    if result.returncode == _EXIT_NOT_FOUND:
        return MetadataResult(key, MetadataStatus.NOT_FOUND)
    stderr = result.stderr.decode("utf-8", errors="replace").strip()
    return MetadataResult(
        key, MetadataStatus.ERROR,
        detail=f"rc={result.returncode} {stderr}".strip(),
    )

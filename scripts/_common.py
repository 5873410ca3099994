"""Shared utilities for the image build scripts."""

import hashlib
import re
import shutil
import signal
import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path

import requests

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DOWNLOAD_TIMEOUT = 30  # seconds between bytes, not for the whole transfer
DOWNLOAD_CHUNK = 1 << 20

# Layout customisations applied to every image.
LOADER_CONF = [
    'console="comconsole,vidconsole"',
    'autoboot_delay="2"',
]
DHCP_INTERFACES = ["vtnet0", "vtnet1"]
NAMESERVERS = ["8.8.8.8", "8.8.4.4"]

BOOT_IMAGE = "boot/cdboot"

CLEANUP_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM)

# "SHA256 (FreeBSD-13.2-RELEASE-amd64-disc1.iso) = 1f2e..."; mirrors are not
# consistent about the space before "=".  An untagged line is SHA-256.
CHECKSUM_RE = re.compile(
    r"^\s*(?:(?P<algo>\w+)\s*)?\((?P<name>[^)]+)\)\s*=\s*(?P<digest>[0-9a-fA-F]+)\s*$"
)
DEFAULT_CHECKSUM_ALGO = "sha256"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------
class ImageBuildError(Exception):
    """Raised when an image build step fails."""


class ChecksumMismatch(ImageBuildError):
    """Raised when a downloaded image does not match the mirror's checksum."""


class UsageError(ImageBuildError):
    """Raised when required build parameters are missing or invalid."""


# ---------------------------------------------------------------------------
# Command helpers
# ---------------------------------------------------------------------------
def run(argv: list[str], *, label: str = "") -> str:
    """Run a local command. Returns stdout.

    Use ``label`` to replace the raw command line in error messages.
    """
    result = subprocess.run(argv, capture_output=True, text=True)
    if result.returncode != 0:
        display = label or " ".join(argv)
        raise ImageBuildError(
            f"Command failed (rc={result.returncode}): {display}\n"
            f"stderr: {result.stderr.strip()}"
        )
    return result.stdout.strip()


# ---------------------------------------------------------------------------
# Download + checksum helpers
# ---------------------------------------------------------------------------
def download(url: str, dest: Path, timeout: int = DOWNLOAD_TIMEOUT):
    """Stream ``url`` to ``dest``, overwriting any existing file."""
    resp = requests.get(url, stream=True, timeout=timeout)
    try:
        if resp.status_code != 200:
            raise ImageBuildError(f"Download failed ({resp.status_code}): {url}")
        with open(dest, "wb") as f:
            for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK):
                if chunk:
                    f.write(chunk)
    finally:
        resp.close()


def file_digest(path: Path, algo: str = DEFAULT_CHECKSUM_ALGO) -> str:
    try:
        h = hashlib.new(algo)
    except ValueError as e:
        raise ImageBuildError(f"Unsupported checksum algorithm {algo!r}") from e
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(DOWNLOAD_CHUNK), b""):
            h.update(block)
    return h.hexdigest()


def parse_checksum(text: str, filename: str) -> tuple[str, str]:
    """Return (algorithm, digest) listed for ``filename`` in a BSD-style checksum file.

    The algorithm is lowercased for hashlib ("SHA512" -> "sha512").
    """
    for line in text.splitlines():
        m = CHECKSUM_RE.match(line)
        if m and m.group("name") == filename:
            algo = (m.group("algo") or DEFAULT_CHECKSUM_ALGO).lower()
            if algo not in hashlib.algorithms_available:
                raise ImageBuildError(
                    f"Unsupported checksum algorithm {m.group('algo')!r} for {filename}"
                )
            return algo, m.group("digest").lower()
    raise ImageBuildError(f"No checksum listed for {filename}")


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------
def remove_paths(*paths: Path):
    """Best-effort removal of files and directory trees."""
    for path in paths:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
            else:
                continue
            print(f"  Removed {path}", file=sys.stderr)
        except OSError as e:
            print(f"  Warning: failed to remove {path}: {e}", file=sys.stderr)


@contextmanager
def cleanup_on_signal(*paths: Path):
    """Remove ``paths`` if the build is interrupted by SIGHUP/SIGINT/SIGTERM.

    Nothing is removed on normal completion or on an ordinary exception;
    the partial artifacts are left for inspection.
    """
    def _handler(signum, _frame):
        print(f"\nReceived {signal.Signals(signum).name}, cleaning up...", file=sys.stderr)
        remove_paths(*paths)
        sys.exit(1)

    previous = {sig: signal.signal(sig, _handler) for sig in CLEANUP_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

#!/usr/bin/env python3
"""Assemble the Triton guest tools bundle (triton.txz) from src/.

Packs every file under src/ into an xz-compressed tarball rooted so that
extracting it at / installs the tools into /lib/smartdc.  The installer
picks the archive up from the image's distribution directory via the
MANIFEST line produced by manifest_line().

Usage:
    python3 bundle.py    # Build triton.txz in the current directory
"""

import hashlib
import sys
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

BUNDLE = "triton.txz"
SOURCE_DIR = "src"
INSTALL_PREFIX = "lib/smartdc"
DIST_NAME = "triton"
DIST_DESCRIPTION = "Triton guest tools"
SKIP_PARTS = {"__pycache__"}
SKIP_SUFFIXES = {".pyc"}
# Executed directly by firstboot.py; every other file is installed 0644.
HOOKS = {"network", "firstboot"}


class BuildError(Exception):
    """Raised when the bundle source tree is missing."""


@dataclass(frozen=True)
class Bundle:
    path: Path
    sha256: str
    file_count: int


def _source_files(source: Path) -> list[Path]:
    files = []
    for path in sorted(source.rglob("*")):
        rel = path.relative_to(source)
        if SKIP_PARTS.intersection(rel.parts) or path.suffix in SKIP_SUFFIXES:
            continue
        if path.is_file():
            files.append(path)
    return files


def _installed(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    """Install as root with fixed modes, whatever the checkout gave us."""
    tarinfo.uid = tarinfo.gid = 0
    tarinfo.uname = tarinfo.gname = "root"
    tarinfo.mode = 0o755 if PurePosixPath(tarinfo.name).name in HOOKS else 0o644
    return tarinfo


def build(root: Path, dest: Path) -> Bundle:
    source = root / SOURCE_DIR
    if not source.is_dir():
        raise BuildError(f"source tree not found: {source}")

    files = _source_files(source)
    if not files:
        raise BuildError(f"source tree is empty: {source}")

    out = dest / BUNDLE
    # Always rebuilt from scratch; mode "w" truncates any previous bundle.
    with tarfile.open(out, "w:xz") as tar:
        for path in files:
            rel = path.relative_to(source)
            tar.add(path, arcname=f"{INSTALL_PREFIX}/{rel.as_posix()}", filter=_installed)

    digest = hashlib.sha256(out.read_bytes()).hexdigest()
    return Bundle(path=out, sha256=digest, file_count=len(files))


def manifest_line(bundle: Bundle) -> str:
    """Distribution MANIFEST entry: name, sha256, file count, dist, label, default."""
    return "\t".join([
        bundle.path.name,
        bundle.sha256,
        str(bundle.file_count),
        DIST_NAME,
        f'"{DIST_DESCRIPTION}"',
        "on",
    ]) + "\n"


def main():
    root = Path(__file__).resolve().parent

    try:
        bundle = build(root, Path.cwd())
    except BuildError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Built {BUNDLE} ({bundle.file_count} files, sha256 {bundle.sha256})")


if __name__ == "__main__":
    main()

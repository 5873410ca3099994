#!/usr/bin/env python3
"""Build a customised FreeBSD install ISO carrying the Triton guest tools.

Downloads the release ISO and its checksum file from a mirror (the ISO is
cached in --iso-dir and only verified when freshly downloaded), copies the
ISO contents into a staging layout, injects the guest tools bundle, the
local installerconfig and console/network/resolver settings, then writes
a new bootable ISO with mkisofs.

Usage:
    python3 scripts/build_image.py \\
        -r 13.2 -m download.freebsd.org -p /ftp/releases/ISO-IMAGES \\
        -i FreeBSD-13.2-RELEASE-amd64-disc1.iso \\
        -c CHECKSUM.SHA256-FreeBSD-13.2-RELEASE-amd64 \\
        -d /var/cache/triton-iso -M /mnt/triton-iso -l /tmp/triton-layout \\
        -o triton-freebsd-13.2.iso

Run as root from the repository checkout: mounting the ISO needs mdconfig,
and installerconfig is read from the working directory.
"""

import argparse
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

import pycdlib
from pycdlib.pycdlibexception import PyCdlibException

# ---------------------------------------------------------------------------
# Reuse the bundle builder and shared utilities
# ---------------------------------------------------------------------------
sys.path.insert(0, str(Path(__file__).resolve().parent))
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from _common import (  # noqa: E402
    BOOT_IMAGE,
    DHCP_INTERFACES,
    LOADER_CONF,
    NAMESERVERS,
    ChecksumMismatch,
    ImageBuildError,
    UsageError,
    cleanup_on_signal,
    download,
    file_digest,
    parse_checksum,
    remove_paths,
    run,
)
from bundle import BUNDLE, BuildError, manifest_line  # noqa: E402
from bundle import build as build_bundle  # noqa: E402

REPO_ROOT = Path(__file__).resolve().parent.parent
INSTALLERCONFIG = "installerconfig"
DIST_DIR = "usr/freebsd-dist"


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------
# (dest, short flag, long flag, help)
FLAGS = [
    ("release", "-r", "--release", "release identifier, e.g. 13.2"),
    ("mirror", "-m", "--mirror", "mirror host, e.g. download.freebsd.org"),
    ("mirror_path", "-p", "--mirror-path", "path to the release directories on the mirror"),
    ("iso", "-i", "--iso", "ISO filename on the mirror"),
    ("checksum_file", "-c", "--checksum-file", "checksum filename on the mirror"),
    ("iso_dir", "-d", "--iso-dir", "local download cache directory (absolute path)"),
    ("mount_point", "-M", "--mount-point", "directory to mount the ISO on"),
    ("layout", "-l", "--layout", "staging layout directory (absolute path)"),
    ("output", "-o", "--output", "filename of the ISO to create"),
]
ABSOLUTE_FLAGS = ["iso_dir", "layout"]


@dataclass(frozen=True)
class BuildParams:
    release: str
    mirror: str
    mirror_path: str
    iso: str
    checksum_file: str
    iso_dir: Path
    mount_point: Path
    layout: Path
    output: Path

    def url(self, filename: str) -> str:
        parts = [self.mirror_path.strip("/"), self.release.strip("/"), filename]
        return f"https://{self.mirror}/" + "/".join(p for p in parts if p)

    @property
    def image_path(self) -> Path:
        return self.iso_dir / self.iso

    @property
    def checksum_path(self) -> Path:
        return self.iso_dir / self.checksum_file


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="build_image.py", add_help=False,
        description="Build a FreeBSD install ISO with the Triton guest tools.",
    )
    for dest, short, long, help_text in FLAGS:
        p.add_argument(short, long, dest=dest, metavar=dest.upper(), help=help_text)
    p.add_argument("-h", "--help", action="store_true", help="show this help and exit")
    return p


def parse_params(args: argparse.Namespace) -> BuildParams:
    """Validate parsed flags. Every flag is required; there are no defaults."""
    missing = [long for dest, _, long, _ in FLAGS if not getattr(args, dest)]
    if missing:
        raise UsageError(f"Missing required flags: {', '.join(missing)}")

    relative = [
        long for dest, _, long, _ in FLAGS
        if dest in ABSOLUTE_FLAGS and not Path(getattr(args, dest)).is_absolute()
    ]
    if relative:
        raise UsageError(f"Flags must be absolute paths: {', '.join(relative)}")

    return BuildParams(
        release=args.release,
        mirror=args.mirror,
        mirror_path=args.mirror_path,
        iso=args.iso,
        checksum_file=args.checksum_file,
        iso_dir=Path(args.iso_dir),
        mount_point=Path(args.mount_point),
        layout=Path(args.layout),
        output=Path(args.output),
    )


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------
def verify_image(image: Path, checksum_file: Path):
    """Compare ``image`` against its entry in ``checksum_file``."""
    try:
        text = checksum_file.read_text()
    except OSError as e:
        raise ImageBuildError(f"Cannot read checksum file {checksum_file}: {e}") from e
    algo, expected = parse_checksum(text, image.name)
    actual = file_digest(image, algo)
    if actual != expected:
        raise ChecksumMismatch(
            f"Checksum mismatch for {image.name} ({algo.upper()}): "
            f"expected {expected}, got {actual}"
        )
    print(f"  Checksum OK ({algo.upper()} {actual})")


def fetch_image(params: BuildParams):
    """Refresh the checksum file and make sure a verified ISO is cached."""
    params.iso_dir.mkdir(parents=True, exist_ok=True)

    # The checksum file is always refreshed, even when the ISO is cached.
    print(f"  Downloading {params.checksum_file}...")
    download(params.url(params.checksum_file), params.checksum_path)

    if params.image_path.exists():
        print(f"  Using cached {params.image_path} (not re-verified)")
        return

    print(f"  Downloading {params.iso}...")
    download(params.url(params.iso), params.image_path)
    try:
        verify_image(params.image_path, params.checksum_path)
    except ImageBuildError:
        # Cached copies are never re-verified; don't leave an unverified one behind.
        remove_paths(params.image_path)
        raise


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------
def _reset_dir(path: Path):
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def mount_image(image: Path, mount_point: Path) -> str:
    """Attach ``image`` to a memory disk and mount it read-only. Returns the md unit."""
    md = run(["mdconfig", "-a", "-t", "vnode", "-f", str(image)])
    try:
        run(["mount", "-t", "cd9660", "-o", "ro", f"/dev/{md}", str(mount_point)])
    except ImageBuildError:
        run(["mdconfig", "-d", "-u", md])
        raise
    return md


def unmount_image(mount_point: Path, md: str):
    run(["umount", str(mount_point)])
    run(["mdconfig", "-d", "-u", md])


def _append_lines(path: Path, lines: list[str]):
    path.parent.mkdir(parents=True, exist_ok=True)
    prefix = ""
    if path.exists() and path.stat().st_size:
        with open(path, "rb") as f:
            f.seek(-1, 2)
            if f.read(1) != b"\n":
                prefix = "\n"
    with open(path, "a") as f:
        f.write(prefix + "\n".join(lines) + "\n")


def customize_layout(layout: Path, workdir: Path):
    """Inject the guest tools and fixed settings into a copied ISO tree."""
    # Guest tools bundle + MANIFEST entry so the installer offers it.
    bundle = build_bundle(REPO_ROOT, workdir)
    dist = layout / DIST_DIR
    dist.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(bundle.path, dist / BUNDLE)
    with open(dist / "MANIFEST", "a") as f:
        f.write(manifest_line(bundle))
    print(f"  Added {BUNDLE} ({bundle.file_count} files)")

    # Scripted install configuration, copied verbatim.
    installerconfig = workdir / INSTALLERCONFIG
    if not installerconfig.is_file():
        raise ImageBuildError(f"{INSTALLERCONFIG} not found in {workdir}")
    (layout / "etc").mkdir(parents=True, exist_ok=True)
    shutil.copyfile(installerconfig, layout / "etc" / INSTALLERCONFIG)

    # Serial + video console, short boot menu delay.
    _append_lines(layout / "boot" / "loader.conf", LOADER_CONF)

    _append_lines(
        layout / "etc" / "rc.conf",
        [f'ifconfig_{ifname}="DHCP"' for ifname in DHCP_INTERFACES],
    )

    # The install media ships resolv.conf as a symlink into /tmp.
    resolv = layout / "etc" / "resolv.conf"
    if resolv.is_symlink() or resolv.exists():
        resolv.unlink()
    resolv.write_text("".join(f"nameserver {ns}\n" for ns in NAMESERVERS))
    print("  Applied console, network and resolver settings")


def create_layout(params: BuildParams, workdir: Path):
    """Rebuild the staging layout from the mounted ISO and customise it."""
    _reset_dir(params.layout)
    _reset_dir(params.mount_point)

    print(f"  Mounting {params.image_path} on {params.mount_point}...")
    md = mount_image(params.image_path, params.mount_point)
    try:
        print(f"  Copying ISO contents to {params.layout}...")
        shutil.copytree(params.mount_point, params.layout, symlinks=True, dirs_exist_ok=True)
        customize_layout(params.layout, workdir)
    except BaseException:
        # Best-effort: the original failure is the one to report.
        try:
            unmount_image(params.mount_point, md)
        except ImageBuildError as e:
            print(f"  Warning: failed to unmount {params.mount_point}: {e}", file=sys.stderr)
        raise
    unmount_image(params.mount_point, md)


# ---------------------------------------------------------------------------
# New image
# ---------------------------------------------------------------------------
def read_volume_id(image: Path) -> str:
    """Return the volume identifier from the ISO's primary volume descriptor."""
    iso = pycdlib.PyCdlib()
    try:
        iso.open(str(image))
    except PyCdlibException as e:
        raise ImageBuildError(f"Cannot read volume descriptor of {image}: {e}") from e
    try:
        return iso.pvd.volume_identifier.decode("ascii", errors="replace").strip()
    finally:
        iso.close()


def create_image(params: BuildParams):
    volume_id = read_volume_id(params.image_path)
    print(f"  Writing {params.output} (volume id {volume_id!r})...")
    run([
        "mkisofs", "-J", "-R", "-no-emul-boot",
        "-V", volume_id,
        "-b", BOOT_IMAGE,
        "-o", str(params.output),
        str(params.layout),
    ])


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.help:
        parser.print_help(sys.stderr)
        sys.exit(1)

    try:
        params = parse_params(args)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    workdir = Path.cwd()

    try:
        # Interrupted builds drop the (possibly partial) ISO and layout.
        with cleanup_on_signal(params.image_path, params.layout):
            print(f"[1/3] Fetching FreeBSD {params.release} from {params.mirror}...")
            fetch_image(params)

            print("[2/3] Creating layout...")
            create_layout(params, workdir)

            print("[3/3] Creating new image...")
            create_image(params)
    except (ImageBuildError, BuildError) as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        sys.exit(1)

    print()
    print("=" * 60)
    print("  IMAGE BUILD COMPLETE")
    print()
    print(f"  Image:    {params.output}")
    print(f"  Source:   {params.image_path}")
    print(f"  Layout:   {params.layout}")
    print("=" * 60)


if __name__ == "__main__":
    main()

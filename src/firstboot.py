#!/usr/bin/env python3
"""Triton guest boot orchestrator — runs the per-boot setup steps in order.

Every step runs as its own child process with output appended to the trace
log (/var/log/triton.log).  A failing step is logged and the sequence
continues; this script always exits 0 so the boot never appears to fail.
The one-time ``firstboot`` hook runs only while the marker file is absent;
the hook is responsible for creating it.
"""

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from guestlog import configure_logging, open_log  # noqa: E402

log = logging.getLogger("triton.firstboot")

# ── Configuration ────────────────────────────────────────
LIB_DIR = Path(os.environ.get("TRITON_LIB_DIR", "/lib/smartdc"))
TRACE_LOG = Path(os.environ.get("TRITON_LOG", "/var/log/triton.log"))
MARKER_NAME = ".firstboot-complete-do-not-delete"
SCRIPT_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Step:
    name: str
    argv: list[str]


@dataclass(frozen=True)
class StepResult:
    name: str
    returncode: int | None  # None = never started

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _hook(lib_dir: Path, name: str) -> Step:
    return Step(name, [str(lib_dir / name)])


def _python_step(script: str, *args: str) -> Step:
    name = args[0] if args else script.removesuffix(".py").replace("_", "-")
    return Step(name, [sys.executable, str(SCRIPT_DIR / script), *args])


def boot_steps(lib_dir: Path) -> tuple[list[Step], Step, list[Step]]:
    """Return (steps before firstboot, the firstboot hook, steps after)."""
    before = [
        _hook(lib_dir, "network"),
        _python_step("guest_steps.py", "hostname"),
        _python_step("guest_steps.py", "authorized-keys"),
    ]
    after = [
        _python_step("guest_steps.py", "operator-script"),
        _python_step("guest_steps.py", "user-data"),
        _python_step("user_script.py"),
    ]
    return before, _hook(lib_dir, "firstboot"), after


def run_step(step: Step, trace_log: Path) -> StepResult:
    """Run one step, appending its output to the trace log.

    Never raises for a step failure: a missing hook or nonzero exit is
    reported in the returned StepResult only.
    """
    log.info(f"Running step {step.name}: {' '.join(step.argv)}")
    try:
        with open_log(trace_log) as out:
            proc = subprocess.run(step.argv, stdout=out, stderr=subprocess.STDOUT)
    except OSError as e:
        log.warning(f"Step {step.name} could not be started: {e}")
        return StepResult(step.name, None)

    if proc.returncode != 0:
        log.warning(f"Step {step.name} exited {proc.returncode}")
    else:
        log.info(f"Step {step.name} completed")
    return StepResult(step.name, proc.returncode)


def run_boot(lib_dir: Path = LIB_DIR, trace_log: Path = TRACE_LOG) -> list[StepResult]:
    """Run every boot step in order and return their results."""
    before, firstboot, after = boot_steps(lib_dir)
    results = [run_step(step, trace_log) for step in before]

    marker = lib_dir / MARKER_NAME
    if marker.exists():
        log.info(f"Skipping step {firstboot.name} ({marker} exists)")
    else:
        results.append(run_step(firstboot, trace_log))

    results.extend(run_step(step, trace_log) for step in after)
    return results


def main() -> int:
    configure_logging(TRACE_LOG)
    log.info(f"Boot setup starting (lib={LIB_DIR})")
    results = run_boot()
    # Statuses are for the operator only and never fail the boot.
    failed = [r.name for r in results if not r.ok]
    log.info(
        f"Boot setup finished, {len(results)} step(s) run"
        + (f", failed: {', '.join(failed)}" if failed else "")
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

import stat
import sys
from pathlib import Path

import pytest

SCRIPTS_DIR = str(Path(__file__).resolve().parent.parent / "scripts")


@pytest.fixture()
def scripts_on_path():
    """Temporarily add scripts/ to sys.path for build script imports."""
    sys.path.insert(0, SCRIPTS_DIR)
    yield
    sys.path.remove(SCRIPTS_DIR)


@pytest.fixture()
def make_script(tmp_path):
    """Write an executable shell script and return its path."""
    def _make(name: str, body: str, executable: bool = True) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        mode = path.stat().st_mode
        if executable:
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        else:
            path.chmod(mode & ~(stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
        return path
    return _make

"""Pytest configuration and fixtures for kotlinrunner tests."""

import os
import sys
import threading
import time
from pathlib import Path
from textwrap import dedent
from typing import Callable, List, Tuple

import psutil
import pytest

from kotlinrunner.config import RunnerConfig
from kotlinrunner.utils.workspace import ScriptWorkspace

posix_only = pytest.mark.skipif(os.name != "posix", reason="needs POSIX process groups and shebang scripts")


def python_command(code: str) -> List[str]:
    """Argument vector running ``code`` in an unbuffered Python child."""
    return [sys.executable, "-u", "-c", dedent(code)]


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def process_gone(pid: int) -> bool:
    """True when ``pid`` no longer runs (already reaped or a zombie)."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class OutputRecorder:
    """Collects on_line / on_exit callbacks from engine threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.lines: List[Tuple[str, bool]] = []
        self.exit_codes: List[int] = []
        self.exited = threading.Event()

    def on_line(self, text: str, is_error: bool) -> None:
        with self._lock:
            self.lines.append((text, is_error))

    def on_exit(self, exit_code: int) -> None:
        with self._lock:
            self.exit_codes.append(exit_code)
        self.exited.set()

    def wait(self, timeout: float = 15.0) -> bool:
        return self.exited.wait(timeout)

    @property
    def stdout(self) -> List[str]:
        with self._lock:
            return [text for text, is_error in self.lines if not is_error]

    @property
    def stderr(self) -> List[str]:
        with self._lock:
            return [text for text, is_error in self.lines if is_error]


@pytest.fixture
def recorder():
    """Fresh callback recorder."""
    return OutputRecorder()


@pytest.fixture
def fake_kotlinc(tmp_path: Path) -> Path:
    """An executable standing in for kotlinc: ``-script FILE`` runs FILE as Python."""
    bin_dir = tmp_path / "kotlin" / "bin"
    bin_dir.mkdir(parents=True)
    path = bin_dir / "kotlinc"
    path.write_text(f"#!{sys.executable} -u\n" + dedent("""
        import runpy
        import sys

        args = sys.argv[1:]
        script = args[args.index("-script") + 1]
        sys.argv = [script]
        runpy.run_path(script, run_name="__main__")
    """).lstrip())
    path.chmod(0o755)
    return path


@pytest.fixture
def workspace(tmp_path: Path):
    """Workspace creating working files under the test's tmp_path."""
    base = tmp_path / "work"
    base.mkdir()
    ws = ScriptWorkspace(base_dir=str(base))
    yield ws
    ws.remove_all()


@pytest.fixture
def runner_config(fake_kotlinc: Path) -> RunnerConfig:
    """Config pointing at the fake kotlinc with short teardown intervals."""
    return RunnerConfig(
        kotlinc_path=str(fake_kotlinc),
        grace_interval=0.1,
        poll_interval=0.02,
        drain_timeout=2.0,
        teardown_timeout=5.0,
    )

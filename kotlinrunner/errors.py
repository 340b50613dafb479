"""Exception types raised by the execution engine."""

from typing import Optional, Sequence


class KotlinRunnerError(Exception):
    """Base class for kotlinrunner errors."""


class SpawnError(KotlinRunnerError):
    """The executable could not be located or the OS refused to start it."""

    def __init__(self, command: Sequence[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        super().__init__(f"Failed to start {self.executable!r}: {reason}")

    @property
    def executable(self) -> str:
        return self.command[0] if self.command else ""


class StreamError(KotlinRunnerError):
    """An output stream failed mid-run. Treated as end of stream."""

    def __init__(self, stream: str, reason: str) -> None:
        self.stream = stream
        self.reason = reason
        super().__init__(f"{stream} stream failed: {reason}")


class TeardownError(KotlinRunnerError):
    """Killing a process or removing the working file failed. Logged, never surfaced."""

    def __init__(self, pid: Optional[int], reason: str) -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"Teardown failed for pid {pid}: {reason}")

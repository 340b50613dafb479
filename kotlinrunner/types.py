"""
Shared type definitions for KotlinRunner.

This module contains core types used across the execution engine, the
location extractor and the CLI to avoid circular dependencies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Exit code reported when a run could not start or was stopped by the user.
EXIT_SENTINEL = -1

# Basename of the working file. Diagnostics are matched against it literally.
SCRIPT_FILENAME = "script.kts"


class RunStatus(str, Enum):
    """High-level state of a single run.

    idle -> running -> finished_success | finished_error. A new run can start
    from idle or from any finished state.
    """
    IDLE = "idle"
    RUNNING = "running"
    FINISHED_SUCCESS = "finished_success"
    FINISHED_ERROR = "finished_error"

    @property
    def is_finished(self) -> bool:
        return self in (RunStatus.FINISHED_SUCCESS, RunStatus.FINISHED_ERROR)

    @classmethod
    def from_exit_code(cls, exit_code: int) -> "RunStatus":
        return cls.FINISHED_SUCCESS if exit_code == 0 else cls.FINISHED_ERROR

    def label(self, exit_code: Optional[int] = None) -> str:
        """Short status label for display."""
        if self is RunStatus.IDLE:
            return "Idle"
        if self is RunStatus.RUNNING:
            return "Running..."
        if self is RunStatus.FINISHED_SUCCESS:
            return "Exit 0"
        return f"Exit {exit_code}" if exit_code is not None else "Exit !=0"


@dataclass(frozen=True)
class OutputLine:
    """One logical output line from the process (no trailing newline)."""

    text: str
    is_error: bool = False


@dataclass(frozen=True)
class LocationRef:
    """A 1-based (line, column) position in the script text."""

    line: int
    column: int = 1


@dataclass(frozen=True)
class LocationMatch:
    """A location reference found inside one line of diagnostic output.

    ``span`` is the clickable substring, ``text[start:end]`` of the scanned line.
    """

    start: int
    end: int
    span: str
    location: LocationRef
    kind: str  # "compile" or "runtime"

    @property
    def line(self) -> int:
        return self.location.line

    @property
    def column(self) -> int:
        return self.location.column


@dataclass
class RunSummary:
    """Snapshot of the last (or current) run held by the controller."""

    status: RunStatus
    exit_code: Optional[int]
    duration: Optional[float]
    lines: List[OutputLine] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.FINISHED_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        from kotlinrunner.core.locations import extract_locations

        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3) if self.duration is not None else None,
            "cancelled": self.cancelled,
            "error": self.error,
            "lines": [
                {
                    "text": line.text,
                    "stream": "stderr" if line.is_error else "stdout",
                    "locations": [
                        {"span": m.span, "line": m.line, "column": m.column, "kind": m.kind}
                        for m in extract_locations(line.text)
                    ],
                }
                for line in self.lines
            ],
        }
